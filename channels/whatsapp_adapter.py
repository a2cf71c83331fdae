"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Session check against the Graph API (emits Ready / AuthFailure; a network
  failure leaves the session unverified for the next ensure_ready)
- Phone number normalization
- Webhook verification (hub.verify_token challenge) and X-Hub-Signature-256 check
- Outbound: captioned image (downloaded once, uploaded once per run) and text
- Inbound: text and interactive replies turned into InboundMessageEvent
- Error classification: timeouts / 5xx / 429 are transient, other 4xx permanent
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import mimetypes
import structlog
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import (
    DeliveryClient, PermanentDeliveryError, TransientDeliveryError,
)
from config.settings import WhatsAppConfig
from models.schemas import AuthFailureEvent, InboundMessageEvent, ReadyEvent
from utils.identity import canonical_identity

logger = structlog.get_logger()


def _classify_status(response: httpx.Response, what: str, channel: str):
    """Raise the matching delivery error for a non-2xx response."""
    code = response.status_code
    if code < 400:
        return
    detail = f"{what} failed: HTTP {code}"
    try:
        err = response.json().get("error", {})
        if err.get("message"):
            detail = f"{detail} ({err['message']})"
    except ValueError:
        pass
    if code == 429 or code >= 500:
        raise TransientDeliveryError(detail, channel, status_code=code)
    raise PermanentDeliveryError(detail, channel, status_code=code)


class WhatsAppAdapter(DeliveryClient):
    """
    WhatsApp Business Cloud API client.

    Media is sent by id: the image URL is downloaded, uploaded to
    ``/{phone_number_id}/media`` and the returned id reused for every
    recipient until ``release_media`` clears the cache.
    """

    channel_name = "whatsapp"

    def __init__(
        self,
        config: WhatsAppConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__()
        self._config = config
        self._transport = transport
        self._sleep = sleep
        self._api: Optional[httpx.AsyncClient] = None
        self._downloads: Optional[httpx.AsyncClient] = None
        self._media_ids: dict[str, str] = {}

    # ── Clients ───────────────────────────────────────────────

    @property
    def _graph_url(self) -> str:
        return f"{self._config.base_url.rstrip('/')}/{self._config.api_version}/{self._config.phone_number_id}"

    def _get_api(self) -> httpx.AsyncClient:
        if self._api is None or self._api.is_closed:
            self._api = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self._config.access_token}"},
                timeout=self._config.timeout_s,
                transport=self._transport,
            )
        return self._api

    def _get_downloads(self) -> httpx.AsyncClient:
        # Separate client: the bearer token must never reach a third-party image host
        if self._downloads is None or self._downloads.is_closed:
            self._downloads = httpx.AsyncClient(
                timeout=self._config.media_timeout_s,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._downloads

    async def _call(self, method: str, url: str, what: str, **kwargs) -> httpx.Response:
        try:
            response = await self._get_api().request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"{what} timed out: {e}", self.channel_name) from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"{what} network error: {e}", self.channel_name) from e
        if response.status_code in (401, 403):
            self._initialized = False
            self.emit(AuthFailureEvent(reason=f"{what}: HTTP {response.status_code}"))
        _classify_status(response, what, self.channel_name)
        return response

    # ── Session ───────────────────────────────────────────────

    async def initialize(self) -> None:
        if not self._config.phone_number_id or not self._config.access_token:
            logger.warning("whatsapp_credentials_missing")
            self.emit(AuthFailureEvent(reason="missing phone_number_id or access_token"))
            return
        try:
            await self._verify_session()
        except TransientDeliveryError as e:
            # Session stays unverified; the next ensure_ready() checks again
            logger.warning("whatsapp_session_check_failed", error=str(e), transient=True)
            return
        except PermanentDeliveryError as e:
            # _call already emitted AuthFailureEvent for 401/403
            if e.status_code not in (401, 403):
                self.emit(AuthFailureEvent(reason=str(e)))
            return
        self._initialized = True
        self.emit(ReadyEvent())

    async def _verify_session(self) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientDeliveryError),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, max=10),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                await self._call("GET", self._graph_url, "session check",
                                 params={"fields": "display_phone_number"})

    async def shutdown(self) -> None:
        for client in (self._api, self._downloads):
            if client is not None and not client.is_closed:
                await client.aclose()
        self._media_ids.clear()
        await super().shutdown()
        logger.info("whatsapp_client_closed")

    # ── Phone normalization ───────────────────────────────────

    def _normalize_phone(self, identity: str) -> str:
        phone = canonical_identity(identity)
        if not phone:
            raise PermanentDeliveryError(f"Invalid identity: {identity!r}", self.channel_name)
        return phone

    # ── Media ─────────────────────────────────────────────────

    async def _fetch_media(self, url: str) -> tuple[bytes, str]:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise PermanentDeliveryError(f"Invalid image URL {url!r}", self.channel_name)
        try:
            response = await self._get_downloads().get(url)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise PermanentDeliveryError(f"Invalid image URL {url!r}", self.channel_name) from e
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Image fetch timed out: {e}", self.channel_name) from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Image fetch failed: {e}", self.channel_name) from e
        _classify_status(response, "Image fetch", self.channel_name)
        mime = response.headers.get("content-type", "").split(";")[0].strip() or "image/jpeg"
        return response.content, mime

    async def _upload_media(self, media_ref: str) -> str:
        cached = self._media_ids.get(media_ref)
        if cached:
            return cached

        content, mime = await self._fetch_media(media_ref)
        filename = urlparse(media_ref).path.rsplit("/", 1)[-1] or "image"
        if "." not in filename:
            filename += mimetypes.guess_extension(mime) or ".jpg"

        response = await self._call(
            "POST", f"{self._graph_url}/media", "Media upload",
            data={"messaging_product": "whatsapp", "type": mime},
            files={"file": (filename, content, mime)},
        )
        media_id = response.json().get("id", "")
        if not media_id:
            raise TransientDeliveryError("Media upload returned no id", self.channel_name)
        self._media_ids[media_ref] = media_id
        logger.info("whatsapp_media_uploaded", media_ref=media_ref, media_id=media_id, bytes=len(content))
        return media_id

    async def release_media(self) -> None:
        self._media_ids.clear()

    # ── Send ──────────────────────────────────────────────────

    async def _send_message(self, payload: dict[str, Any]) -> str:
        response = await self._call("POST", f"{self._graph_url}/messages", "Send", json=payload)
        messages = response.json().get("messages") or [{}]
        return messages[0].get("id", "")

    async def send_media(self, identity: str, media_ref: str, caption: str) -> str:
        phone = self._normalize_phone(identity)
        media_id = await self._upload_media(media_ref)
        msg_id = await self._send_message({
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "image",
            "image": {"id": media_id, "caption": caption},
        })
        logger.debug("whatsapp_image_sent", to=phone, msg_id=msg_id)
        return msg_id

    async def send_text(self, identity: str, text: str) -> str:
        phone = self._normalize_phone(identity)
        msg_id = await self._send_message({
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "text",
            "text": {"body": text},
        })
        logger.debug("whatsapp_text_sent", to=phone, msg_id=msg_id)
        return msg_id

    # ── Webhook ───────────────────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self._config.verify_token and token == self._config.verify_token:
            return challenge
        return None

    def verify_signature(self, body: bytes, signature_header: str) -> bool:
        """Check X-Hub-Signature-256. Always passes when no app secret is configured."""
        if not self._config.app_secret:
            return True
        if not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(self._config.app_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature_header[len("sha256="):])

    def handle_webhook(self, payload: dict[str, Any]) -> int:
        """Emit an InboundMessageEvent per text/interactive message. Returns the count."""
        emitted = 0
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                names = {
                    c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                    for c in value.get("contacts") or []
                }
                # Status updates (sent/delivered/read) carry no "messages"
                for msg in value.get("messages") or []:
                    text = self._message_text(msg)
                    if text is None:
                        continue
                    sender = msg.get("from", "")
                    self.emit(InboundMessageEvent(
                        sender_identity=sender,
                        text=text,
                        sender_name=names.get(sender, ""),
                        message_id=msg.get("id", ""),
                    ))
                    emitted += 1
        return emitted

    @staticmethod
    def _message_text(msg: dict[str, Any]) -> Optional[str]:
        msg_type = msg.get("type", "text")
        if msg_type == "text":
            return (msg.get("text") or {}).get("body", "")
        if msg_type == "button":
            return (msg.get("button") or {}).get("text", "")
        if msg_type == "interactive":
            interactive = msg.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            return reply.get("title", "")
        return None
