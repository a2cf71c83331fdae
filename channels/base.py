"""
Delivery Client — the boundary between the broadcaster and a messaging transport.

Provides:
- ChannelError: structured error hierarchy (transient vs permanent)
- DeliveryClient: abstract capability to send a captioned image or a text,
  plus one event channel carrying lifecycle and inbound-message events

The core only depends on this surface. Transports (WhatsApp Cloud API, a
browser-driven web session, a test fake) implement the abstract hooks and
push ``ChannelEvent`` values with ``emit``.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import Optional

from models.schemas import ChannelEvent

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False,
                 status_code: Optional[int] = None):
        self.channel = channel
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class TransientDeliveryError(ChannelError):
    """Network failure, timeout, 5xx or rate limiting. Worth retrying."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None):
        super().__init__(message, channel, retryable=True, status_code=status_code)


class PermanentDeliveryError(ChannelError):
    """Malformed identity, unreachable media (4xx), rejected request. Never retried."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None):
        super().__init__(message, channel, retryable=False, status_code=status_code)


# ══════════════════════════════════════════════════════════════
#  DELIVERY CLIENT — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryClient(abc.ABC):
    """
    Base class for all transports.

    Subclasses implement the send hooks and ``initialize``. Events are
    delivered through a single asyncio.Queue consumed with ``next_event``.
    """

    channel_name: str = "channel"

    def __init__(self):
        self._initialized = False
        self._events: asyncio.Queue[ChannelEvent] = asyncio.Queue()

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Open the session. Emits ReadyEvent, AuthFailureEvent or QrChallengeEvent."""
        ...

    @abc.abstractmethod
    async def send_media(self, identity: str, media_ref: str, caption: str) -> str:
        """Send an image with caption; return the transport message id."""
        ...

    @abc.abstractmethod
    async def send_text(self, identity: str, text: str) -> str:
        ...

    # ── Events ────────────────────────────────────────────────

    def emit(self, event: ChannelEvent) -> None:
        self._events.put_nowait(event)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[ChannelEvent]:
        """Block until the next event; ``None`` if ``timeout`` elapses first."""
        if timeout is None:
            return await self._events.get()
        try:
            return await asyncio.wait_for(self._events.get(), timeout)
        except asyncio.TimeoutError:
            return None

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def initialized(self) -> bool:
        """True once the session check passed and no auth failure was seen since."""
        return self._initialized

    async def ensure_ready(self) -> None:
        """Re-run ``initialize`` unless the session is already verified."""
        if not self._initialized:
            await self.initialize()

    async def release_media(self) -> None:
        """Drop per-run media caches. Called after every dispatch run."""
        return None

    async def shutdown(self) -> None:
        self._initialized = False
