"""
Inbound Event Handler — keyword-driven subscription changes.

    text ─normalize─▶ classify ─▶ UNSUBSCRIBE ─▶ store.remove ─▶ confirmation / not-found reply
                                 ├─ RESUBSCRIBE ─▶ guidance reply, or store.add when enabled
                                 └─ IGNORE      ─▶ nothing

The mutation commits before any reply is attempted. Replies are advisory:
a failed reply is logged and never undoes or fails the mutation. A failed
store write sends no reply at all, so nobody is told they were removed
unless the removal is durable.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from channels.base import DeliveryClient
from config.settings import InboundConfig
from database.store_base import BaseSubscriberStore, MutationStatus, StoreWriteError
from models.schemas import InboundMessageEvent, Intent, Subscriber
from utils.identity import canonical_identity

logger = structlog.get_logger()


def normalize_text(text: str) -> str:
    return (text or "").strip().lower()


@dataclass
class InboundResult:
    intent: Intent
    mutation: Optional[MutationStatus] = None
    reply_sent: bool = False
    error: str = ""


class InboundHandler:

    def __init__(self, store: BaseSubscriberStore, client: DeliveryClient, config: InboundConfig = None):
        self.store = store
        self.client = client
        self.config = config or InboundConfig()
        self._unsubscribe = {normalize_text(k) for k in self.config.unsubscribe_keywords}
        self._resubscribe = {normalize_text(k) for k in self.config.resubscribe_keywords}

    def classify(self, text: str) -> Intent:
        body = normalize_text(text)
        if body in self._unsubscribe:
            return Intent.UNSUBSCRIBE
        if body in self._resubscribe:
            return Intent.RESUBSCRIBE
        return Intent.IGNORE

    async def handle(self, event: InboundMessageEvent) -> InboundResult:
        intent = self.classify(event.text)
        sender = event.sender_identity
        logger.info("inbound_classified", sender=sender, intent=intent.value)

        if intent == Intent.IGNORE:
            return InboundResult(intent)
        if not canonical_identity(sender):
            logger.warning("inbound_sender_invalid", sender=sender)
            return InboundResult(intent)

        if intent == Intent.UNSUBSCRIBE:
            return await self._unsubscribe_sender(event)
        return await self._resubscribe_sender(event)

    # ── Intents ───────────────────────────────────────────────

    async def _unsubscribe_sender(self, event: InboundMessageEvent) -> InboundResult:
        try:
            result = await self.store.remove(event.sender_identity)
        except StoreWriteError as e:
            logger.error("unsubscribe_not_committed", sender=event.sender_identity, error=str(e))
            return InboundResult(Intent.UNSUBSCRIBE, error=str(e))

        if result.status == MutationStatus.REMOVED:
            reply = self.config.unsubscribed_reply
        else:
            logger.info("subscriber_not_found", sender=event.sender_identity)
            reply = self.config.not_found_reply

        sent = await self._reply(event.sender_identity, reply)
        return InboundResult(Intent.UNSUBSCRIBE, mutation=result.status, reply_sent=sent)

    async def _resubscribe_sender(self, event: InboundMessageEvent) -> InboundResult:
        if not self.config.allow_resubscribe:
            sent = await self._reply(event.sender_identity, self.config.resubscribe_reply)
            return InboundResult(Intent.RESUBSCRIBE, reply_sent=sent)

        subscriber = Subscriber(
            display_name=event.sender_name or canonical_identity(event.sender_identity),
            identity=canonical_identity(event.sender_identity),
        )
        try:
            result = await self.store.add(subscriber)
        except StoreWriteError as e:
            logger.error("resubscribe_not_committed", sender=event.sender_identity, error=str(e))
            return InboundResult(Intent.RESUBSCRIBE, error=str(e))

        if result.status == MutationStatus.ADDED:
            reply = self.config.resubscribed_reply
        else:
            reply = self.config.already_subscribed_reply
        sent = await self._reply(event.sender_identity, reply)
        return InboundResult(Intent.RESUBSCRIBE, mutation=result.status, reply_sent=sent)

    async def _reply(self, identity: str, text: str) -> bool:
        if not text:
            return False
        try:
            await self.client.send_text(identity, text)
            return True
        except Exception as e:
            logger.warning("reply_failed", to=identity, error=str(e))
            return False
