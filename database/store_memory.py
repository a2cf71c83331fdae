"""
InMemorySubscriberStore — list-backed store for development and testing.

Features:
  - Zero dependencies
  - Copy-on-write: every mutation builds a new tuple and swaps it in,
    so a reader holding a snapshot never sees a half-applied change
  - Writers serialized by one asyncio.Lock (single event loop)
  - All data lost on process restart

Subclasses add durability by overriding ``_persist``; the new tuple is
only swapped in after ``_persist`` returns.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Iterable, Optional, Sequence

from database.store_base import (
    BaseSubscriberStore, MutationResult, MutationStatus,
)
from models.schemas import Subscriber
from utils.identity import canonical_identity

logger = structlog.get_logger()


def _dedupe(subscribers: Iterable[Subscriber]) -> tuple[Subscriber, ...]:
    """Drop records without a usable identity and repeats of a canonical identity."""
    seen: set[str] = set()
    kept: list[Subscriber] = []
    for s in subscribers:
        key = s.canonical
        if not key:
            logger.warning("subscriber_invalid_identity", identity=s.identity)
            continue
        if key in seen:
            logger.warning("subscriber_duplicate_dropped", identity=s.identity)
            continue
        seen.add(key)
        kept.append(s)
    return tuple(kept)


class InMemorySubscriberStore(BaseSubscriberStore):

    def __init__(self, subscribers: Sequence[Subscriber] = ()):
        self._subscribers: tuple[Subscriber, ...] = _dedupe(subscribers)
        self._write_lock = asyncio.Lock()

    # ── Reads ─────────────────────────────────────────────

    async def list_active(self) -> list[Subscriber]:
        return list(self._subscribers)

    async def find(self, identity: str) -> Optional[Subscriber]:
        key = canonical_identity(identity)
        if not key:
            return None
        return next((s for s in self._subscribers if s.canonical == key), None)

    # ── Writes ────────────────────────────────────────────
    #
    # The locked read-persist-swap section runs shielded: cancelling the
    # caller cannot stop between a completed write and the in-memory swap.

    async def add(self, subscriber: Subscriber) -> MutationResult:
        key = subscriber.canonical
        if not key:
            raise ValueError(f"Subscriber identity has no digits: {subscriber.identity!r}")

        result = await asyncio.shield(self._add_locked(subscriber, key))
        if result.changed:
            logger.info("subscriber_added", identity=subscriber.identity, name=subscriber.display_name)
        return result

    async def _add_locked(self, subscriber: Subscriber, key: str) -> MutationResult:
        async with self._write_lock:
            current = self._subscribers
            existing = next((s for s in current if s.canonical == key), None)
            if existing is not None:
                return MutationResult(MutationStatus.ALREADY_EXISTS, existing)

            updated = current + (subscriber,)
            await self._persist(updated)
            self._subscribers = updated
        return MutationResult(MutationStatus.ADDED, subscriber)

    async def remove(self, identity: str) -> MutationResult:
        key = canonical_identity(identity)
        if not key:
            return MutationResult(MutationStatus.NOT_FOUND)

        result = await asyncio.shield(self._remove_locked(key))
        if result.changed:
            removed = result.subscriber
            logger.info("subscriber_removed", identity=removed.identity, name=removed.display_name)
        return result

    async def _remove_locked(self, key: str) -> MutationResult:
        async with self._write_lock:
            current = self._subscribers
            idx = next((i for i, s in enumerate(current) if s.canonical == key), None)
            if idx is None:
                return MutationResult(MutationStatus.NOT_FOUND)

            removed = current[idx]
            updated = current[:idx] + current[idx + 1:]
            await self._persist(updated)
            self._subscribers = updated
        return MutationResult(MutationStatus.REMOVED, removed)

    async def _persist(self, subscribers: tuple[Subscriber, ...]) -> None:
        """Durably store ``subscribers``; raise StoreWriteError on failure."""
        return None
