"""
Abstract Subscriber Store — Interface for all storage backends.

Implementations:
  - InMemorySubscriberStore (list-based, single-process, no persistence)
  - FileSubscriberStore     (JSON array on disk, atomic rewrite, durable)

Mutations report their result as a value (``MutationResult``) rather than
raising for the expected "not there" / "already there" cases; callers pick
the reply text. Only a failed durable write raises (``StoreWriteError``).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from models.schemas import Subscriber


class StoreWriteError(Exception):
    """The updated collection could not be persisted; nothing was committed."""


class MutationStatus(str, Enum):
    ADDED = "added"
    ALREADY_EXISTS = "already_exists"
    REMOVED = "removed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class MutationResult:
    status: MutationStatus
    subscriber: Optional[Subscriber] = None

    @property
    def changed(self) -> bool:
        return self.status in (MutationStatus.ADDED, MutationStatus.REMOVED)


class BaseSubscriberStore(ABC):
    """Interface that all subscriber store backends must implement."""

    @abstractmethod
    async def list_active(self) -> list[Subscriber]:
        """Snapshot of the current subscribers, in stored order."""
        ...

    @abstractmethod
    async def find(self, identity: str) -> Optional[Subscriber]:
        ...

    @abstractmethod
    async def add(self, subscriber: Subscriber) -> MutationResult:
        ...

    @abstractmethod
    async def remove(self, identity: str) -> MutationResult:
        ...

    async def count(self) -> int:
        return len(await self.list_active())
