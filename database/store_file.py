"""
FileSubscriberStore — JSON file-backed subscriber list.

Data layout:
  contacts.json   [{"displayName": "...", "identity": "..."}, ...]

Legacy ``{"name", "phone"}`` records are accepted on load and rewritten
with the canonical keys on the next mutation.

Features:
  - Survives process restarts
  - Every mutation rewrites the whole array: temp file in the same
    directory, fsync, then os.replace over the original
  - A failed write leaves both the file and the in-memory list at the
    last committed state
  - Single-process only (no cross-process lock)
"""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
import structlog
from pathlib import Path
from typing import Sequence

from pydantic import ValidationError

from database.store_base import StoreWriteError
from database.store_memory import InMemorySubscriberStore, _dedupe
from models.schemas import Subscriber

logger = structlog.get_logger()


def read_subscribers(path: Path) -> list[Subscriber]:
    """Load subscriber records. Missing or corrupt files yield an empty list."""
    if not path.exists():
        logger.warning("subscriber_file_missing", path=str(path))
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("subscriber_file_load_error", path=str(path), error=str(e))
        return []
    if not isinstance(raw, list):
        logger.warning("subscriber_file_load_error", path=str(path), error="expected a JSON array")
        return []

    subscribers = []
    for pos, record in enumerate(raw):
        try:
            subscribers.append(Subscriber.model_validate(record))
        except ValidationError as e:
            logger.warning("subscriber_record_invalid", position=pos, error=str(e))
    return subscribers


def write_subscribers_atomic(path: Path, subscribers: Sequence[Subscriber]) -> None:
    """Rewrite ``path`` so that readers see either the old or the new array, never a mix."""
    records = [s.to_record() for s in subscribers]
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(records, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise StoreWriteError(f"Failed to write {path}: {e}") from e


class FileSubscriberStore(InMemorySubscriberStore):
    """
    Extends InMemorySubscriberStore with JSON file persistence.

    On init: loads the array from disk into memory.
    On every mutation: writes the full updated array before committing it
    in memory. File I/O runs in a worker thread so the event loop keeps
    serving inbound events while the write is in flight.
    """

    def __init__(self, path: str = "./data/contacts.json"):
        self._path = Path(path)
        super().__init__(read_subscribers(self._path))
        logger.info("file_store_initialized", path=str(self._path), subscribers=len(self._subscribers))

    @property
    def path(self) -> Path:
        return self._path

    async def _persist(self, subscribers: tuple[Subscriber, ...]) -> None:
        try:
            await asyncio.to_thread(write_subscribers_atomic, self._path, subscribers)
        except StoreWriteError as e:
            logger.error("store_write_failed", path=str(self._path), error=str(e))
            raise

    async def reload(self) -> int:
        """Re-read the file, replacing the in-memory list."""
        async with self._write_lock:
            loaded = await asyncio.to_thread(read_subscribers, self._path)
            self._subscribers = _dedupe(loaded)
        return len(self._subscribers)
