"""
Subscriber persistence.

Backends:
  - In-memory (list-based, for development/testing)
  - File (JSON array on disk, atomically rewritten on every mutation)

Quick start:
  from database import create_subscriber_store
  store = create_subscriber_store(settings.data)
  result = await store.remove("+1-555-0100")
"""
from database.store_base import (
    BaseSubscriberStore, MutationResult, MutationStatus, StoreWriteError,
)
from database.store_memory import InMemorySubscriberStore
from database.store_file import FileSubscriberStore
from database.store_factory import create_subscriber_store

__all__ = [
    "BaseSubscriberStore", "MutationResult", "MutationStatus", "StoreWriteError",
    "InMemorySubscriberStore", "FileSubscriberStore",
    "create_subscriber_store",
]
