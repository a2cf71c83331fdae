"""
Store Factory — Create the subscriber store backend from configuration.

Configuration in settings.yaml:
    data:
      # JSON array of {displayName, identity}; empty path selects the
      # in-memory backend (dry runs, tests)
      contacts_file: ./data/contacts.json

Usage:
    from database.store_factory import create_subscriber_store
    store = create_subscriber_store(settings.data)
"""
from __future__ import annotations

import structlog

from config.settings import DataConfig
from database.store_base import BaseSubscriberStore

logger = structlog.get_logger()


def create_subscriber_store(config: DataConfig = None) -> BaseSubscriberStore:
    """Factory: file-backed store when a contacts path is configured, else in-memory."""
    config = config or DataConfig()

    if config.contacts_file:
        from database.store_file import FileSubscriberStore
        store = FileSubscriberStore(path=config.contacts_file)
        logger.info("store_created", backend="file", path=config.contacts_file)
        return store

    from database.store_memory import InMemorySubscriberStore
    logger.info("store_created", backend="memory")
    return InMemorySubscriberStore()
