"""
Content Selector — maps a calendar date to one catalog entry.

Selection is a pure function of (day-of-year, catalog length):

    index = date.timetuple().tm_yday % len(catalog)

There is no cursor and nothing is persisted, so a restarted process picks
the same item for the same day. "Today" must be computed in the configured
timezone (see ``today_in``); using the server clock's local date would shift
the rotation by one item around midnight.
"""
from __future__ import annotations

import json
import structlog
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from models.schemas import ContentItem

logger = structlog.get_logger()


class NoContentAvailable(Exception):
    """Raised when selecting from an empty catalog."""

    def __init__(self, message: str = "Content catalog is empty"):
        super().__init__(message)


def today_in(tz_name: str, now: Optional[datetime] = None) -> date:
    """Calendar date in ``tz_name`` at ``now`` (defaults to the current instant)."""
    tz = ZoneInfo(tz_name)
    if now is None:
        return datetime.now(tz).date()
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    return now.astimezone(tz).date()


def select_index(day: date, length: int) -> int:
    if length <= 0:
        raise NoContentAvailable()
    return day.timetuple().tm_yday % length


def select_for_date(day: date, catalog: Sequence[ContentItem]) -> ContentItem:
    return catalog[select_index(day, len(catalog))]


class ContentCatalog:
    """
    Ordered, read-only catalog loaded from a JSON array file.

    ``reload()`` builds a new tuple and swaps it in; existing references to
    the previous tuple are never mutated.
    """

    def __init__(self, path: str):
        self._path = Path(path)
        self._items: tuple[ContentItem, ...] = ()

    @classmethod
    def from_items(cls, items: Sequence[ContentItem], path: str = "") -> ContentCatalog:
        catalog = cls(path)
        catalog._items = tuple(items)
        return catalog

    @property
    def items(self) -> tuple[ContentItem, ...]:
        return self._items

    def __len__(self) -> int:
        return len(self._items)

    def reload(self) -> tuple[ContentItem, ...]:
        """Re-read the file. Missing or corrupt files yield an empty catalog."""
        self._items = tuple(self._read())
        logger.info("content_catalog_loaded", path=str(self._path), items=len(self._items))
        return self._items

    def _read(self) -> list[ContentItem]:
        if not self._path.exists():
            logger.warning("content_catalog_missing", path=str(self._path))
            return []
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("content_catalog_load_error", path=str(self._path), error=str(e))
            return []
        if not isinstance(raw, list):
            logger.warning("content_catalog_load_error", path=str(self._path),
                           error="expected a JSON array")
            return []

        items = []
        for pos, record in enumerate(raw):
            try:
                items.append(ContentItem.model_validate(record))
            except ValidationError as e:
                logger.warning("content_item_invalid", position=pos, error=str(e))
        return items

    def select(self, day: date) -> tuple[int, ContentItem]:
        """Return ``(index, item)`` for ``day``; raises NoContentAvailable when empty."""
        items = self._items
        idx = select_index(day, len(items))
        return idx, items[idx]
