"""Content catalog and per-day selection."""
from content.selector import ContentCatalog, NoContentAvailable, select_for_date, today_in

__all__ = ["ContentCatalog", "NoContentAvailable", "select_for_date", "today_in"]
