"""
Content fingerprint for change detection
Stable digest of the semantically meaningful fields of a task, event or mail item
"""

import hashlib
import re
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models.sync_models import LocalRecord, RemoteItem

_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (title or "").strip()).casefold()


def _zone(time_zone: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(time_zone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_date(value: Optional[datetime], time_zone: Optional[str]) -> Optional[date]:
    """Calendar date of a timestamp as seen in the item's time zone"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(_zone(time_zone)).date()


def content_fingerprint(
    title: Optional[str],
    start: Optional[datetime],
    due: Optional[datetime],
    priority: Optional[str],
    status: Optional[str],
    time_zone: Optional[str] = "UTC",
) -> str:
    """
    SHA-256 hex digest over normalized content

    Only the date portion of start/due takes part, so time-of-day drift from
    time zone round trips does not register as a change.
    """
    start_date = local_date(start, time_zone)
    due_date = local_date(due, time_zone)
    parts = [
        normalize_title(title),
        start_date.isoformat() if start_date else "",
        due_date.isoformat() if due_date else "",
        (priority or "").lower(),
        (status or "").lower(),
        _zone(time_zone).key,
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def fingerprint_of(item: Union[RemoteItem, LocalRecord]) -> str:
    return content_fingerprint(
        item.title, item.start, item.due, item.priority, item.status, item.time_zone
    )


def within_tolerance(a: Optional[datetime], b: Optional[datetime], tolerance: timedelta) -> bool:
    """Whether two occurrences are close enough to be the same one"""
    if a is None or b is None:
        return a is None and b is None
    return abs(a - b) <= tolerance
