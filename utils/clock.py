"""
Time helpers.

Timestamps are stored as naive UTC datetimes so they compare cleanly after a
round trip through SQLite, which drops tzinfo.
"""
from __future__ import annotations

import calendar
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch(value: datetime) -> int:
    """Whole seconds since the epoch for a naive-UTC (or aware) datetime."""
    return calendar.timegm(value.utctimetuple())
