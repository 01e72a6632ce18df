"""
shared/utils/clock.py
UTC time helpers. SQLite hands back naive datetimes, PostgreSQL aware ones;
everything compared in Python goes through as_utc first.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
