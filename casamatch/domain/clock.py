# casamatch/domain/clock.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: datetime) -> datetime:
    """
    SQLite + SQLAlchemy gives back a naive datetime even for DateTime(timezone=True) columns.
    If naive, assume it's UTC and attach tzinfo so comparisons don't explode.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
