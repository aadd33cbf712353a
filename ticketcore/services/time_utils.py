"""
Time helpers shared by the repositories.

Timestamps are written as UTC and always handed back to callers as
timezone-aware ``datetime`` objects, whichever backend stored them.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_aware(value: Any) -> datetime | None:
    """Coerce a stored timestamp (datetime or SQLite text) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return None


def hours_from_now(hours: float, *, now: datetime | None = None) -> datetime:
    base = now or utcnow()
    return base + timedelta(hours=hours)
