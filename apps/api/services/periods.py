"""UTC clock and calendar-month helpers shared by the metering services."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def current_period_key(now: Optional[datetime] = None) -> str:
    current = as_utc(now) or utcnow()
    return current.strftime("%Y-%m")


def next_period_start(now: Optional[datetime] = None) -> date:
    current = as_utc(now) or utcnow()
    if current.month == 12:
        return date(current.year + 1, 1, 1)
    return date(current.year, current.month + 1, 1)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized else None


def period_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Half-open [start, end) UTC bounds of the calendar month containing ``now``."""
    current = as_utc(now) or utcnow()
    start = datetime(current.year, current.month, 1, tzinfo=timezone.utc)
    following = next_period_start(current)
    end = datetime(following.year, following.month, 1, tzinfo=timezone.utc)
    return start, end
