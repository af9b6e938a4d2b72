"""Clock helpers.

The engine stores naive UTC datetimes (SQLite drops tzinfo on read, so
mixing aware and naive values would break comparisons). Anything coming in
from callers goes through ``to_naive_utc`` first.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SystemClock:
    """Wall clock used in production."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """Deterministic clock for tests and replays."""

    def __init__(self, now: datetime):
        self._now = to_naive_utc(now)

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = to_naive_utc(now)

    def advance(self, delta) -> datetime:
        self._now = self._now + delta
        return self._now
