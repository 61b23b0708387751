"""Datetime helpers.

Timestamps are stored as ISO-8601 strings in UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    return value.isoformat()


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp.

    Naive values are assumed to be UTC.

    Raises:
        ValueError: If the value is not an ISO-8601 timestamp
    """
    return ensure_utc(datetime.fromisoformat(value))


def minutes_since(value: str, now: datetime | None = None) -> float:
    """Minutes elapsed since a stored timestamp."""
    now = now or utcnow()
    return (now - parse_timestamp(value)).total_seconds() / 60


def today() -> str:
    return utcnow().date().isoformat()
