"""Shared datetime helpers - all stored datetimes are naive UTC"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as naive UTC (matches the DateTime columns)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp as returned by Google APIs
    ('2024-01-14T10:00:00.000Z', '2024-01-15T15:00:00+01:00') into naive UTC.
    Date-only values ('2024-01-15') are read as midnight UTC.
    """
    if not value:
        return None
    return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def to_rfc3339(value: datetime) -> str:
    """Format a naive UTC datetime as an RFC 3339 'Z' timestamp"""
    return to_naive_utc(value).replace(microsecond=0).isoformat() + "Z"
