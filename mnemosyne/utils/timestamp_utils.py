"""
Timestamp utilities for logical event times and wall-clock audit times.
"""

import time
from datetime import datetime, timezone
from typing import Any, Optional


def to_seconds(timestamp: Optional[float] = None) -> int:
    """Logical event time in whole seconds since epoch (current time if None)."""
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp)


def utc_now() -> datetime:
    """Timezone-aware wall-clock time used for created/updated audit fields."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize an audit time for storage."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_datetime(value: Any) -> datetime:
    """Parse a stored audit time.

    Accepts datetimes, ISO-8601 strings and epoch seconds. Unparseable values
    fall back to the epoch so that ordering stays total.

    Args:
        value: Stored value

    Returns:
        Timezone-aware datetime
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            try:
                return datetime.fromtimestamp(int(value), tz=timezone.utc)
            except ValueError:
                return datetime.fromtimestamp(0, tz=timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(0, tz=timezone.utc)
