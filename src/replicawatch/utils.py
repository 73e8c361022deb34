"""
Shared utility functions for replicawatch
Pattern: Centralized time handling so every component compares aware UTC datetimes
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are assumed to be UTC. A trailing 'Z' is accepted, since
    that is how JavaScript writers serialize dates into the store.

    Args:
        value: ISO string, datetime, or None

    Returns:
        Aware datetime, or None for empty input

    Raises:
        ValueError: If the value is not a parseable timestamp

    Examples:
        >>> parse_timestamp("2024-05-01T10:00:00Z").isoformat()
        '2024-05-01T10:00:00+00:00'
        >>> parse_timestamp(None) is None
        True
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO-8601, passing None through."""
    return value.isoformat() if value else None
