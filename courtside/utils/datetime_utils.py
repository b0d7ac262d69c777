"""
Datetime utility functions.
Provides timezone-aware replacements for deprecated datetime functions and
helpers for the ISO-8601 timestamps carried on the wire.
"""

from datetime import datetime
from typing import Optional, Union
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes and convert aware ones to UTC.

    SQLite hands back naive datetimes even for timezone-aware columns, so every
    value read from the database goes through here before it is compared.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp (``Z`` suffix allowed) into an aware UTC datetime.

    Args:
        value: ISO string, datetime, or None

    Returns:
        Aware UTC datetime, or None when value is None/empty

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Expected string or datetime, got {type(value)}")

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601 UTC, or None."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()
