"""Datetime utilities with consistent UTC timezone handling.

Every timestamp that crosses the device boundary (change log entries, manifests,
device records) is a timezone-aware UTC datetime serialized as ISO 8601 with
microsecond precision, so ordering survives a round trip through JSON.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional, Union


def now_utc() -> datetime:
    """Return current datetime in UTC timezone.
    
    Returns:
        Current datetime with timezone=UTC
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.
    
    Args:
        dt: Datetime to check/convert, or None
        
    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if dt is None:
        return None
    
    if dt.tzinfo is None:
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)
    
    return dt.astimezone(timezone.utc)


def min_utc() -> datetime:
    """Return datetime.min with UTC timezone for sorting fallbacks."""
    return datetime.min.replace(tzinfo=timezone.utc)


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO string with timezone info.
    
    Args:
        dt: Datetime to convert, or None
        
    Returns:
        ISO format string with timezone, or None if input was None
    """
    if dt is None:
        return None
    
    return ensure_aware(dt).isoformat(timespec="microseconds")


def parse_iso(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Parse an ISO string (or epoch milliseconds) into an aware UTC datetime.
    
    Older clients wrote timestamps as epoch milliseconds, so integers are
    accepted too.
    """
    if value is None or value == "":
        return None
    
    if isinstance(value, datetime):
        return ensure_aware(value)
    
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text))


def to_microseconds(dt: datetime) -> int:
    """Convert a datetime into integer microseconds since the epoch."""
    delta = ensure_aware(dt) - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_microseconds(value: int) -> datetime:
    """Inverse of :func:`to_microseconds`."""
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(microseconds=value)
