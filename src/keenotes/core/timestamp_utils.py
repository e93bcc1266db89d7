"""Timestamp utilities for KeeNotes.

Provides functions to convert between epoch timestamps and the formatted
strings used on the wire and for display.
"""

from datetime import datetime, timezone
from typing import Optional

# Format of the "ts" field in note submissions and of created_at strings
WIRE_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(ts: Optional[int]) -> str:
    """Format Unix timestamp to local timezone for display.

    Args:
        ts: Unix timestamp (seconds since epoch) or None

    Returns:
        Formatted string "YYYY-MM-DD HH:MM:SS" in local timezone,
        or empty string if ts is None
    """
    if ts is None:
        return ""
    utc_dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    local_dt = utc_dt.astimezone()
    return local_dt.strftime(WIRE_FORMAT)


def format_ms_timestamp(ts_ms: Optional[int]) -> str:
    """Format epoch milliseconds like format_timestamp."""
    if ts_ms is None:
        return ""
    return format_timestamp(ts_ms // 1000)


def current_timestamp() -> int:
    """Get current time as Unix timestamp.

    Returns:
        Current Unix timestamp (seconds since epoch)
    """
    return int(datetime.now().timestamp())


def current_timestamp_ms() -> int:
    """Get current time in milliseconds since epoch."""
    return int(datetime.now().timestamp() * 1000)


def current_wire_time() -> str:
    """Current local time as "YYYY-MM-DD HH:MM:SS"."""
    return datetime.now().strftime(WIRE_FORMAT)


def format_age(age_ms: int) -> str:
    """Describe an age in milliseconds as a short relative string.

    Args:
        age_ms: Age in milliseconds (negative values count as zero)

    Returns:
        "42s ago", "5m ago", "3h ago" or "12d ago"
    """
    seconds = max(age_ms, 0) // 1000
    if seconds < 60:
        return f"{seconds}s ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"
