"""Epoch conversions for provider timestamps."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

# Anything below this is an epoch in seconds (year 5138 in seconds).
_SECONDS_CEILING = 100_000_000_000


def to_epoch_ms(value: Any) -> Optional[int]:
    """
    Normalize a provider timestamp to epoch milliseconds.

    Accepts ints, floats and numeric strings in seconds or milliseconds.
    Returns None for empty, zero or non-numeric values.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    if number < _SECONDS_CEILING:
        return number * 1000
    return number


def to_datetime(value: Any) -> Optional[datetime]:
    """Convert a provider timestamp to an aware UTC datetime."""
    ms = to_epoch_ms(value)
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def format_offset(ms: Any) -> str:
    """Format a millisecond offset as HH:MM:SS."""
    try:
        total = max(int(ms or 0), 0) // 1000
    except (TypeError, ValueError):
        total = 0
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
