"""Shared parsing helpers for timestamps crossing the API and connector seams.

parse_timestamp:        lenient, returns None on bad input (connector payloads)
parse_timestamp_input:  strict, raises ValueError (request bodies → 400)
"""
from datetime import datetime, timezone


def parse_timestamp(value):
    """Parse an ISO-8601 string or epoch-milliseconds int to an aware UTC datetime.

    Returns None for empty/invalid input. Supports:
    - 2025-01-31T23:59:00Z (Canvas style, trailing Z)
    - 2025-01-31T23:59:00+01:00 (any offset, converted to UTC)
    - 2025-01-31T23:59:00 (naive, assumed UTC)
    - 1738367940000 (epoch milliseconds)
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except (ValueError, TypeError):
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp_input(value, field="timestamp"):
    """Same as parse_timestamp() but raises ValueError on missing/bad input.

    Used by the sync blueprint where callers turn ValueError into a 400.
    """
    dt = parse_timestamp(value)
    if dt is None:
        raise ValueError(f"{field} must be an ISO-8601 string or epoch milliseconds")
    return dt


def isoformat_or_none(dt):
    """Render an aware datetime as ISO-8601 UTC, passing None through."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()
