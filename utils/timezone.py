"""UTC-everywhere time handling. Every timestamp in the service is aware and in UTC."""

import math
from datetime import datetime, timezone


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere; tests patch it per module.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Normalize an aware datetime to UTC. Naive input raises ValueError."""
    if dt.tzinfo is None:
        raise ValueError("Cannot convert naive datetime to UTC. Datetime must be timezone-aware.")
    return dt.astimezone(timezone.utc)


def parse_iso(iso_string: str) -> datetime:
    """
    ISO 8601 string (with offset or 'Z') to a UTC datetime.

    Raises ValueError for strings without timezone info.
    """
    parsed = datetime.fromisoformat(iso_string)
    if parsed.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(parsed)


def seconds_until(moment: datetime, now: datetime | None = None) -> int:
    """
    Whole seconds from now until moment, rounded up.

    Returns 0 when moment is already in the past.
    """
    remaining = (moment - (now or now_utc())).total_seconds()
    return math.ceil(remaining) if remaining > 0 else 0


def minutes_until(moment: datetime, now: datetime | None = None) -> int:
    """Whole minutes from now until moment, rounded up."""
    return math.ceil(seconds_until(moment, now) / 60)
