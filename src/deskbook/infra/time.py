"""Time utilities for consistent timestamp handling."""

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def local_datetime(day: date, at: time, tz_name: str) -> datetime:
    """Combine a booking date and wall-clock time in the space's timezone."""
    return datetime.combine(day, at, tzinfo=ZoneInfo(tz_name))
