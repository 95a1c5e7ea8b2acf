from datetime import datetime, time, timedelta, timezone
from typing import Optional

from dateutil.parser import isoparse


def utc_now() -> datetime:
    """
    Get current UTC datetime as a timezone-aware datetime.

    Returns:
        datetime: Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """
    Get current UTC datetime as a naive datetime (no timezone info).
    All DateTime columns store naive UTC.

    Returns:
        datetime: Current UTC datetime without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to UTC timezone-aware datetime.

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: UTC timezone-aware datetime
    """
    if dt.tzinfo is None:
        # Assume naive datetime is in UTC
        return dt.replace(tzinfo=timezone.utc)
    else:
        return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to naive UTC (no timezone info).

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: Naive UTC datetime
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    else:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)


def parse_clock_time(value: str) -> time:
    """Parse an "HH:MM" (or "HH:MM:SS") wall-clock string."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time of day: '{value}'")
    return time(*(int(p) for p in parts))


def compute_event_start(
    start_date: Optional[str],
    start_time: Optional[str],
    tz: timezone,
    default_time: str = "09:00",
) -> Optional[datetime]:
    """
    Compute the timezone-aware start of a calendar event.

    A combined date-time ("2025-03-10T14:00:00+09:00") is parsed directly and
    interpreted in ``tz`` when it carries no offset. A bare date is combined
    with ``start_time`` (``default_time`` when absent) in ``tz``.

    Returns:
        The aware start datetime, or None when the input cannot be parsed
    """
    if not start_date:
        return None

    try:
        if "T" in start_date:
            start = isoparse(start_date)
        else:
            day = isoparse(start_date).date()
            start = datetime.combine(day, parse_clock_time(start_time or default_time))
    except (ValueError, OverflowError):
        return None

    if start.tzinfo is None:
        start = start.replace(tzinfo=tz)
    return start


def compute_notify_at(
    start: datetime, lead: timedelta = timedelta(hours=1)
) -> datetime:
    """Reminder time for an event: its start minus ``lead``."""
    return start - lead


def event_date_part(start_date: str) -> str:
    """Date portion ("YYYY-MM-DD") of a date or date-time string."""
    return start_date.split("T")[0]
