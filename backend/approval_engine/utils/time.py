"""Time Utilities - UTC timestamps and formatting"""
from datetime import date, datetime, timezone, timedelta
from typing import Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (MongoDB returns naive UTC values)"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def parse_date(value: str) -> date:
    """Parse an ISO calendar date (YYYY-MM-DD)"""
    return date_parser.isoparse(value).date()


def add_hours(dt: datetime, hours: float) -> datetime:
    """Add (possibly fractional) hours to datetime"""
    return dt + timedelta(hours=hours)


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours from start to end (negative if end is earlier)"""
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600


def calculate_deadline(start_time: datetime, hours: Optional[float]) -> Optional[datetime]:
    """
    Calculate deadline from start time and an optional duration in hours

    Returns:
        Deadline datetime, or None when no duration is configured
    """
    if hours is None:
        return None
    return add_hours(start_time, hours)


def is_overdue(due_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """
    Check if due datetime has passed

    Args:
        due_at: Due datetime or None
        now: Reference time (defaults to current UTC time)

    Returns:
        True if overdue, False otherwise
    """
    if due_at is None:
        return False
    return ensure_utc(now or utc_now()) > ensure_utc(due_at)
