"""
Time helpers. The pipeline stores and compares naive UTC datetimes;
display labels are rendered in the configured timezone.
"""

from datetime import datetime
import pytz
from typing import Optional

from ..core.config import settings


def utcnow() -> datetime:
    return datetime.utcnow()


def to_utc_naive(dt: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive input is assumed UTC"""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(pytz.UTC).replace(tzinfo=None)


def display_tz(name: Optional[str] = None):
    return pytz.timezone(name or settings.display_timezone)


def format_display_time(dt: datetime, format_str: Optional[str] = None, tz_name: Optional[str] = None) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=pytz.UTC)
    local = dt.astimezone(display_tz(tz_name))
    return local.strftime(format_str or settings.timeline_label_format)


def minutes_between(start: datetime, end: datetime) -> float:
    return (to_utc_naive(end) - to_utc_naive(start)).total_seconds() / 60.0
