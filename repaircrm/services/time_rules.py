"""
Time helpers.
Timestamps are stored as naive UTC; clock times shown to people use TZ_DEFAULT.
"""
from datetime import datetime
from typing import Optional
import pytz
from ..config import settings


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime for storage.

    Aware values are converted to UTC and stripped of tzinfo; naive values are
    assumed to be UTC already.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def utc_to_local(utc_datetime: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (naive or timezone-aware)
        timezone_str: Timezone string (defaults to TZ_DEFAULT)

    Returns:
        Local datetime (timezone-aware)
    """
    tz = pytz.timezone(timezone_str or settings.tz_default)
    if utc_datetime.tzinfo is None:
        utc_dt = utc_datetime.replace(tzinfo=pytz.UTC)
    else:
        utc_dt = utc_datetime.astimezone(pytz.UTC)
    return utc_dt.astimezone(tz)


def format_clock(utc_datetime: datetime, timezone_str: Optional[str] = None) -> str:
    return utc_to_local(utc_datetime, timezone_str).strftime("%H:%M")


def minutes_between(start: datetime, end: datetime) -> int:
    return int((to_naive_utc(end) - to_naive_utc(start)).total_seconds() // 60)
