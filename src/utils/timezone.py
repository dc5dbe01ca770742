"""
Timezone utilities for calling-hour checks and quota windows.
All stored timestamps are UTC; account-local time is derived on demand.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a timestamp to aware UTC.
    Naive values are treated as UTC (SQLite hands back naive datetimes).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_zoneinfo(timezone_str: Optional[str] = None) -> ZoneInfo:
    """Get ZoneInfo object, defaulting to Eastern if missing or unknown."""
    if timezone_str:
        try:
            return ZoneInfo(timezone_str)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to %s", timezone_str, DEFAULT_TIMEZONE)
    return ZoneInfo(DEFAULT_TIMEZONE)


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    return ensure_utc(value).astimezone(tz)


def weekday_name(local_dt: datetime) -> str:
    """Lowercase English weekday name ('monday'...'sunday')."""
    return WEEKDAY_NAMES[local_dt.weekday()]


def quarter_start(now: datetime, tz: ZoneInfo) -> datetime:
    """Start of the calendar quarter containing `now`, in account-local time, returned as UTC."""
    local = to_local(now, tz)
    first_month = ((local.month - 1) // 3) * 3 + 1
    start_local = datetime(local.year, first_month, 1, tzinfo=tz)
    return start_local.astimezone(timezone.utc)


def day_start(now: datetime, tz: ZoneInfo) -> datetime:
    """Local midnight of the day containing `now`, returned as UTC."""
    local = to_local(now, tz)
    return datetime(local.year, local.month, local.day, tzinfo=tz).astimezone(timezone.utc)
