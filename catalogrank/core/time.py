"""Time and calendar-day utilities for the ranking engine."""

import re
from datetime import date, datetime, timezone
from typing import Optional

import pytz

from catalogrank.core.logging import get_logger

logger = get_logger(__name__)

# Age assumed for entities without a creation date
MISSING_AGE_DAYS = 3650.0

_ISO_DAY_RE = re.compile(r'^(\d{4})-(\d{1,2})-(\d{1,2})$')
_LEGACY_DAY_RE = re.compile(r'^(\d{1,2})-(\d{1,2})-(\d{4})$')


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def today_in_timezone(tz_name: str, now: Optional[datetime] = None) -> date:
    """Calendar day in the given timezone."""
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone {tz_name!r}, falling back to UTC")
        tz = pytz.utc
    return now.astimezone(tz).date()


def format_day_key(day: date) -> str:
    """Format a day as YYYY-MM-DD, which sorts chronologically as text."""
    return day.isoformat()


def parse_day_key(key: str) -> Optional[date]:
    """
    Parse a history day key into a date.

    Accepts the current YYYY-MM-DD form and the legacy D-MM-YYYY form.
    Returns None for anything else, including impossible dates.
    """
    if not isinstance(key, str):
        return None

    key = key.strip()
    match = _ISO_DAY_RE.match(key)
    if match:
        year, month, day = (int(part) for part in match.groups())
    else:
        match = _LEGACY_DAY_RE.match(key)
        if not match:
            return None
        day, month, year = (int(part) for part in match.groups())

    try:
        return date(year, month, day)
    except ValueError:
        return None


def age_in_days(created_at: Optional[datetime], now: datetime) -> float:
    """Days elapsed since creation; missing dates count as very old."""
    if created_at is None:
        return MISSING_AGE_DAYS
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    seconds = (now - created_at).total_seconds()
    return max(seconds, 0.0) / 86400.0
