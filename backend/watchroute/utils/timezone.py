"""
Timezone utilities for watchroute.
Provides consistent UTC datetime handling for quota windows and approval expiry.
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone.
    If timezone-aware, converts to UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # SQLite hands back naive values; everything is stored as UTC
        return dt.replace(tzinfo=timezone.utc)
    else:
        return dt.astimezone(timezone.utc)


def start_of_day(dt: datetime) -> datetime:
    """Midnight UTC of the day containing dt."""
    dt = ensure_utc(dt)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(dt: datetime) -> datetime:
    """First instant of the calendar month containing dt (UTC)."""
    dt = ensure_utc(dt)
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def format_iso_utc(dt: Optional[datetime]) -> str:
    """
    Format datetime as ISO string in UTC.
    Returns empty string if datetime is None.
    """
    if dt is None:
        return ""

    utc_dt = ensure_utc(dt)
    if utc_dt is None:
        return ""

    return utc_dt.isoformat()
