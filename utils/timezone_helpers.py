"""
Timezone utilities for resolving the office's calendar day.

Attendance rows are keyed on the office-local date, so every date boundary in
the ledger goes through these helpers rather than the client's clock.
"""

from datetime import date, datetime
from datetime import timezone
from typing import Optional
from zoneinfo import ZoneInfo


def from_utc_to_local(utc_dt: datetime, tz: str) -> datetime:
    """
    Convert UTC datetime to local datetime in the specified timezone.

    Args:
        utc_dt: UTC datetime (naive values are treated as UTC)
        tz: IANA timezone string (e.g., 'Asia/Phnom_Penh', 'America/New_York')

    Returns:
        datetime: Local datetime in the specified timezone
    """
    if utc_dt.tzinfo is None:
        utc_dt = utc_dt.replace(tzinfo=timezone.utc)

    target_tz = ZoneInfo(tz)
    return utc_dt.astimezone(target_tz)


def local_date(utc_dt: datetime, tz: str) -> date:
    """Calendar date of `utc_dt` as seen on a wall clock in `tz`."""
    return from_utc_to_local(utc_dt, tz).date()


def validate_timezone(tz: str) -> bool:
    """
    Validate if the timezone string is a valid IANA timezone.

    Args:
        tz: IANA timezone string to validate

    Returns:
        bool: True if valid, False otherwise
    """
    try:
        ZoneInfo(tz)
        return True
    except Exception:
        return False


def get_default_timezone() -> str:
    """Fallback when OFFICE_TIMEZONE is set but blank."""
    return "UTC"


def ensure_timezone_aware(dt: Optional[datetime], default_tz: Optional[str] = None) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware, defaulting to UTC if naive.

    SQLite hands back naive datetimes even for timezone=True columns, so every
    value read from the store passes through here.

    Args:
        dt: datetime object or None
        default_tz: Optional default timezone if dt is naive

    Returns:
        datetime: timezone-aware datetime, or None if dt is None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        if default_tz:
            return dt.replace(tzinfo=ZoneInfo(default_tz))
        else:
            return dt.replace(tzinfo=timezone.utc)
    return dt


def format_utc_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    ISO 8601 in UTC with a 'Z' suffix, the only timestamp shape clients see.

    Naive values are taken to already be UTC.
    """
    if dt is None:
        return None

    iso_string = ensure_timezone_aware(dt).astimezone(timezone.utc).isoformat()
    if iso_string.endswith("+00:00"):
        return iso_string[: -len("+00:00")] + "Z"
    return iso_string
