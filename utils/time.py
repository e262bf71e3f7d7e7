"""
Timezone-aware utilities for scheduling and time normalization.

This module centralizes timezone handling to avoid naive vs aware mistakes
and to ensure consistent behavior across DST changes. Instants stored by the
dose log are naive UTC; everything handed to the scheduler is aware UTC.
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Optional, Union

import pytz


# Default timezone if neither the schedule nor the user has one set
DEFAULT_TZ_NAME: str = os.getenv("DEFAULT_TIMEZONE", "UTC") or "UTC"


def get_timezone(tz: Optional[Union[str, "pytz.tzinfo.BaseTzInfo"]]) -> "pytz.tzinfo.BaseTzInfo":
    """
    Resolve a timezone input (name or tzinfo) to a pytz timezone object.
    Falls back to DEFAULT_TZ_NAME if tz is None/empty/invalid.
    """
    if tz is None:
        return pytz.timezone(DEFAULT_TZ_NAME)
    if not isinstance(tz, str):
        # Assume tzinfo-like
        return tz  # type: ignore[return-value]
    name = (tz or "").strip() or DEFAULT_TZ_NAME
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(DEFAULT_TZ_NAME)


def is_valid_timezone(name: Optional[str]) -> bool:
    return bool(name) and name.strip() in pytz.all_timezones_set


def get_user_timezone_name(user) -> str:
    """
    Return the configured timezone name for a user, or DEFAULT_TZ_NAME if missing.
    The user object is expected to have a 'timezone' attribute (string or None).
    """
    tz = getattr(user, "timezone", None)
    if isinstance(tz, str) and tz.strip():
        return tz.strip()
    return DEFAULT_TZ_NAME


def ensure_aware(dt: datetime, tz: Optional[Union[str, "pytz.tzinfo.BaseTzInfo"]] = None) -> datetime:
    """
    Ensure a datetime is timezone-aware in the given timezone.

    - If dt is naive, localize it to tz (or DEFAULT_TZ_NAME).
    - If dt is aware but different tz, convert to tz.
    - If dt is already aware in tz, return as-is.
    """
    tzinfo = get_timezone(tz)
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        # Localize naive datetime to tz
        return tzinfo.localize(dt)
    # Convert to requested tz
    return dt.astimezone(tzinfo)


def ensure_utc(dt: datetime) -> datetime:
    """Aware UTC datetime; naive input is taken to already be UTC."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return pytz.utc.localize(dt)
    return dt.astimezone(pytz.utc)


def to_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC datetime as stored in the dose log."""
    if dt is None:
        return None
    return ensure_utc(dt).replace(tzinfo=None)


def utc_now() -> datetime:
    return datetime.now(pytz.utc)
