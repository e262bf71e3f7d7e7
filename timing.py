"""
Dose timing resolution: next dose, due and overdue classification.

Reminder schedules hold local civil values (time of day, ISO weekdays) plus an
explicit timezone. Every instant leaving this module is an aware UTC datetime;
this is the only module that converts between the two representations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Sequence

import pytz

from config import config
from utils.helpers import coerce_time_of_day
from utils.time import ensure_aware, ensure_utc, get_timezone

logger = logging.getLogger(__name__)

ISO_WEEKDAYS = frozenset(range(1, 8))

GRACE_PERIOD = timedelta(minutes=config.GRACE_PERIOD_MINUTES)
TAKEN_MATCH_WINDOW = timedelta(minutes=config.TAKEN_MATCH_WINDOW_MINUTES)
CURRENT_DOSE_LOOKBACK = timedelta(hours=24)


@dataclass(frozen=True)
class DoseTiming:
    """Derived timing state for one medication at one instant."""

    next_dose_time: Optional[datetime]
    current_reminder_time: Optional[datetime] = None
    is_due: bool = False
    is_overdue: bool = False
    is_scheduled: bool = True

    @property
    def time(self) -> Optional[datetime]:
        return self.next_dose_time

    def to_dict(self) -> dict:
        return {
            "time": self.next_dose_time.isoformat() if self.next_dose_time else None,
            "current_reminder_time": self.current_reminder_time.isoformat() if self.current_reminder_time else None,
            "is_due": self.is_due,
            "is_overdue": self.is_overdue,
            "is_scheduled": self.is_scheduled,
        }


# Returned when a medication has no active reminder schedules
NOT_SCHEDULED = DoseTiming(next_dose_time=None, is_scheduled=False)


def normalize_weekdays(days: Optional[Iterable], zero_based: bool = False) -> List[int]:
    """Convert weekday numbers to ISO numbering (Monday=1 .. Sunday=7).

    With ``zero_based=True`` the input uses 0=Sunday .. 6=Saturday, so only
    Sunday changes number. Duplicates are dropped and the result is sorted.
    """
    if days is None:
        raise ValueError("days_of_week is required")
    result = set()
    for raw in days:
        if isinstance(raw, bool):
            raise ValueError(f"Invalid weekday: {raw!r}")
        try:
            day = int(raw)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid weekday: {raw!r}") from None
        if zero_based:
            if not 0 <= day <= 6:
                raise ValueError(f"Weekday {day} outside 0-6")
            day = 7 if day == 0 else day
        elif day not in ISO_WEEKDAYS:
            raise ValueError(f"Weekday {day} outside 1-7")
        result.add(day)
    if not result:
        raise ValueError("At least one weekday is required")
    return sorted(result)


def schedule_timezone(schedule, default_tz: Optional[str] = None):
    return get_timezone(getattr(schedule, "timezone", None) or default_tz)


def _schedule_parts(schedule, default_tz: Optional[str] = None):
    tz = schedule_timezone(schedule, default_tz)
    time_of_day = coerce_time_of_day(schedule.time_of_day)
    days = set(schedule.days_of_week or ())
    return tz, time_of_day, days


def _is_active(schedule) -> bool:
    return bool(getattr(schedule, "is_active", True))


def localize_wall_time(tz, day: date, time_of_day: time) -> datetime:
    """Local wall time on ``day`` as an aware datetime in ``tz``.

    A wall time inside a spring-forward gap lands after the gap; an ambiguous
    fall-back wall time resolves to its first occurrence.
    """
    naive = datetime.combine(day, time_of_day)
    try:
        return tz.localize(naive, is_dst=None)
    except pytz.exceptions.NonExistentTimeError:
        return tz.normalize(tz.localize(naive, is_dst=False))
    except pytz.exceptions.AmbiguousTimeError:
        return tz.localize(naive, is_dst=True)


def local_date(instant: datetime, tz=None) -> date:
    """Calendar date of an instant in the given timezone."""
    return ensure_aware(ensure_utc(instant), tz).date()


def start_of_local_day(now: datetime, tz=None) -> datetime:
    tzinfo = get_timezone(tz)
    day = ensure_aware(ensure_utc(now), tzinfo).date()
    return localize_wall_time(tzinfo, day, time(0, 0)).astimezone(pytz.utc)


def next_occurrence(schedule, now: datetime, default_tz: Optional[str] = None) -> Optional[datetime]:
    """Earliest occurrence at or after ``now`` (UTC), or None if the schedule has no days."""
    tz, time_of_day, days = _schedule_parts(schedule, default_tz)
    if not days:
        return None
    now = ensure_utc(now)
    today = ensure_aware(now, tz).date()
    # Offset 7 covers today's weekday next week once today's time has passed
    for offset in range(0, 8):
        day = today + timedelta(days=offset)
        if day.isoweekday() not in days:
            continue
        candidate = localize_wall_time(tz, day, time_of_day).astimezone(pytz.utc)
        if candidate >= now:
            return candidate
    return None


def occurrences_between(
    schedule, start: datetime, end: datetime, default_tz: Optional[str] = None
) -> List[datetime]:
    """All occurrences in the closed range [start, end], ascending, UTC."""
    tz, time_of_day, days = _schedule_parts(schedule, default_tz)
    start = ensure_utc(start)
    end = ensure_utc(end)
    if not days or end < start:
        return []
    day = ensure_aware(start, tz).date() - timedelta(days=1)
    last_day = ensure_aware(end, tz).date() + timedelta(days=1)
    result = []
    while day <= last_day:
        if day.isoweekday() in days:
            candidate = localize_wall_time(tz, day, time_of_day).astimezone(pytz.utc)
            if start <= candidate <= end:
                result.append(candidate)
        day += timedelta(days=1)
    return result


def next_dose_time(schedules: Sequence, now: datetime, default_tz: Optional[str] = None) -> Optional[datetime]:
    candidates = [
        at for at in (next_occurrence(s, now, default_tz) for s in schedules if _is_active(s)) if at is not None
    ]
    return min(candidates) if candidates else None


def was_confirmed(scheduled_at: datetime, confirmed_times: Iterable[datetime]) -> bool:
    """True when a confirmation sits within the match window of ``scheduled_at``."""
    scheduled_at = ensure_utc(scheduled_at)
    return any(abs(ensure_utc(t) - scheduled_at) <= TAKEN_MATCH_WINDOW for t in confirmed_times)


def _past_candidates(schedules: Sequence, now: datetime, default_tz: Optional[str]) -> List[datetime]:
    found = set()
    for schedule in schedules:
        tz = schedule_timezone(schedule, default_tz)
        window_start = min(start_of_local_day(now, tz), now - GRACE_PERIOD)
        found.update(occurrences_between(schedule, window_start, now, default_tz))
    return sorted(found, reverse=True)


def resolve_dose_timing(
    schedules: Sequence,
    now: datetime,
    confirmed_times: Iterable[datetime] = (),
    default_tz: Optional[str] = None,
) -> DoseTiming:
    """Classify a medication as upcoming, due or overdue at ``now``.

    ``confirmed_times`` are the scheduled instants of log entries the user
    resolved (taken or skipped). A confirmation within 30 minutes of an
    occurrence suppresses due/overdue signalling for it.
    """
    active = [s for s in schedules if _is_active(s)]
    if not active:
        return NOT_SCHEDULED

    now = ensure_utc(now)
    confirmed = [ensure_utc(t) for t in confirmed_times]
    upcoming = next_dose_time(active, now, default_tz)

    for scheduled_at in _past_candidates(active, now, default_tz):
        if was_confirmed(scheduled_at, confirmed):
            continue
        if now < scheduled_at + GRACE_PERIOD:
            return DoseTiming(upcoming, scheduled_at, is_due=True, is_overdue=False)
        return DoseTiming(upcoming, scheduled_at, is_due=False, is_overdue=True)

    return DoseTiming(upcoming)


def current_occurrence(
    schedules: Sequence,
    now: datetime,
    lookback: timedelta = CURRENT_DOSE_LOOKBACK,
    default_tz: Optional[str] = None,
) -> Optional[datetime]:
    """Occurrence a bare "taken" confirmation refers to.

    Nearest to ``now`` within [now - lookback, now + 30min]; ties go to the
    earlier occurrence.
    """
    now = ensure_utc(now)
    candidates = set()
    for schedule in schedules:
        if _is_active(schedule):
            candidates.update(occurrences_between(schedule, now - lookback, now + TAKEN_MATCH_WINDOW, default_tz))
    if not candidates:
        return None
    return min(candidates, key=lambda at: (abs(at - now), at))


def is_occurrence(schedules: Sequence, instant: datetime, default_tz: Optional[str] = None) -> bool:
    instant = ensure_utc(instant)
    margin = timedelta(seconds=1)
    return any(
        occurrences_between(s, instant - margin, instant + margin, default_tz) for s in schedules if _is_active(s)
    )
