"""
Adherence statistics over dose log rows: rate, day streak and trend.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from config import config
from timing import local_date
from utils.helpers import calculate_adherence_rate
from utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

RESOLVED_STATUSES = ("taken", "missed", "skipped")

TREND_IMPROVING = "improving"
TREND_STABLE = "stable"
TREND_DECLINING = "declining"


@dataclass
class AdherenceStats:
    total_doses: int = 0
    taken_doses: int = 0
    missed_doses: int = 0
    skipped_doses: int = 0
    rate: float = 0.0
    streak: int = 0
    last_taken: Optional[datetime] = None
    trend: str = TREND_STABLE

    def to_dict(self) -> dict:
        return {
            "total_doses": self.total_doses,
            "taken_doses": self.taken_doses,
            "missed_doses": self.missed_doses,
            "skipped_doses": self.skipped_doses,
            "rate": self.rate,
            "streak": self.streak,
            "last_taken": self.last_taken.isoformat() if self.last_taken else None,
            "trend": self.trend,
        }


def classify_trend(rate: float, has_data: bool = True) -> str:
    if not has_data:
        return TREND_STABLE
    if rate > config.TREND_IMPROVING_ABOVE:
        return TREND_IMPROVING
    if rate < config.TREND_DECLINING_BELOW:
        return TREND_DECLINING
    return TREND_STABLE


def _resolved(doses: Iterable) -> List:
    return [d for d in doses if getattr(d, "status", None) in RESOLVED_STATUSES]


def calculate_streak(doses: Iterable, tz=None) -> int:
    """Consecutive local days, most recent first, on which every dose was taken.

    Counting stops at the first day with any missed or skipped dose.
    """
    by_day: Dict = {}
    for dose in _resolved(doses):
        day = local_date(dose.scheduled_time, tz)
        by_day.setdefault(day, []).append(dose.status)

    streak = 0
    for day in sorted(by_day, reverse=True):
        if all(status == "taken" for status in by_day[day]):
            streak += 1
        else:
            break
    return streak


def compute_adherence_stats(doses: Iterable, tz=None, now: Optional[datetime] = None) -> AdherenceStats:
    """Aggregate resolved dose rows; 'scheduled' rows are still pending and ignored."""
    resolved = _resolved(doses)
    taken = [d for d in resolved if d.status == "taken"]
    missed = sum(1 for d in resolved if d.status == "missed")
    skipped = sum(1 for d in resolved if d.status == "skipped")
    total = len(resolved)

    rate = calculate_adherence_rate(len(taken), total)
    taken_times = [ensure_utc(d.taken_at) for d in taken if d.taken_at is not None]
    last_taken = max(taken_times) if taken_times else None

    stats = AdherenceStats(
        total_doses=total,
        taken_doses=len(taken),
        missed_doses=missed,
        skipped_doses=skipped,
        rate=rate,
        streak=calculate_streak(resolved, tz),
        last_taken=last_taken,
        trend=classify_trend(rate, has_data=total > 0),
    )
    logger.debug(f"Adherence computed at {(now or utc_now()).isoformat()}: {stats.to_dict()}")
    return stats


def summarize_day(doses: Iterable) -> Dict[str, int]:
    """Counts for a single day's dose rows"""
    summary = OrderedDict(total=0, completed=0, missed=0, skipped=0, pending=0)
    for dose in doses:
        summary["total"] += 1
        if dose.status == "taken":
            summary["completed"] += 1
        elif dose.status == "missed":
            summary["missed"] += 1
        elif dose.status == "skipped":
            summary["skipped"] += 1
        else:
            summary["pending"] += 1
    return dict(summary)
