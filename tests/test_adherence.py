"""
Unit tests for adherence aggregation
"""

import types
from datetime import date, datetime, timedelta

from adherence import calculate_streak, classify_trend, compute_adherence_stats, summarize_day
from conftest import utc


def dose(status, scheduled_time, taken_at=None):
    return types.SimpleNamespace(status=status, scheduled_time=scheduled_time, taken_at=taken_at)


def day_doses(day: date, statuses):
    hours = [8, 20, 14]
    return [dose(s, datetime(day.year, day.month, day.day, hours[i])) for i, s in enumerate(statuses)]


class TestAdherenceRate:
    def test_seventy_percent(self):
        doses = [dose("taken", utc(2024, 1, i + 1, 8)) for i in range(7)]
        doses += [dose("missed", utc(2024, 1, i + 10, 8)) for i in range(3)]
        stats = compute_adherence_stats(doses)
        assert stats.total_doses == 10
        assert stats.taken_doses == 7
        assert stats.missed_doses == 3
        assert stats.rate == 70.0

    def test_no_doses_is_zero_and_stable(self):
        stats = compute_adherence_stats([])
        assert stats.rate == 0.0
        assert stats.streak == 0
        assert stats.trend == "stable"
        assert stats.last_taken is None

    def test_pending_rows_are_ignored(self):
        doses = [dose("taken", utc(2024, 1, 1, 8)), dose("scheduled", utc(2024, 1, 2, 8))]
        stats = compute_adherence_stats(doses)
        assert stats.total_doses == 1
        assert stats.rate == 100.0

    def test_rounding_to_one_decimal(self):
        doses = [dose("taken", utc(2024, 1, 1, 8)), dose("taken", utc(2024, 1, 2, 8)), dose("skipped", utc(2024, 1, 3, 8))]
        stats = compute_adherence_stats(doses)
        assert stats.rate == 66.7
        assert stats.skipped_doses == 1

    def test_last_taken(self):
        doses = [
            dose("taken", utc(2024, 1, 1, 8), taken_at=datetime(2024, 1, 1, 8, 5)),
            dose("taken", utc(2024, 1, 2, 8), taken_at=datetime(2024, 1, 2, 8, 20)),
        ]
        assert compute_adherence_stats(doses).last_taken == utc(2024, 1, 2, 8, 20)


class TestStreak:
    def test_streak_stops_at_first_incomplete_day(self):
        start = date(2024, 1, 1)
        doses = []
        doses += day_doses(start, ["taken", "taken"])
        doses += day_doses(start + timedelta(days=1), ["taken", "taken"])
        doses += day_doses(start + timedelta(days=2), ["taken", "missed"])
        doses += day_doses(start + timedelta(days=3), ["taken", "taken"])
        doses += day_doses(start + timedelta(days=4), ["taken", "taken"])
        assert calculate_streak(doses) == 2

    def test_streak_counts_days_not_doses(self):
        doses = day_doses(date(2024, 1, 1), ["taken", "taken", "taken"])
        assert calculate_streak(doses) == 1

    def test_skipped_breaks_streak(self):
        doses = day_doses(date(2024, 1, 2), ["skipped"]) + day_doses(date(2024, 1, 1), ["taken"])
        assert calculate_streak(doses) == 0

    def test_streak_groups_by_local_day(self):
        # 23:30 UTC on Jan 1 is already Jan 2 in Jerusalem
        doses = [dose("missed", datetime(2024, 1, 1, 23, 30)), dose("taken", datetime(2024, 1, 2, 8, 0))]
        assert calculate_streak(doses, "UTC") == 1
        assert calculate_streak(doses, "Asia/Jerusalem") == 0


class TestTrend:
    def test_buckets(self):
        assert classify_trend(80.1) == "improving"
        assert classify_trend(80.0) == "stable"
        assert classify_trend(60.0) == "stable"
        assert classify_trend(59.9) == "declining"
        assert classify_trend(0.0, has_data=False) == "stable"


def test_summarize_day():
    doses = [dose(s, utc(2024, 1, 3, 8)) for s in ("taken", "taken", "missed", "skipped", "scheduled")]
    assert summarize_day(doses) == {"total": 5, "completed": 2, "missed": 1, "skipped": 1, "pending": 1}
