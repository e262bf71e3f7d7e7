import types
from datetime import datetime, timedelta

import pytz

from adherence import calculate_streak, compute_adherence_stats
from timing import resolve_dose_timing


class TestPerformance:
    """Performance tests for the timing and adherence hot paths"""

    def test_adherence_stats_performance(self, benchmark):
        """Benchmark aggregation over a year of four-times-daily doses"""
        start = datetime(2023, 1, 1, 8, 0)
        doses = [
            types.SimpleNamespace(
                status="missed" if i % 17 == 0 else "taken",
                scheduled_time=start + timedelta(hours=6 * i),
                taken_at=start + timedelta(hours=6 * i, minutes=3),
            )
            for i in range(365 * 4)
        ]

        result = benchmark(compute_adherence_stats, doses, "Europe/London")
        assert result.total_doses == 365 * 4
        assert 0 < result.rate < 100

    def test_streak_performance(self, benchmark):
        """Benchmark streak counting when every day is complete"""
        start = datetime(2023, 1, 1, 8, 0)
        doses = [types.SimpleNamespace(status="taken", scheduled_time=start + timedelta(hours=12 * i)) for i in range(730)]

        result = benchmark(calculate_streak, doses)
        assert result == 365

    def test_resolve_timing_performance(self, benchmark):
        """Benchmark resolution across many schedules"""
        schedules = [
            types.SimpleNamespace(
                time_of_day=f"{h:02d}:{m:02d}", days_of_week=[1, 2, 3, 4, 5, 6, 7], timezone="America/New_York", is_active=True
            )
            for h in range(24)
            for m in (0, 30)
        ]
        now = datetime(2024, 3, 10, 12, 0, tzinfo=pytz.utc)

        result = benchmark(resolve_dose_timing, schedules, now)
        assert result.is_scheduled
        assert result.next_dose_time is not None
