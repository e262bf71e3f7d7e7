"""
Unit tests for helper functions
Tests the utility functions in utils/helpers.py and utils/keyboards.py
"""

import pytest
from datetime import datetime, time

from utils.helpers import (
    async_retry,
    calculate_adherence_rate,
    coerce_time_of_day,
    format_time_12h,
    format_time_until,
    parse_time_string,
)
from utils.keyboards import build_dose_callback, parse_dose_callback


class TestTimeFunctions:
    """Test time parsing and formatting functions"""

    def test_parse_time_string(self):
        """Test time string parsing"""
        # Valid formats
        assert parse_time_string("08:30") == time(8, 30)
        assert parse_time_string("14:15") == time(14, 15)
        assert parse_time_string("8:30") == time(8, 30)
        assert parse_time_string("08.30") == time(8, 30)
        assert parse_time_string("08-30") == time(8, 30)
        assert parse_time_string("08 : 30") == time(8, 30)
        assert parse_time_string("0830") == time(8, 30)

        # Invalid formats
        assert parse_time_string("25:30") == None  # Invalid hour
        assert parse_time_string("08:60") == None  # Invalid minute
        assert parse_time_string("abc") == None  # Not a time
        assert parse_time_string("") == None  # Empty

    def test_coerce_time_of_day(self):
        assert coerce_time_of_day("08:00") == time(8, 0)
        assert coerce_time_of_day(time(8, 0, 45)) == time(8, 0)
        with pytest.raises(ValueError):
            coerce_time_of_day("noon")
        with pytest.raises(ValueError):
            coerce_time_of_day(None)

    def test_format_time_12h(self):
        assert format_time_12h(time(0, 5)) == "12:05 AM"
        assert format_time_12h(time(12, 0)) == "12:00 PM"
        assert format_time_12h(datetime(2024, 1, 3, 20, 30)) == "8:30 PM"

    def test_format_time_until(self):
        assert format_time_until(45) == "45m"
        assert format_time_until(150) == "2h 30m"
        assert format_time_until(120) == "2h"
        assert format_time_until(1680) == "1d 4h"
        assert format_time_until(-5) == "0m"


class TestDataProcessingFunctions:
    """Test data processing utility functions"""

    def test_calculate_adherence_rate(self):
        """Test adherence rate calculation"""
        assert calculate_adherence_rate(9, 10) == 90.0
        assert calculate_adherence_rate(7, 10) == 70.0
        assert calculate_adherence_rate(0, 10) == 0.0
        assert calculate_adherence_rate(0, 0) == 0.0  # Edge case
        assert calculate_adherence_rate(1, 3) == 33.3


class TestDoseCallbacks:
    def test_round_trip_with_timestamp(self):
        data = build_dose_callback("snooze", 10, 1704268800)
        assert data == "dose_snooze_10_1704268800"
        assert parse_dose_callback(data) == ("snooze", 10, 1704268800)

    def test_without_timestamp(self):
        assert parse_dose_callback("dose_view_7") == ("view", 7, None)

    @pytest.mark.parametrize("data", ["dose_eat_1", "menu_taken_1", "dose_taken", "dose_taken_x", ""])
    def test_rejects_invalid(self, data):
        with pytest.raises(ValueError):
            parse_dose_callback(data)


class TestAsyncRetry:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise RuntimeError("database is locked")
            return "ok"

        assert await async_retry(flaky, retries=2, delay_seconds=0) == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_raises_last_error(self):
        async def broken():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError):
            await async_retry(broken, retries=2, delay_seconds=0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
