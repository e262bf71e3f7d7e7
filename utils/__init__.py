"""
Utils Package
Common utilities and helper functions for the Dose Reminder service
"""

from .helpers import (
    async_retry,
    calculate_adherence_rate,
    coerce_time_of_day,
    format_time_12h,
    format_time_until,
    parse_time_string,
)
from .keyboards import (
    build_dose_callback,
    get_next_dose_keyboard,
    get_reminder_keyboard,
    parse_dose_callback,
)

__version__ = "1.0.0"

__all__ = [
    # From helpers
    "async_retry",
    "calculate_adherence_rate",
    "coerce_time_of_day",
    "format_time_12h",
    "format_time_until",
    "parse_time_string",
    # From keyboards
    "build_dose_callback",
    "get_next_dose_keyboard",
    "get_reminder_keyboard",
    "parse_dose_callback",
]
