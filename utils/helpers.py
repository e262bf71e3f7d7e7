from __future__ import annotations

import re
from datetime import datetime, time
from typing import Any, Awaitable, Callable, Optional, Union


# ===============================
# Time & date helpers
# ===============================


def parse_time_string(text: Optional[str]) -> Optional[time]:
    if not text:
        return None
    s = text.strip()
    # Accept 08:30, 8:30, 08.30, 08-30, 08 : 30, 0830
    m = re.match(r"^(\d{1,2})\s*[:\.-]?\s*(\d{2})$", s)
    if not m:
        return None
    h = int(m.group(1))
    mi = int(m.group(2))
    if not (0 <= h <= 23 and 0 <= mi <= 59):
        return None
    return time(h, mi)


def coerce_time_of_day(value: Union[str, time, None]) -> time:
    """Accept a time or an HH:MM string; raise ValueError otherwise."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    parsed = parse_time_string(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValueError(f"Invalid time of day: {value!r}")
    return parsed


def format_time_12h(value: Union[time, datetime]) -> str:
    hours = value.hour
    ampm = "PM" if hours >= 12 else "AM"
    display_hours = hours % 12 or 12
    return f"{display_hours}:{value.minute:02d} {ampm}"


def format_time_until(minutes_until: int) -> str:
    """Compact countdown: 45m, 2h 30m, 1d 4h."""
    minutes_until = max(0, int(minutes_until))
    if minutes_until < 60:
        return f"{minutes_until}m"
    if minutes_until < 1440:
        hours, minutes = divmod(minutes_until, 60)
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    days, rest = divmod(minutes_until, 1440)
    hours = rest // 60
    return f"{days}d {hours}h" if hours else f"{days}d"


# ===============================
# Data processing
# ===============================


def calculate_adherence_rate(taken: int, total: int) -> float:
    """Percentage of taken doses; no doses means 0.0."""
    if total <= 0:
        return 0.0
    return round((taken / total) * 100, 1)


# ===============================
# Async utilities
# ===============================


async def async_retry(func: Callable[[], Awaitable[Any]], retries: int = 3, delay_seconds: float = 0.5) -> Any:
    """Retry an async function a few times with a fixed delay.

    Returns the function result or raises the last exception after retries.
    """
    last_exc: Optional[Exception] = None
    for attempt in range(1, max(1, retries) + 1):
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001
            last_exc = exc
            if attempt < retries:
                # Local import to avoid adding asyncio globally up top
                from asyncio import sleep

                await sleep(max(0.0, delay_seconds))
                continue
            raise last_exc
