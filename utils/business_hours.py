"""Business-hours gate for automated replies."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from models.schemas import BusinessHoursEntry, utcnow


def weekday_sunday_first(moment: datetime) -> int:
    """0 = Sunday … 6 = Saturday (Python's weekday() starts on Monday)."""
    return (moment.weekday() + 1) % 7


def is_within_business_hours(
    hours: list[BusinessHoursEntry],
    now: Optional[datetime] = None,
) -> bool:
    """
    True when `now` falls inside today's configured window, both ends inclusive.
    A day with no entry, or a disabled entry, is closed.
    """
    now = now or utcnow()
    today = weekday_sunday_first(now)
    current = now.strftime("%H:%M")

    for entry in hours:
        if entry.day != today:
            continue
        if not entry.enabled:
            return False
        return entry.start_time <= current <= entry.end_time
    return False
