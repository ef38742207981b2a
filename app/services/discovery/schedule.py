"""
Schedule Calculator

Computes a profile's next scheduled run from its frequency and preferred
time of day. All times are UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from app.models.discovery import ScheduleFrequency


def parse_preferred_time(preferred_time: str):
    """
    Parse "HH:MM" into (hour, minute).

    Raises:
        ValueError: If the value is not a valid 24-hour time
    """
    try:
        hour_text, minute_text = preferred_time.split(":")
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid preferred time {preferred_time!r}, expected HH:MM")
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid preferred time {preferred_time!r}, expected HH:MM")
    return hour, minute


def calculate_next_run_time(
    frequency: Union[ScheduleFrequency, str],
    preferred_time: str,
    custom_days: Optional[int] = None,
    now: Optional[datetime] = None
) -> datetime:
    """
    Next run timestamp for a schedule.

    The candidate is today at preferred_time, or tomorrow if that moment has
    already passed (a slot exactly at now counts as passed). From there:
        daily:     the candidate itself
        weekly:    the first Monday strictly after the candidate
        biweekly:  the weekly result plus 7 days
        monthly:   day 1 of the month after now
        custom:    the candidate plus custom_days; without custom_days, the
                   candidate itself

    Args:
        frequency: Schedule frequency
        preferred_time: "HH:MM" in UTC
        custom_days: Interval for the custom frequency
        now: Current time (injectable for tests); naive values are taken as UTC

    Returns:
        Timezone-aware UTC datetime
    """
    frequency = ScheduleFrequency(frequency)
    hour, minute = parse_preferred_time(preferred_time)

    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)

    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)

    if frequency == ScheduleFrequency.daily:
        return candidate

    if frequency in (ScheduleFrequency.weekly, ScheduleFrequency.biweekly):
        # Monday is weekday 0; a Monday candidate moves to the following Monday
        days_until_monday = (7 - candidate.weekday()) % 7 or 7
        next_monday = candidate + timedelta(days=days_until_monday)
        if frequency == ScheduleFrequency.biweekly:
            next_monday += timedelta(days=7)
        return next_monday

    if frequency == ScheduleFrequency.monthly:
        if now.month == 12:
            return candidate.replace(year=now.year + 1, month=1, day=1)
        return candidate.replace(year=now.year, month=now.month + 1, day=1)

    if custom_days and custom_days > 0:
        return candidate + timedelta(days=custom_days)
    return candidate
