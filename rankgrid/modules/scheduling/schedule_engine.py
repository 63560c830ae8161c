"""Next-run date math for daily, weekly and monthly schedules (all UTC)."""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

from rankgrid.exceptions import ConfigurationError
from rankgrid.models.schedule import Frequency

# Cron convention: 0 = Sunday ... 6 = Saturday.
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def validate_schedule(
    frequency: Frequency | str,
    hour: int,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> Frequency:
    """Check schedule parameters and return the parsed frequency."""
    try:
        freq = Frequency(frequency)
    except ValueError:
        raise ConfigurationError(f"Unknown schedule frequency: {frequency!r}") from None
    if hour is None or not 0 <= hour <= 23:
        raise ConfigurationError(f"Hour must be 0-23, got {hour!r}")
    if freq is Frequency.WEEKLY and (day_of_week is None or not 0 <= day_of_week <= 6):
        raise ConfigurationError(f"Weekly schedules need day_of_week 0-6, got {day_of_week!r}")
    if freq is Frequency.MONTHLY and (day_of_month is None or not 1 <= day_of_month <= 31):
        raise ConfigurationError(f"Monthly schedules need day_of_month 1-31, got {day_of_month!r}")
    return freq


def _cron_weekday(dt: datetime) -> int:
    return (dt.weekday() + 1) % 7


def _monthly_candidate(year: int, month: int, day_of_month: int, hour: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day_of_month, last_day), hour, tzinfo=timezone.utc)


def compute_next_run(
    frequency: Frequency | str,
    hour: int,
    from_dt: datetime,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> datetime:
    """Return the first scheduled instant strictly after ``from_dt``.

    Monthly days beyond the end of a month clamp to its last day, so a
    schedule on the 31st fires on 30 April and 28/29 February.

    Raises:
        ConfigurationError: unknown frequency or out-of-range parameters.
    """
    freq = validate_schedule(frequency, hour, day_of_week, day_of_month)
    start = as_utc(from_dt)
    today_at_hour = start.replace(hour=hour, minute=0, second=0, microsecond=0)

    if freq is Frequency.DAILY:
        if today_at_hour <= start:
            today_at_hour += timedelta(days=1)
        return today_at_hour

    if freq is Frequency.WEEKLY:
        candidate = today_at_hour + timedelta(days=(day_of_week - _cron_weekday(start)) % 7)
        if candidate <= start:
            candidate += timedelta(days=7)
        return candidate

    year, month = start.year, start.month
    while True:
        candidate = _monthly_candidate(year, month, day_of_month, hour)
        if candidate > start:
            return candidate
        month += 1
        if month > 12:
            year, month = year + 1, 1


def is_due(next_scheduled_at: Optional[datetime], now: datetime) -> bool:
    return next_scheduled_at is not None and as_utc(next_scheduled_at) <= as_utc(now)


def describe_schedule(
    frequency: Optional[str],
    hour: int = 9,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> str:
    """Human readable form, e.g. ``Weekly on Monday at 09:00 UTC``."""
    if not frequency:
        return "Not scheduled"
    at = f"at {hour:02d}:00 UTC"
    freq = Frequency(frequency)
    if freq is Frequency.DAILY:
        return f"Daily {at}"
    if freq is Frequency.WEEKLY:
        return f"Weekly on {DAY_NAMES[day_of_week]} {at}"
    return f"Monthly on day {day_of_month} {at}"
