"""
Calendar arithmetic for weekly recurring class templates.

Everything here is pure: the reference instant is always passed in, never read
from a clock, so results are repeatable for a fixed input.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sessionswap.core.exceptions import ConfigurationError, ValidationError

WEEKDAY_TOKENS: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)
DAYS_PER_WEEK = len(WEEKDAY_TOKENS)

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def to_monday_zero_ordinal(native_index: int) -> int:
    """Convert a Sunday=0 day index (JavaScript/cron numbering) to Monday=0 … Sunday=6."""
    if not 0 <= native_index < DAYS_PER_WEEK:
        raise ValidationError(f"Day index must be between 0 and 6, got {native_index}")
    return (native_index + 6) % DAYS_PER_WEEK


def weekday_ordinal(weekday: str) -> int:
    token = str(getattr(weekday, "value", weekday)).strip().lower()
    try:
        return WEEKDAY_TOKENS.index(token)
    except ValueError:
        raise ValidationError(f"Unknown weekday '{weekday}'", details={"weekday": str(weekday)}) from None


def parse_time_of_day(value: str) -> tuple[int, int]:
    match = TIME_PATTERN.match(value or "")
    if match is None:
        raise ValidationError("Time must be in HH:MM 24-hour format", details={"time": value})
    return int(match.group(1)), int(match.group(2))


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown schedule timezone '{name}'") from exc


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_weekday_ordinal(instant: datetime, tz: tzinfo = timezone.utc) -> int:
    return as_utc(instant).astimezone(tz).weekday()


def next_occurrence(
    weekday: str,
    start_time: str,
    from_instant: datetime,
    duration_minutes: int,
    tz: tzinfo = timezone.utc,
) -> tuple[datetime, datetime]:
    """
    Next concrete (start, end) of a weekly recurrence, strictly after today.

    When the recurrence falls on from_instant's own weekday the result is exactly
    one week later, even if today's slot has not started yet. Times are applied in
    `tz`; end is start plus duration in exact minutes, so it may cross midnight.
    """
    if duration_minutes <= 0:
        raise ValidationError("Duration must be a positive number of minutes", details={"duration": duration_minutes})

    target = weekday_ordinal(weekday)
    hour, minute = parse_time_of_day(start_time)

    local_now = as_utc(from_instant).astimezone(tz)
    days_until = (target - local_now.weekday() + DAYS_PER_WEEK) % DAYS_PER_WEEK
    if days_until == 0:
        days_until = DAYS_PER_WEEK

    target_date = local_now.date() + timedelta(days=days_until)
    start = datetime(target_date.year, target_date.month, target_date.day, hour, minute, tzinfo=tz)
    # Aware arithmetic within one zone is wall-clock; go through UTC for elapsed minutes.
    end = (start.astimezone(timezone.utc) + timedelta(minutes=duration_minutes)).astimezone(tz)
    return start, end
