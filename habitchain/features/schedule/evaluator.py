"""
Day bucketing and recurrence evaluation.

Weekday indices follow `date.weekday()`: Monday=0 .. Sunday=6.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from habitchain.core.errors import ConfigError
from habitchain.models.habit import HabitSchedule

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_SCHEDULE_DAYS = {
    HabitSchedule.DAILY: frozenset(range(7)),
    HabitSchedule.WEEKDAYS: frozenset({0, 1, 2, 3, 4}),
    HabitSchedule.WEEKENDS: frozenset({5, 6}),
    HabitSchedule.MON_WED_FRI: frozenset({0, 2, 4}),
    HabitSchedule.TUE_THU: frozenset({1, 3}),
}


@lru_cache(maxsize=256)
def resolve_timezone(name: str) -> ZoneInfo:
    if not name or not isinstance(name, str):
        raise ConfigError(f"Invalid timezone: {name!r}")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid timezone: {name!r}") from exc


def local_date(instant: datetime, tz_name: str) -> date:
    """Civil date of `instant` in `tz_name`. Naive instants are treated as UTC."""
    aware = instant if instant.tzinfo else instant.replace(tzinfo=timezone.utc)
    return aware.astimezone(resolve_timezone(tz_name)).date()


def day_key(instant: datetime, tz_name: str) -> str:
    return local_date(instant, tz_name).isoformat()


def parse_day_key(key: str) -> date:
    return date.fromisoformat(key)


def previous_day_key(key: str) -> str:
    return (parse_day_key(key) - timedelta(days=1)).isoformat()


def _as_schedule(rule: Union[str, HabitSchedule]) -> Union[HabitSchedule, None]:
    if isinstance(rule, HabitSchedule):
        return rule
    try:
        return HabitSchedule(rule)
    except ValueError:
        return None


def is_custom_rule_valid(rule: str) -> bool:
    text = (rule or "").lower()
    return any(name in text for name in WEEKDAY_NAMES)


def is_scheduled_on(rule: Union[str, HabitSchedule], weekday_index: int) -> bool:
    """Whether a habit with `rule` is due on the given weekday."""
    schedule = _as_schedule(rule)
    if schedule is not None:
        return weekday_index in _SCHEDULE_DAYS[schedule]
    # Custom rules name their days, e.g. "Monday, Thursday".
    return WEEKDAY_NAMES[weekday_index % 7] in (rule or "").lower()


def is_scheduled_on_day(rule: Union[str, HabitSchedule], key: str) -> bool:
    return is_scheduled_on(rule, parse_day_key(key).weekday())
