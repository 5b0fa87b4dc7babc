from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Union

from habitchain.features.schedule.evaluator import is_scheduled_on, local_date, parse_day_key
from habitchain.models.habit import HabitSchedule

MAX_STREAK_SCAN_DAYS = 365


def compute_streak(
    completed_day_keys: Iterable[str],
    rule: Union[str, HabitSchedule],
    tz_name: str,
    now: Optional[datetime] = None,
) -> int:
    """Current streak ending today or yesterday in the user's timezone.

    Unscheduled days are stepped over; a missing scheduled day ends the walk.
    """
    completed = set(completed_day_keys)
    if not completed:
        return 0

    today = local_date(now or datetime.now(timezone.utc), tz_name)
    yesterday = today - timedelta(days=1)

    if today.isoformat() in completed:
        cursor = today
    elif yesterday.isoformat() in completed:
        cursor = yesterday
    else:
        return 0

    streak = 0
    for _ in range(MAX_STREAK_SCAN_DAYS):
        if is_scheduled_on(rule, cursor.weekday()):
            if cursor.isoformat() in completed:
                streak += 1
            else:
                break
        cursor -= timedelta(days=1)
    return streak


def longest_streak(completed_day_keys: Iterable[str], rule: Union[str, HabitSchedule]) -> int:
    """Longest run of consecutive scheduled days with a completion, over all history."""
    completed = sorted({parse_day_key(k) for k in completed_day_keys})
    if not completed:
        return 0

    best = 0
    run = 0
    cursor = completed[0]
    end = completed[-1]
    completed_set = set(completed)
    while cursor <= end:
        if is_scheduled_on(rule, cursor.weekday()):
            if cursor in completed_set:
                run += 1
                best = max(best, run)
            else:
                run = 0
        cursor += timedelta(days=1)
    return best
