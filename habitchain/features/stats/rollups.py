"""
Pure rollups over habit completion data.

Windows are schedule-aware: a day only counts toward a habit's rate if the
habit was due that day and already existed (by its local creation date).
Only active habits are counted.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Tuple

from habitchain.features.schedule.evaluator import is_scheduled_on, local_date
from habitchain.features.stats.models import (
    CategoryBreakdown,
    DailyPoint,
    HabitAnalytics,
    HabitStats,
    HabitStreakSummary,
)
from habitchain.features.streaks.calculator import compute_streak, longest_streak
from habitchain.models.habit import Habit, HabitStatus

SERIES_DAYS = 14


def _rate(done: int, due: int) -> float:
    return round(done * 100.0 / due, 1) if due else 0.0


def _window(today: date, days: int) -> List[date]:
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def _due_and_done(habit: Habit, days: Iterable[date], tz_name: str) -> Tuple[int, int]:
    created = local_date(habit.created_at, tz_name)
    completed = habit.completed_day_keys()
    due = done = 0
    for day in days:
        if day < created or not is_scheduled_on(habit.schedule, day.weekday()):
            continue
        due += 1
        if day.isoformat() in completed:
            done += 1
    return due, done


def window_rate(habits: Iterable[Habit], today: date, days: int, tz_name: str) -> float:
    window = _window(today, days)
    due = done = 0
    for habit in habits:
        h_due, h_done = _due_and_done(habit, window, tz_name)
        due += h_due
        done += h_done
    return _rate(done, due)


def daily_series(habits: List[Habit], today: date, days: int, tz_name: str) -> List[DailyPoint]:
    points = []
    for day in _window(today, days):
        key = day.isoformat()
        scheduled = completed = 0
        for habit in habits:
            if day < local_date(habit.created_at, tz_name):
                continue
            if not is_scheduled_on(habit.schedule, day.weekday()):
                continue
            scheduled += 1
            if habit.is_completed_on(key):
                completed += 1
        points.append(DailyPoint(day_key=key, scheduled=scheduled, completed=completed, completion_rate=_rate(completed, scheduled)))
    return points


def consistency_score(habits: List[Habit], today: date, tz_name: str, days: int = 30) -> float:
    series = daily_series(habits, today, days, tz_name)
    due_days = [p for p in series if p.scheduled]
    perfect = sum(1 for p in due_days if p.completed == p.scheduled)
    return _rate(perfect, len(due_days))


def build_stats(user_id: str, habits: List[Habit], tz_name: str, now: datetime) -> HabitStats:
    today = local_date(now, tz_name)
    today_key = today.isoformat()
    active = [h for h in habits if h.status == HabitStatus.ACTIVE]

    summaries = []
    for habit in active:
        keys = habit.completed_day_keys()
        due, done = _due_and_done(habit, _window(today, 30), tz_name)
        summaries.append(
            HabitStreakSummary(
                habit_id=habit.id,
                name=habit.name,
                current_streak=compute_streak(keys, habit.schedule, tz_name, now=now),
                longest_streak=longest_streak(keys, habit.schedule),
                completion_rate_30d=_rate(done, due),
            )
        )
    summaries.sort(key=lambda s: (-s.current_streak, s.name))

    by_category: Dict[str, List[Habit]] = defaultdict(list)
    for habit in active:
        by_category[habit.category.value].append(habit)
    categories = [
        CategoryBreakdown(
            category=name,
            habits=len(members),
            completion_rate_30d=window_rate(members, today, 30, tz_name),
        )
        for name, members in sorted(by_category.items())
    ]

    due_today = [h for h in active if is_scheduled_on(h.schedule, today.weekday())]
    return HabitStats(
        user_id=user_id,
        total_habits=len(habits),
        active_habits=len(active),
        scheduled_today=len(due_today),
        completed_today=sum(1 for h in due_today if h.is_completed_on(today_key)),
        completion_rate_7d=window_rate(active, today, 7, tz_name),
        completion_rate_30d=window_rate(active, today, 30, tz_name),
        consistency_score=consistency_score(active, today, tz_name),
        longest_streak=max((s.longest_streak for s in summaries), default=0),
        categories=categories,
        habits=summaries,
        daily=daily_series(active, today, SERIES_DAYS, tz_name),
        generated_at=now,
    )


def build_analytics(user_id: str, habits: List[Habit], tz_name: str, now: datetime, days: int) -> HabitAnalytics:
    today = local_date(now, tz_name)
    active = [h for h in habits if h.status == HabitStatus.ACTIVE]
    series = daily_series(active, today, days, tz_name)
    scheduled = sum(p.scheduled for p in series)
    completed = sum(p.completed for p in series)
    return HabitAnalytics(
        user_id=user_id,
        days=days,
        completion_rate=_rate(completed, scheduled),
        total_scheduled=scheduled,
        total_completed=completed,
        daily=series,
    )
