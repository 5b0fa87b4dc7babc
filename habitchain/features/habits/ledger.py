"""
Habit Completion Ledger

One completed event per habit per user-local day. The day check and the
insert are a single conditional write in the store, and the cached
`streak` is recomputed from the full completion set on every mutation.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from habitchain.core.errors import InvalidTransitionError, NotFoundError
from habitchain.core.logging import log_event
from habitchain.core.store import UnitOfWork
from habitchain.features.schedule.evaluator import day_key, is_scheduled_on_day
from habitchain.features.streaks.calculator import compute_streak
from habitchain.models.habit import CompletionEvent, Habit, HabitStatus


@dataclass
class LedgerChange:
    habit: Habit
    day_key: str
    old_streak: int
    new_streak: int


class HabitLedger:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _load(self, uow: UnitOfWork, user_id: str, habit_id: str) -> Habit:
        habit = uow.habits.get(user_id, habit_id)
        if habit is None:
            raise NotFoundError("Habit not found")
        return habit

    def complete(
        self,
        uow: UnitOfWork,
        user_id: str,
        habit_id: str,
        tz_name: str,
        *,
        now: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> LedgerChange:
        ts = now or self.clock()
        habit = self._load(uow, user_id, habit_id)
        if habit.status == HabitStatus.ARCHIVED:
            raise InvalidTransitionError("Archived habits cannot be completed")

        today = day_key(ts, tz_name)
        uow.habits.add_completion(habit.id, CompletionEvent(day_key=today, completed_at=ts, notes=notes))

        keys = habit.completed_day_keys() | {today}
        change = self._restreak(uow, habit, keys, tz_name, ts, today)
        log_event(
            "info",
            "habit.completed",
            user_id=user_id,
            event_type="habit.completed",
            extra={"habit_id": habit.id, "day_key": today, "streak": change.new_streak},
        )
        return change

    def skip(
        self,
        uow: UnitOfWork,
        user_id: str,
        habit_id: str,
        tz_name: str,
        *,
        now: Optional[datetime] = None,
    ) -> LedgerChange:
        """Undo today's completion. Raises NotCompletedError when there is none."""
        ts = now or self.clock()
        habit = self._load(uow, user_id, habit_id)
        today = day_key(ts, tz_name)
        uow.habits.remove_completion(habit.id, today)

        keys = habit.completed_day_keys() - {today}
        change = self._restreak(uow, habit, keys, tz_name, ts, today)
        log_event(
            "info",
            "habit.skipped",
            user_id=user_id,
            event_type="habit.skipped",
            extra={"habit_id": habit.id, "day_key": today, "streak": change.new_streak},
        )
        return change

    def _restreak(self, uow: UnitOfWork, habit: Habit, keys, tz_name: str, ts: datetime, today: str) -> LedgerChange:
        old_streak = habit.streak
        habit.streak = compute_streak(keys, habit.schedule, tz_name, now=ts)
        habit.updated_at = ts
        uow.habits.save(habit)
        return LedgerChange(habit=habit, day_key=today, old_streak=old_streak, new_streak=habit.streak)

    def refresh_streak(self, uow: UnitOfWork, habit: Habit, tz_name: str, *, now: Optional[datetime] = None) -> Habit:
        """Recompute a stored streak that may have decayed since the last mutation."""
        ts = now or self.clock()
        fresh = compute_streak(habit.completed_day_keys(), habit.schedule, tz_name, now=ts)
        if fresh != habit.streak:
            habit.streak = fresh
            uow.habits.save(habit)
        return habit

    def daily_totals(self, uow: UnitOfWork, user_id: str, today: str) -> Tuple[int, int, int]:
        """(completed, scheduled, longest stored streak) over active habits due today."""
        active = uow.habits.list(user_id, status=HabitStatus.ACTIVE)
        scheduled = [h for h in active if is_scheduled_on_day(h.schedule, today)]
        completed = sum(1 for h in scheduled if h.is_completed_on(today))
        longest = max((h.streak for h in active), default=0)
        return completed, len(scheduled), longest
