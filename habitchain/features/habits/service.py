"""Habit definitions: create, list, status changes, delete."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

from habitchain.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from habitchain.core.logging import log_event
from habitchain.core.store import UnitOfWork
from habitchain.features.habits.ledger import HabitLedger
from habitchain.features.schedule.evaluator import is_custom_rule_valid
from habitchain.models.habit import (
    HABIT_STATUS_TRANSITIONS,
    Habit,
    HabitCreateRequest,
    HabitSchedule,
    HabitStatus,
)


def validate_schedule(rule: str) -> str:
    rule = (rule or "").strip()
    if rule in {s.value for s in HabitSchedule}:
        return rule
    if is_custom_rule_valid(rule):
        return rule
    raise ValidationError(f"Unknown schedule {rule!r}; name at least one weekday")


class HabitService:
    def __init__(self, ledger: HabitLedger, clock: Optional[Callable[[], datetime]] = None):
        self.ledger = ledger
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def create(self, uow: UnitOfWork, user_id: str, request: HabitCreateRequest) -> Habit:
        name = request.name.strip()
        if not name:
            raise ValidationError("Habit name is required")
        habit = Habit.new(
            user_id=user_id,
            name=name,
            now=self.clock(),
            description=request.description,
            category=request.category,
            schedule=validate_schedule(request.schedule),
            time_of_day=request.time_of_day,
            priority=request.priority,
        )
        uow.habits.insert(habit)
        log_event("info", "habit.created", user_id=user_id, event_type="habit.created", extra={"habit_id": habit.id})
        return habit

    def list(self, uow: UnitOfWork, user_id: str, tz_name: str, status: Optional[HabitStatus] = None) -> List[Habit]:
        now = self.clock()
        return [self.ledger.refresh_streak(uow, h, tz_name, now=now) for h in uow.habits.list(user_id, status)]

    def get(self, uow: UnitOfWork, user_id: str, habit_id: str) -> Habit:
        habit = uow.habits.get(user_id, habit_id)
        if habit is None:
            raise NotFoundError("Habit not found")
        return habit

    def update_status(self, uow: UnitOfWork, user_id: str, habit_id: str, status: HabitStatus) -> Habit:
        habit = self.get(uow, user_id, habit_id)
        target = HabitStatus(status)
        if target == habit.status:
            return habit
        if target not in HABIT_STATUS_TRANSITIONS[habit.status]:
            raise InvalidTransitionError(f"Cannot move habit from {habit.status.value} to {target.value}")
        previous = habit.status
        habit.status = target
        habit.updated_at = self.clock()
        uow.habits.save(habit)
        log_event(
            "info",
            "habit.status_changed",
            user_id=user_id,
            event_type="habit.status_changed",
            extra={"habit_id": habit.id, "from": previous.value, "to": target.value},
        )
        return habit

    def delete(self, uow: UnitOfWork, user_id: str, habit_id: str) -> None:
        if not uow.habits.delete(user_id, habit_id):
            raise NotFoundError("Habit not found")
        log_event("info", "habit.deleted", user_id=user_id, event_type="habit.deleted", extra={"habit_id": habit_id})
