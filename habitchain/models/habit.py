"""
habitchain/models/habit.py
Habit aggregate and its per-day completion events.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class HabitSchedule(str, Enum):
    """Built-in recurrence rules. Custom rules are stored as free text naming weekdays."""

    DAILY = "Daily"
    WEEKDAYS = "Weekdays"
    WEEKENDS = "Weekends"
    MON_WED_FRI = "Mon, Wed, Fri"
    TUE_THU = "Tue, Thu"


class HabitStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class HabitPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class HabitCategory(str, Enum):
    MINDFULNESS = "Mindfulness"
    HEALTH = "Health"
    LEARNING = "Learning"
    PRODUCTIVITY = "Productivity"
    DIGITAL_WELLBEING = "Digital Wellbeing"


HABIT_STATUS_TRANSITIONS: Dict[HabitStatus, FrozenSet[HabitStatus]] = {
    HabitStatus.ACTIVE: frozenset({HabitStatus.PAUSED, HabitStatus.ARCHIVED}),
    HabitStatus.PAUSED: frozenset({HabitStatus.ACTIVE, HabitStatus.ARCHIVED}),
    HabitStatus.ARCHIVED: frozenset({HabitStatus.ACTIVE}),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


NOTES_MAX_LENGTH = 500


class CompletionEvent(BaseModel):
    """One completion, bucketed by the user's local calendar day."""

    model_config = ConfigDict(frozen=True)

    day_key: str = Field(description="YYYY-MM-DD in the user's timezone")
    completed_at: datetime
    completed: bool = True
    notes: Optional[str] = Field(default=None, max_length=NOTES_MAX_LENGTH)


class Habit(BaseModel):
    """
    Habit aggregate. `streak` caches the streak calculator's output and is
    rewritten on every completion mutation.
    """

    id: str
    user_id: str
    name: str = Field(min_length=1, max_length=120)
    description: str = ""
    category: HabitCategory = HabitCategory.HEALTH
    schedule: str = HabitSchedule.DAILY.value
    time_of_day: str = "Morning"
    priority: HabitPriority = HabitPriority.MEDIUM
    streak: int = Field(default=0, ge=0)
    milestone_day_key: Optional[str] = Field(default=None, description="Day a streak milestone was last paid for this habit")
    status: HabitStatus = HabitStatus.ACTIVE
    completions: List[CompletionEvent] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def new(cls, *, user_id: str, name: str, now: Optional[datetime] = None, **fields) -> "Habit":
        ts = now or _utcnow()
        return cls(id=uuid4().hex, user_id=user_id, name=name, created_at=ts, updated_at=ts, **fields)

    def completed_day_keys(self) -> set[str]:
        return {c.day_key for c in self.completions if c.completed}

    def is_completed_on(self, day_key: str) -> bool:
        return any(c.completed and c.day_key == day_key for c in self.completions)


class HabitCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str = Field(default="", max_length=1000)
    category: HabitCategory = HabitCategory.HEALTH
    schedule: str = HabitSchedule.DAILY.value
    time_of_day: str = "Morning"
    priority: HabitPriority = HabitPriority.MEDIUM
