"""
habitchain/models/chain.py
Chain definitions and chain sessions (a linear run through the chain's habits).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"


SESSION_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMPLETED, SessionStatus.ABANDONED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.ABANDONED: frozenset(),
}

STEP_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.ACTIVE}),
    StepStatus.ACTIVE: frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


class ChainStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    habit_id: str
    habit_name: str
    expected_minutes: int = Field(default=5, ge=0, le=24 * 60)


class ChainDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str = Field(min_length=1, max_length=120)
    description: str = ""
    time_of_day: str = "Morning"
    steps: List[ChainStep] = Field(min_length=1)
    created_at: datetime

    @property
    def total_minutes(self) -> int:
        return sum(step.expected_minutes for step in self.steps)


class ChainStepRequest(BaseModel):
    habit_id: str
    expected_minutes: int = Field(default=5, ge=0, le=24 * 60)


class ChainCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str = Field(default="", max_length=1000)
    time_of_day: str = "Morning"
    steps: List[ChainStepRequest] = Field(min_length=1, max_length=50)


class HabitStepState(BaseModel):
    habit_id: str
    habit_name: str
    expected_minutes: int = 0
    order: int
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None


class ChainSession(BaseModel):
    """
    One run through a chain. The step list is a snapshot of the chain taken
    at start, so later edits to the chain never reach a running session.

    `version` increments on every save and guards compare-and-swap updates.
    """

    id: str
    user_id: str
    chain_id: str
    chain_name: str
    status: SessionStatus = SessionStatus.ACTIVE
    current_index: int = 0
    steps: List[HabitStepState]
    started_at: datetime
    completed_at: Optional[datetime] = None
    actual_duration_minutes: Optional[int] = None
    expected_duration_minutes: int = 0
    paused_at: Optional[datetime] = None
    pause_accumulated_minutes: int = 0
    on_break: bool = False
    break_started_at: Optional[datetime] = None
    break_minutes_hint: Optional[int] = None
    chain_bonus_xp: int = 0
    version: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def start(cls, *, user_id: str, chain: ChainDefinition, now: Optional[datetime] = None) -> "ChainSession":
        ts = now or datetime.now(timezone.utc)
        steps = [
            HabitStepState(
                habit_id=step.habit_id,
                habit_name=step.habit_name,
                expected_minutes=step.expected_minutes,
                order=index,
            )
            for index, step in enumerate(chain.steps)
        ]
        steps[0].status = StepStatus.ACTIVE
        steps[0].started_at = ts
        return cls(
            id=uuid4().hex,
            user_id=user_id,
            chain_id=chain.id,
            chain_name=chain.name,
            steps=steps,
            started_at=ts,
            expected_duration_minutes=chain.total_minutes,
            created_at=ts,
            updated_at=ts,
        )

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def current_step(self) -> Optional[HabitStepState]:
        if 0 <= self.current_index < len(self.steps):
            return self.steps[self.current_index]
        return None

    @property
    def is_last_step(self) -> bool:
        return self.current_index == len(self.steps) - 1

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for s in self.steps if s.status == StepStatus.SKIPPED)

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    def invariant_violations(self) -> List[str]:
        """Return every broken step-ordering rule (empty when consistent)."""
        problems: List[str] = []
        if not self.steps:
            return ["session has no steps"]
        if not 0 <= self.current_index < len(self.steps):
            problems.append(f"current_index {self.current_index} out of range")
            return problems
        done = {StepStatus.COMPLETED, StepStatus.SKIPPED}
        for index, step in enumerate(self.steps):
            if index < self.current_index and step.status not in done:
                problems.append(f"step {index} before cursor is {step.status.value}")
            if index > self.current_index and step.status != StepStatus.PENDING:
                problems.append(f"step {index} after cursor is {step.status.value}")
        current = self.steps[self.current_index].status
        if self.status == SessionStatus.ACTIVE and current != StepStatus.ACTIVE:
            problems.append(f"active session cursor step is {current.value}")
        if self.status == SessionStatus.COMPLETED and current not in done:
            problems.append(f"completed session cursor step is {current.value}")
        active_steps = sum(1 for s in self.steps if s.status == StepStatus.ACTIVE)
        if self.status == SessionStatus.ACTIVE and active_steps != 1:
            problems.append(f"{active_steps} active steps in an active session")
        return problems
