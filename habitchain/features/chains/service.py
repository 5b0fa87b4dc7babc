"""
Chain Session State Machine

A session walks a fixed, linear list of habits one step at a time:

    start -> (complete | skip)* -> completed
    start -> ... -> abandon     -> abandoned

Pauses and breaks share one accumulated-minutes pool that is subtracted
from the elapsed time when the session finishes. Steps cannot be completed
or skipped while the session is paused or on a break.

Each public method is one user action. It runs inside the caller's unit of
work and ends with a versioned save, so the step transition, the underlying
habit completion and the XP awards commit together or not at all.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from habitchain.core.errors import (
    AlreadyCompletedError,
    InvalidTransitionError,
    NotFoundError,
    NotOnBreakError,
    NotPausedError,
    ValidationError,
)
from habitchain.core.logging import log_event
from habitchain.core.store import UnitOfWork
from habitchain.features.habits.ledger import HabitLedger
from habitchain.features.rewards.ledger import RewardLedger
from habitchain.features.rewards.rules import chain_bonus
from habitchain.features.rewards.triggers import CompletionRewarder, CompletionRewards
from habitchain.models.chain import (
    SESSION_TRANSITIONS,
    STEP_TRANSITIONS,
    ChainSession,
    HabitStepState,
    SessionStatus,
    StepStatus,
)
from habitchain.models.reward import AwardResult, RewardSource

PAST_SESSIONS_DEFAULT_LIMIT = 50
PAST_SESSIONS_MAX_LIMIT = 100
MAX_BREAK_MINUTES = 24 * 60


@dataclass
class StepOutcome:
    session: ChainSession
    xp_earned: int = 0
    chain_completed: bool = False
    chain_bonus: int = 0
    rewards: Optional[CompletionRewards] = None
    bonus_award: Optional[AwardResult] = None
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "session": self.session.model_dump(mode="json"),
            "xp_earned": self.xp_earned,
            "chain_completed": self.chain_completed,
            "chain_bonus": self.chain_bonus,
            "rewards": self.rewards.as_dict() if self.rewards else None,
            "bonus_award": self.bonus_award.model_dump(mode="json") if self.bonus_award else None,
            "warnings": self.warnings,
        }


def _minutes_between(start: datetime, end: datetime) -> int:
    return max(0, math.floor((end - start).total_seconds() / 60))


def _move_step(step: HabitStepState, target: StepStatus) -> None:
    if target not in STEP_TRANSITIONS[step.status]:
        raise InvalidTransitionError(f"Step cannot go from {step.status.value} to {target.value}")
    step.status = target


def _move_session(session: ChainSession, target: SessionStatus) -> None:
    if target not in SESSION_TRANSITIONS[session.status]:
        raise InvalidTransitionError(f"Session is already {session.status.value}")
    session.status = target


class ChainSessionService:
    def __init__(
        self,
        habit_ledger: HabitLedger,
        reward_ledger: RewardLedger,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.habit_ledger = habit_ledger
        self.reward_ledger = reward_ledger
        self.rewarder = CompletionRewarder(habit_ledger, reward_ledger)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Loading and guards
    # ------------------------------------------------------------------

    def _load(self, uow: UnitOfWork, user_id: str, session_id: str) -> ChainSession:
        session = uow.sessions.get(user_id, session_id)
        if session is None:
            raise NotFoundError("Chain session not found")
        return session

    @staticmethod
    def _require_active(session: ChainSession) -> None:
        if session.status != SessionStatus.ACTIVE:
            raise InvalidTransitionError(f"Session is {session.status.value}")

    @staticmethod
    def _require_running(session: ChainSession) -> None:
        if session.is_paused:
            raise InvalidTransitionError("Session is paused")
        if session.on_break:
            raise InvalidTransitionError("Session is on a break")

    def _save(self, uow: UnitOfWork, session: ChainSession, now: datetime) -> ChainSession:
        expected = session.version
        session.updated_at = now
        return uow.sessions.save(session, expected)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, uow: UnitOfWork, user_id: str, chain_id: str) -> ChainSession:
        chain = uow.chains.get(user_id, chain_id)
        if chain is None:
            raise NotFoundError("Chain not found")
        session = ChainSession.start(user_id=user_id, chain=chain, now=self.clock())
        uow.sessions.insert_active(session)
        log_event(
            "info",
            "chain.started",
            user_id=user_id,
            event_type="chain.started",
            extra={"session_id": session.id, "chain_id": chain.id, "steps": session.total_steps},
        )
        return session

    def get_active(self, uow: UnitOfWork, user_id: str) -> Optional[ChainSession]:
        return uow.sessions.get_active(user_id)

    def past_sessions(self, uow: UnitOfWork, user_id: str, limit: int = PAST_SESSIONS_DEFAULT_LIMIT) -> List[ChainSession]:
        if not 1 <= limit <= PAST_SESSIONS_MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {PAST_SESSIONS_MAX_LIMIT}")
        return uow.sessions.list_past(user_id, limit)

    def complete_current(
        self,
        uow: UnitOfWork,
        user_id: str,
        session_id: str,
        tz_name: str,
        notes: Optional[str] = None,
    ) -> StepOutcome:
        now = self.clock()
        session = self._load(uow, user_id, session_id)
        self._require_active(session)
        self._require_running(session)

        step = session.current_step
        _move_step(step, StepStatus.COMPLETED)
        step.completed_at = now
        step.notes = notes

        outcome = StepOutcome(session=session)
        self._complete_underlying_habit(uow, user_id, step, tz_name, now, outcome)
        self._advance(uow, session, now, outcome)
        outcome.session = self._save(uow, session, now)
        log_event(
            "info",
            "chain.step_completed",
            user_id=user_id,
            event_type="chain.step_completed",
            extra={"session_id": session.id, "index": step.order, "xp": outcome.xp_earned},
        )
        return outcome

    def skip_current(self, uow: UnitOfWork, user_id: str, session_id: str, reason: Optional[str] = None) -> StepOutcome:
        now = self.clock()
        session = self._load(uow, user_id, session_id)
        self._require_active(session)
        self._require_running(session)

        step = session.current_step
        _move_step(step, StepStatus.SKIPPED)
        step.completed_at = now
        step.notes = reason

        outcome = StepOutcome(session=session)
        self._advance(uow, session, now, outcome)
        outcome.session = self._save(uow, session, now)
        log_event(
            "info",
            "chain.step_skipped",
            user_id=user_id,
            event_type="chain.step_skipped",
            extra={"session_id": session.id, "index": step.order},
        )
        return outcome

    def pause(self, uow: UnitOfWork, user_id: str, session_id: str) -> ChainSession:
        now = self.clock()
        session = self._load(uow, user_id, session_id)
        self._require_active(session)
        if session.on_break:
            raise InvalidTransitionError("End the break before pausing")
        if session.is_paused:
            raise InvalidTransitionError("Session is already paused")
        session.paused_at = now
        log_event("info", "chain.paused", user_id=user_id, event_type="chain.paused", extra={"session_id": session.id})
        return self._save(uow, session, now)

    def resume(self, uow: UnitOfWork, user_id: str, session_id: str) -> ChainSession:
        now = self.clock()
        session = self._load(uow, user_id, session_id)
        self._require_active(session)
        if not session.is_paused:
            raise NotPausedError("Session is not paused")
        minutes = _minutes_between(session.paused_at, now)
        session.pause_accumulated_minutes += minutes
        session.paused_at = None
        log_event(
            "info",
            "chain.resumed",
            user_id=user_id,
            event_type="chain.resumed",
            extra={"session_id": session.id, "paused_minutes": minutes},
        )
        return self._save(uow, session, now)

    def start_break(self, uow: UnitOfWork, user_id: str, session_id: str, minutes: Optional[int] = None) -> ChainSession:
        if minutes is not None and not 0 <= minutes <= MAX_BREAK_MINUTES:
            raise ValidationError(f"Break length must be between 0 and {MAX_BREAK_MINUTES} minutes")
        now = self.clock()
        session = self._load(uow, user_id, session_id)
        self._require_active(session)
        if session.is_paused:
            raise InvalidTransitionError("Resume the session before taking a break")
        if session.on_break:
            raise InvalidTransitionError("Session is already on a break")
        session.on_break = True
        session.break_started_at = now
        session.break_minutes_hint = minutes
        log_event(
            "info",
            "chain.break_started",
            user_id=user_id,
            event_type="chain.break_started",
            extra={"session_id": session.id, "minutes": minutes},
        )
        return self._save(uow, session, now)

    def end_break(self, uow: UnitOfWork, user_id: str, session_id: str) -> ChainSession:
        now = self.clock()
        session = self._load(uow, user_id, session_id)
        self._require_active(session)
        if not session.on_break:
            raise NotOnBreakError("Session is not on a break")
        minutes = self._close_break(session, now)
        log_event(
            "info",
            "chain.break_ended",
            user_id=user_id,
            event_type="chain.break_ended",
            extra={"session_id": session.id, "break_minutes": minutes},
        )
        return self._save(uow, session, now)

    def abandon(self, uow: UnitOfWork, user_id: str, session_id: str) -> ChainSession:
        now = self.clock()
        session = self._load(uow, user_id, session_id)
        _move_session(session, SessionStatus.ABANDONED)
        self._close_open_intervals(session, now)
        session.completed_at = now
        session.actual_duration_minutes = self._actual_duration(session, now)
        log_event(
            "info",
            "chain.abandoned",
            user_id=user_id,
            event_type="chain.abandoned",
            extra={"session_id": session.id, "index": session.current_index},
        )
        return self._save(uow, session, now)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _complete_underlying_habit(
        self,
        uow: UnitOfWork,
        user_id: str,
        step: HabitStepState,
        tz_name: str,
        now: datetime,
        outcome: StepOutcome,
    ) -> None:
        habit = uow.habits.get(user_id, step.habit_id)
        if habit is None:
            outcome.warnings.append("habit_missing")
            log_event(
                "warning",
                "chain.step_habit_missing",
                user_id=user_id,
                event_type="chain.step_completed",
                extra={"habit_id": step.habit_id},
            )
            return
        try:
            change = self.habit_ledger.complete(uow, user_id, habit.id, tz_name, now=now, notes=step.notes)
        except AlreadyCompletedError:
            # Completed earlier today outside the chain: the step still counts, no second reward.
            outcome.warnings.append("already_completed_today")
            return
        except InvalidTransitionError as exc:
            outcome.warnings.append("habit_archived")
            log_event(
                "warning",
                "chain.step_habit_unavailable",
                user_id=user_id,
                event_type="chain.step_completed",
                extra={"habit_id": habit.id, "error": exc.message},
            )
            return

        outcome.rewards = self.rewarder.on_completed(uow, user_id, change, now=now, via_chain=True)
        outcome.xp_earned = outcome.rewards.xp_earned

    def _advance(self, uow: UnitOfWork, session: ChainSession, now: datetime, outcome: StepOutcome) -> None:
        if not session.is_last_step:
            session.current_index += 1
            nxt = session.steps[session.current_index]
            _move_step(nxt, StepStatus.ACTIVE)
            nxt.started_at = now
            return
        self._finalize(uow, session, now, outcome)

    def _finalize(self, uow: UnitOfWork, session: ChainSession, now: datetime, outcome: StepOutcome) -> None:
        _move_session(session, SessionStatus.COMPLETED)
        self._close_open_intervals(session, now)
        session.completed_at = now
        session.actual_duration_minutes = self._actual_duration(session, now)

        completed = session.completed_count
        bonus = chain_bonus(completed, session.total_steps)
        session.chain_bonus_xp = bonus
        outcome.chain_completed = True
        outcome.chain_bonus = bonus
        if bonus > 0:
            outcome.bonus_award = self.reward_ledger.grant(
                uow,
                session.user_id,
                bonus,
                RewardSource.CHAIN_COMPLETION,
                f"Completed {session.chain_name} ({completed}/{session.total_steps} habits)",
                now=now,
            )
        log_event(
            "info",
            "chain.completed",
            user_id=session.user_id,
            event_type="chain.completed",
            extra={
                "session_id": session.id,
                "completed": completed,
                "total": session.total_steps,
                "bonus": bonus,
                "actual_minutes": session.actual_duration_minutes,
            },
        )

    @staticmethod
    def _close_break(session: ChainSession, now: datetime) -> int:
        minutes = _minutes_between(session.break_started_at, now) if session.break_started_at else 0
        session.pause_accumulated_minutes += minutes
        session.on_break = False
        session.break_started_at = None
        session.break_minutes_hint = None
        return minutes

    def _close_open_intervals(self, session: ChainSession, now: datetime) -> None:
        if session.is_paused:
            session.pause_accumulated_minutes += _minutes_between(session.paused_at, now)
            session.paused_at = None
        if session.on_break:
            self._close_break(session, now)

    @staticmethod
    def _actual_duration(session: ChainSession, now: datetime) -> int:
        return max(0, _minutes_between(session.started_at, now) - session.pause_accumulated_minutes)
