"""
User actions.

The operations the API (or any other caller) invokes. Each one:
- requires a user id (identity comes from the caller, never from here)
- runs in exactly one unit of work, retried on TransientStoreError
- returns an OperationResult; no exception escapes

In deferred reward mode a successful mutation also submits an outbox drain.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError as ModelValidationError

from habitchain.core.cache import Cache
from habitchain.core.config import Settings, settings
from habitchain.core.errors import AppError, AuthError, OperationResult, ValidationError
from habitchain.core.logging import log_event
from habitchain.core.retry import with_retries
from habitchain.core.store import Store, UnitOfWork
from habitchain.features.chains.definitions import ChainService
from habitchain.features.chains.service import PAST_SESSIONS_DEFAULT_LIMIT, ChainSessionService
from habitchain.features.habits.ledger import HabitLedger
from habitchain.features.habits.service import HabitService
from habitchain.features.insights.service import InsightWriter
from habitchain.features.rewards.ledger import RewardLedger
from habitchain.features.rewards.posting import OutboxDrainer
from habitchain.features.rewards.triggers import CompletionRewarder
from habitchain.features.schedule.evaluator import day_key, resolve_timezone
from habitchain.features.stats.aggregator import StatsAggregator
from habitchain.models.chain import ChainCreateRequest
from habitchain.models.habit import NOTES_MAX_LENGTH, HabitCreateRequest, HabitStatus

REWARD_HISTORY_MAX_LIMIT = 100

logger = logging.getLogger("habitchain")


def _first_error_line(exc: ValueError) -> str:
    if isinstance(exc, ModelValidationError):
        err = exc.errors()[0]
        where = ".".join(str(p) for p in err.get("loc", ())) or exc.title
        return f"{where}: {err.get('msg')}"
    return str(exc)


class UserActions:
    def __init__(
        self,
        store: Store,
        cache: Cache,
        settings_obj: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        insight_writer: Optional[InsightWriter] = None,
        drain_submitter: Optional[Callable[[], Any]] = None,
    ):
        cfg = settings_obj or settings
        self.settings = cfg
        self.store = store
        self.cache = cache
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.retry_attempts = cfg.STORE_RETRY_ATTEMPTS
        self.drain_submitter = drain_submitter

        self.habit_ledger = HabitLedger(clock=self.clock)
        self.reward_ledger = RewardLedger(
            history_limit=cfg.REWARD_HISTORY_LIMIT,
            posting_mode=cfg.REWARD_POSTING_MODE,
            clock=self.clock,
        )
        self.rewarder = CompletionRewarder(self.habit_ledger, self.reward_ledger)
        self.habits = HabitService(self.habit_ledger, clock=self.clock)
        self.chains = ChainService(clock=self.clock)
        self.sessions = ChainSessionService(self.habit_ledger, self.reward_ledger, clock=self.clock)
        self.stats = StatsAggregator(
            cache,
            insight_writer=insight_writer,
            cache_ttl_seconds=cfg.STATS_CACHE_TTL_SECONDS,
            hash_ttl_seconds=cfg.STATS_HASH_TTL_SECONDS,
            marker_ttl_seconds=cfg.GENERATING_MARKER_TTL_SECONDS,
            clock=self.clock,
        )
        self.drainer = OutboxDrainer(
            store,
            self.reward_ledger,
            max_attempts=cfg.REWARD_OUTBOX_MAX_ATTEMPTS,
            clock=self.clock,
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _tz(self, tz_name: Optional[str]) -> str:
        name = tz_name or self.settings.DEFAULT_TIMEZONE
        resolve_timezone(name)
        return name

    def _run(self, operation: str, user_id: Optional[str], fn: Callable[[UnitOfWork], Any], mutates: bool = True) -> OperationResult:
        try:
            if not user_id or not str(user_id).strip():
                raise AuthError("Missing user identity")

            def attempt():
                with self.store.unit_of_work() as uow:
                    return fn(uow)

            data = with_retries(attempt, attempts=self.retry_attempts, operation=operation)
        except AppError as exc:
            return self._fail(operation, user_id, exc)
        except ValueError as exc:
            # Model validation below the facade (pydantic errors are ValueErrors too).
            return self._fail(operation, user_id, ValidationError(_first_error_line(exc)))
        except Exception as exc:
            logger.exception(f"[actions] {operation} failed unexpectedly")
            return self._fail(
                operation,
                user_id,
                AppError(f"Unexpected error: {exc.__class__.__name__}", code="internal_error"),
            )

        if mutates and self.reward_ledger.deferred:
            self._submit_drain(operation)
        return OperationResult.ok(data)

    def _fail(self, operation: str, user_id: Optional[str], exc: AppError) -> OperationResult:
        log_event(
            "warning" if exc.status_code < 500 else "error",
            "action.failed",
            user_id=user_id,
            event_type=operation,
            error_code=exc.code,
            extra={"error": exc.message},
        )
        return OperationResult.fail(exc)

    @staticmethod
    def _check_text(field: str, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) > NOTES_MAX_LENGTH:
            raise ValidationError(f"{field} must be at most {NOTES_MAX_LENGTH} characters")
        return value

    @staticmethod
    def _habit_status(status) -> HabitStatus:
        try:
            return HabitStatus(status)
        except ValueError:
            allowed = ", ".join(s.value for s in HabitStatus)
            raise ValidationError(f"Unknown habit status {status!r} (expected one of: {allowed})")

    def _submit_drain(self, operation: str) -> None:
        if self.drain_submitter is None:
            return
        try:
            self.drain_submitter()
        except Exception as exc:
            # Intents stay pending in the outbox; the next drain picks them up.
            log_event(
                "error",
                "reward.outbox.submit_failed",
                event_type=operation,
                error_code="reward_award_failed",
                extra={"error": str(exc)},
            )

    # ------------------------------------------------------------------
    # Habits
    # ------------------------------------------------------------------

    def create_habit(self, user_id: str, request: HabitCreateRequest) -> OperationResult:
        return self._run(
            "habit.create",
            user_id,
            lambda uow: self.habits.create(uow, user_id, request).model_dump(mode="json"),
        )

    def list_habits(self, user_id: str, status: Optional[HabitStatus] = None, tz_name: Optional[str] = None) -> OperationResult:
        def op(uow):
            tz = self._tz(tz_name)
            return [h.model_dump(mode="json") for h in self.habits.list(uow, user_id, tz, status)]

        return self._run("habit.list", user_id, op, mutates=False)

    def update_habit_status(self, user_id: str, habit_id: str, status: HabitStatus) -> OperationResult:
        def op(uow):
            target = self._habit_status(status)
            return self.habits.update_status(uow, user_id, habit_id, target).model_dump(mode="json")

        return self._run("habit.status", user_id, op)

    def delete_habit(self, user_id: str, habit_id: str) -> OperationResult:
        def op(uow):
            self.habits.delete(uow, user_id, habit_id)
            return {"deleted": habit_id}

        return self._run("habit.delete", user_id, op)

    def complete_habit(self, user_id: str, habit_id: str, tz_name: Optional[str] = None) -> OperationResult:
        def op(uow):
            tz = self._tz(tz_name)
            now = self.clock()
            change = self.habit_ledger.complete(uow, user_id, habit_id, tz, now=now)
            rewards = self.rewarder.on_completed(uow, user_id, change, now=now)
            return {
                "habit": change.habit.model_dump(mode="json"),
                "day_key": change.day_key,
                "new_streak": change.new_streak,
                **rewards.as_dict(),
            }

        return self._run("habit.complete", user_id, op)

    def skip_habit(self, user_id: str, habit_id: str, tz_name: Optional[str] = None) -> OperationResult:
        def op(uow):
            tz = self._tz(tz_name)
            now = self.clock()
            change = self.habit_ledger.skip(uow, user_id, habit_id, tz, now=now)
            removal = self.rewarder.on_skipped(uow, user_id, change, now=now)
            return {
                "habit": change.habit.model_dump(mode="json"),
                "day_key": change.day_key,
                "new_streak": change.new_streak,
                "xp_removed": -removal.amount,
                "award": removal.model_dump(mode="json"),
            }

        return self._run("habit.skip", user_id, op)

    def get_habit_analytics(self, user_id: str, days: int = 30, tz_name: Optional[str] = None) -> OperationResult:
        return self._run(
            "habit.analytics",
            user_id,
            lambda uow: self.stats.analytics(uow, user_id, self._tz(tz_name), days).model_dump(mode="json"),
            mutates=False,
        )

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def create_chain(self, user_id: str, request: ChainCreateRequest) -> OperationResult:
        return self._run(
            "chain.create",
            user_id,
            lambda uow: self.chains.create(uow, user_id, request).model_dump(mode="json"),
        )

    def list_chains(self, user_id: str) -> OperationResult:
        return self._run(
            "chain.list",
            user_id,
            lambda uow: [c.model_dump(mode="json") for c in self.chains.list(uow, user_id)],
            mutates=False,
        )

    def delete_chain(self, user_id: str, chain_id: str) -> OperationResult:
        def op(uow):
            self.chains.delete(uow, user_id, chain_id)
            return {"deleted": chain_id}

        return self._run("chain.delete", user_id, op)

    # ------------------------------------------------------------------
    # Chain sessions
    # ------------------------------------------------------------------

    def start_chain(self, user_id: str, chain_id: str) -> OperationResult:
        return self._run(
            "chain.start",
            user_id,
            lambda uow: self.sessions.start(uow, user_id, chain_id).model_dump(mode="json"),
        )

    def get_active_chain_session(self, user_id: str) -> OperationResult:
        def op(uow):
            session = self.sessions.get_active(uow, user_id)
            return session.model_dump(mode="json") if session else None

        return self._run("chain.active", user_id, op, mutates=False)

    def complete_current_habit(self, user_id: str, session_id: str, notes: Optional[str] = None, tz_name: Optional[str] = None) -> OperationResult:
        def op(uow):
            tz = self._tz(tz_name)
            self._check_text("notes", notes)
            return self.sessions.complete_current(uow, user_id, session_id, tz, notes=notes).as_dict()

        return self._run("chain.complete_step", user_id, op)

    def skip_current_habit(self, user_id: str, session_id: str, reason: Optional[str] = None) -> OperationResult:
        def op(uow):
            self._check_text("reason", reason)
            return self.sessions.skip_current(uow, user_id, session_id, reason=reason).as_dict()

        return self._run("chain.skip_step", user_id, op)

    def pause_chain_session(self, user_id: str, session_id: str) -> OperationResult:
        return self._run(
            "chain.pause",
            user_id,
            lambda uow: self.sessions.pause(uow, user_id, session_id).model_dump(mode="json"),
        )

    def resume_chain_session(self, user_id: str, session_id: str) -> OperationResult:
        return self._run(
            "chain.resume",
            user_id,
            lambda uow: self.sessions.resume(uow, user_id, session_id).model_dump(mode="json"),
        )

    def start_break(self, user_id: str, session_id: str, minutes: Optional[int] = None) -> OperationResult:
        return self._run(
            "chain.break_start",
            user_id,
            lambda uow: self.sessions.start_break(uow, user_id, session_id, minutes).model_dump(mode="json"),
        )

    def end_break(self, user_id: str, session_id: str) -> OperationResult:
        return self._run(
            "chain.break_end",
            user_id,
            lambda uow: self.sessions.end_break(uow, user_id, session_id).model_dump(mode="json"),
        )

    def abandon_chain_session(self, user_id: str, session_id: str) -> OperationResult:
        return self._run(
            "chain.abandon",
            user_id,
            lambda uow: self.sessions.abandon(uow, user_id, session_id).model_dump(mode="json"),
        )

    def get_past_chain_sessions(self, user_id: str, limit: int = PAST_SESSIONS_DEFAULT_LIMIT) -> OperationResult:
        return self._run(
            "chain.history",
            user_id,
            lambda uow: [s.model_dump(mode="json") for s in self.sessions.past_sessions(uow, user_id, limit)],
            mutates=False,
        )

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------

    def get_rank_info(self, user_id: str) -> OperationResult:
        return self._run("reward.rank", user_id, lambda uow: self.reward_ledger.rank_info(uow, user_id), mutates=False)

    def get_reward_history(self, user_id: str, limit: int = 20) -> OperationResult:
        def op(uow):
            if not 1 <= limit <= REWARD_HISTORY_MAX_LIMIT:
                raise ValidationError(f"limit must be between 1 and {REWARD_HISTORY_MAX_LIMIT}")
            return [e.model_dump(mode="json") for e in self.reward_ledger.history(uow, user_id, limit)]

        return self._run("reward.history", user_id, op, mutates=False)

    def check_daily_bonus(self, user_id: str, tz_name: Optional[str] = None) -> OperationResult:
        def op(uow):
            tz = self._tz(tz_name)
            now = self.clock()
            today = day_key(now, tz)
            completed, scheduled, longest = self.habit_ledger.daily_totals(uow, user_id, today)
            outcome = self.reward_ledger.check_daily_bonus(
                uow, user_id, completed, scheduled, longest_streak=longest, day_key=today, now=now,
            )
            return outcome.as_dict()

        return self._run("reward.daily_bonus", user_id, op)

    def drain_rewards(self, limit: int = 100) -> dict:
        """Apply pending outbox intents. Used by the worker and by tests."""
        return self.drainer.drain(limit=limit).as_dict()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self, user_id: str, force_refresh: bool = False, tz_name: Optional[str] = None) -> OperationResult:
        return self._run(
            "stats.read",
            user_id,
            lambda uow: self.stats.get_stats(uow, user_id, self._tz(tz_name), force_refresh).model_dump(mode="json"),
            mutates=False,
        )
