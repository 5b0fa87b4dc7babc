"""
SQLAlchemy-backed store.

One Session per unit of work. Conditional writes (one completion per day,
one active session per user, versioned session saves) are checked up front
and backed by table constraints, so a racing writer surfaces as a
ConflictError subclass instead of a silent double write.
"""
from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session, sessionmaker

from habitchain.core.database import (
    build_engine,
    check_connection,
    chain_sessions,
    create_all_tables,
    habit_chains,
    habit_completions,
    habits,
    reward_history,
    reward_outbox,
    reward_states,
)
from habitchain.core.errors import (
    ActiveSessionExistsError,
    AlreadyCompletedError,
    AppError,
    ConcurrentUpdateError,
    ConflictError,
    NotCompletedError,
    NotFoundError,
    TransientStoreError,
)
from habitchain.core.logging import log_event
from habitchain.core.store import (
    ChainRepository,
    HabitRepository,
    OutboxRepository,
    RewardRepository,
    SessionRepository,
    Store,
    UnitOfWork,
    utc_aware,
)
from habitchain.models.chain import ChainDefinition, ChainSession, SessionStatus
from habitchain.models.habit import CompletionEvent, Habit, HabitStatus
from habitchain.models.reward import (
    OutboxEntry,
    OutboxStatus,
    RewardIntent,
    RewardLedgerEntry,
    UserRewardState,
)

_SESSION_DATETIME_FIELDS = (
    "started_at",
    "completed_at",
    "paused_at",
    "break_started_at",
    "created_at",
    "updated_at",
)


def _completion_from_row(row) -> CompletionEvent:
    return CompletionEvent(
        day_key=row.day_key,
        completed_at=utc_aware(row.completed_at),
        completed=bool(row.completed),
        notes=row.notes,
    )


def _habit_from_row(row, completions: List[CompletionEvent]) -> Habit:
    return Habit(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        description=row.description or "",
        category=row.category,
        schedule=row.schedule,
        time_of_day=row.time_of_day,
        priority=row.priority,
        streak=row.streak,
        milestone_day_key=row.milestone_day_key,
        status=row.status,
        completions=completions,
        created_at=utc_aware(row.created_at),
        updated_at=utc_aware(row.updated_at),
    )


def _habit_values(habit: Habit) -> dict:
    return {
        "name": habit.name,
        "description": habit.description,
        "category": habit.category.value,
        "schedule": habit.schedule,
        "time_of_day": habit.time_of_day,
        "priority": habit.priority.value,
        "streak": habit.streak,
        "milestone_day_key": habit.milestone_day_key,
        "status": habit.status.value,
        "updated_at": habit.updated_at,
    }


def _session_from_row(row) -> ChainSession:
    data = dict(row._mapping)
    for name in _SESSION_DATETIME_FIELDS:
        data[name] = utc_aware(data.get(name))
    data["on_break"] = bool(data.get("on_break"))
    return ChainSession.model_validate(data)


def _session_values(session: ChainSession) -> dict:
    return {
        "chain_id": session.chain_id,
        "chain_name": session.chain_name,
        "status": session.status.value,
        "current_index": session.current_index,
        "steps": [step.model_dump(mode="json") for step in session.steps],
        "started_at": session.started_at,
        "completed_at": session.completed_at,
        "actual_duration_minutes": session.actual_duration_minutes,
        "expected_duration_minutes": session.expected_duration_minutes,
        "paused_at": session.paused_at,
        "pause_accumulated_minutes": session.pause_accumulated_minutes,
        "on_break": session.on_break,
        "break_started_at": session.break_started_at,
        "break_minutes_hint": session.break_minutes_hint,
        "chain_bonus_xp": session.chain_bonus_xp,
        "created_at": session.created_at,
        "updated_at": session.updated_at,
    }


class SqlHabits(HabitRepository):
    def __init__(self, session: Session):
        self._session = session

    def _completions_for(self, habit_ids: List[str]) -> Dict[str, List[CompletionEvent]]:
        grouped: Dict[str, List[CompletionEvent]] = defaultdict(list)
        if not habit_ids:
            return grouped
        rows = self._session.execute(
            select(habit_completions)
            .where(habit_completions.c.habit_id.in_(habit_ids))
            .order_by(habit_completions.c.day_key)
        ).all()
        for row in rows:
            grouped[row.habit_id].append(_completion_from_row(row))
        return grouped

    def get(self, user_id: str, habit_id: str) -> Optional[Habit]:
        row = self._session.execute(
            select(habits).where(habits.c.id == habit_id, habits.c.user_id == user_id)
        ).first()
        if not row:
            return None
        return _habit_from_row(row, self._completions_for([row.id]).get(row.id, []))

    def list(self, user_id: str, status: Optional[HabitStatus] = None) -> List[Habit]:
        stmt = select(habits).where(habits.c.user_id == user_id)
        if status is not None:
            stmt = stmt.where(habits.c.status == status.value)
        rows = self._session.execute(stmt.order_by(habits.c.created_at.desc())).all()
        completions = self._completions_for([row.id for row in rows])
        return [_habit_from_row(row, completions.get(row.id, [])) for row in rows]

    def insert(self, habit: Habit) -> None:
        self._session.execute(
            insert(habits).values(
                id=habit.id,
                user_id=habit.user_id,
                created_at=habit.created_at,
                **_habit_values(habit),
            )
        )
        for event in habit.completions:
            self.add_completion(habit.id, event)

    def save(self, habit: Habit) -> None:
        result = self._session.execute(
            update(habits).where(habits.c.id == habit.id).values(**_habit_values(habit))
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Habit {habit.id} not found")

    def delete(self, user_id: str, habit_id: str) -> bool:
        owned = self._session.execute(
            select(habits.c.id).where(habits.c.id == habit_id, habits.c.user_id == user_id)
        ).first()
        if not owned:
            return False
        self._session.execute(delete(habit_completions).where(habit_completions.c.habit_id == habit_id))
        self._session.execute(delete(habits).where(habits.c.id == habit_id))
        return True

    def add_completion(self, habit_id: str, event: CompletionEvent) -> None:
        existing = self._session.execute(
            select(habit_completions.c.id).where(
                habit_completions.c.habit_id == habit_id,
                habit_completions.c.day_key == event.day_key,
                habit_completions.c.completed.is_(True),
            )
        ).first()
        if existing:
            raise AlreadyCompletedError("Habit already completed today")
        try:
            # A lost race rolls back only this savepoint; the unit of work stays usable.
            with self._session.begin_nested():
                self._session.execute(
                    insert(habit_completions).values(
                        habit_id=habit_id,
                        day_key=event.day_key,
                        completed_at=event.completed_at,
                        completed=event.completed,
                        notes=event.notes,
                    )
                )
        except IntegrityError as exc:
            # Lost the race to a concurrent completion for the same day
            raise AlreadyCompletedError("Habit already completed today") from exc

    def remove_completion(self, habit_id: str, day_key: str) -> None:
        result = self._session.execute(
            delete(habit_completions).where(
                habit_completions.c.habit_id == habit_id,
                habit_completions.c.day_key == day_key,
            )
        )
        if result.rowcount == 0:
            raise NotCompletedError("Habit was not completed today")


class SqlChains(ChainRepository):
    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def _from_row(row) -> ChainDefinition:
        return ChainDefinition(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            description=row.description or "",
            time_of_day=row.time_of_day,
            steps=row.steps,
            created_at=utc_aware(row.created_at),
        )

    def get(self, user_id: str, chain_id: str) -> Optional[ChainDefinition]:
        row = self._session.execute(
            select(habit_chains).where(habit_chains.c.id == chain_id, habit_chains.c.user_id == user_id)
        ).first()
        return self._from_row(row) if row else None

    def list(self, user_id: str) -> List[ChainDefinition]:
        rows = self._session.execute(
            select(habit_chains)
            .where(habit_chains.c.user_id == user_id)
            .order_by(habit_chains.c.created_at.desc())
        ).all()
        return [self._from_row(row) for row in rows]

    def insert(self, chain: ChainDefinition) -> None:
        self._session.execute(
            insert(habit_chains).values(
                id=chain.id,
                user_id=chain.user_id,
                name=chain.name,
                description=chain.description,
                time_of_day=chain.time_of_day,
                steps=[step.model_dump() for step in chain.steps],
                created_at=chain.created_at,
            )
        )

    def delete(self, user_id: str, chain_id: str) -> bool:
        result = self._session.execute(
            delete(habit_chains).where(habit_chains.c.id == chain_id, habit_chains.c.user_id == user_id)
        )
        return result.rowcount > 0


class SqlSessions(SessionRepository):
    def __init__(self, session: Session):
        self._session = session

    def get(self, user_id: str, session_id: str) -> Optional[ChainSession]:
        row = self._session.execute(
            select(chain_sessions).where(
                chain_sessions.c.id == session_id,
                chain_sessions.c.user_id == user_id,
            )
        ).first()
        return _session_from_row(row) if row else None

    def get_active(self, user_id: str) -> Optional[ChainSession]:
        row = self._session.execute(
            select(chain_sessions).where(
                chain_sessions.c.user_id == user_id,
                chain_sessions.c.status == SessionStatus.ACTIVE.value,
            )
        ).first()
        return _session_from_row(row) if row else None

    def insert_active(self, session: ChainSession) -> None:
        existing = self.get_active(session.user_id)
        if existing is not None:
            raise ActiveSessionExistsError(
                "You already have an active chain session",
                active_session_id=existing.id,
            )
        try:
            self._session.execute(
                insert(chain_sessions).values(
                    id=session.id,
                    user_id=session.user_id,
                    version=session.version,
                    **_session_values(session),
                )
            )
        except IntegrityError as exc:
            raise ActiveSessionExistsError("You already have an active chain session") from exc

    def save(self, session: ChainSession, expected_version: int) -> ChainSession:
        result = self._session.execute(
            update(chain_sessions)
            .where(
                chain_sessions.c.id == session.id,
                chain_sessions.c.version == expected_version,
            )
            .values(version=expected_version + 1, **_session_values(session))
        )
        if result.rowcount == 0:
            exists = self._session.execute(
                select(chain_sessions.c.id).where(chain_sessions.c.id == session.id)
            ).first()
            if not exists:
                raise NotFoundError(f"Session {session.id} not found")
            raise ConcurrentUpdateError("Session was modified concurrently")
        return session.model_copy(update={"version": expected_version + 1}, deep=True)

    def list_past(self, user_id: str, limit: int) -> List[ChainSession]:
        rows = self._session.execute(
            select(chain_sessions)
            .where(
                chain_sessions.c.user_id == user_id,
                chain_sessions.c.status != SessionStatus.ACTIVE.value,
            )
            .order_by(chain_sessions.c.created_at.desc())
            .limit(limit)
        ).all()
        return [_session_from_row(row) for row in rows]


class SqlRewards(RewardRepository):
    def __init__(self, session: Session):
        self._session = session

    def get_state(self, user_id: str) -> UserRewardState:
        row = self._session.execute(
            select(reward_states).where(reward_states.c.user_id == user_id)
        ).first()
        if not row:
            return UserRewardState(user_id=user_id)
        return UserRewardState(
            user_id=row.user_id,
            xp_total=row.xp_total,
            daily_bonuses_earned=row.daily_bonuses_earned,
            updated_at=utc_aware(row.updated_at),
        )

    def save_state(self, state: UserRewardState) -> None:
        rank = state.rank
        values = {
            "xp_total": state.xp_total,
            "rank_title": rank.title,
            "rank_level": rank.level,
            "rank_progress": rank.progress_percent,
            "daily_bonuses_earned": state.daily_bonuses_earned,
            "updated_at": state.updated_at,
        }
        result = self._session.execute(
            update(reward_states).where(reward_states.c.user_id == state.user_id).values(**values)
        )
        if result.rowcount == 0:
            self._session.execute(insert(reward_states).values(user_id=state.user_id, **values))

    def append_history(self, user_id: str, entry: RewardLedgerEntry, limit: int) -> None:
        self._session.execute(
            insert(reward_history).values(
                user_id=user_id,
                occurred_at=entry.timestamp,
                amount=entry.amount,
                source=entry.source.value,
                description=entry.description,
                day_key=entry.day_key,
            )
        )
        if limit <= 0:
            return
        cutoff = self._session.execute(
            select(reward_history.c.id)
            .where(reward_history.c.user_id == user_id)
            .order_by(reward_history.c.id.desc())
            .offset(limit - 1)
            .limit(1)
        ).scalar()
        if cutoff is not None:
            self._session.execute(
                delete(reward_history).where(
                    reward_history.c.user_id == user_id,
                    reward_history.c.id < cutoff,
                )
            )

    def history(self, user_id: str, limit: Optional[int] = None) -> List[RewardLedgerEntry]:
        stmt = (
            select(reward_history)
            .where(reward_history.c.user_id == user_id)
            .order_by(reward_history.c.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [
            RewardLedgerEntry(
                timestamp=utc_aware(row.occurred_at),
                amount=row.amount,
                source=row.source,
                description=row.description,
                day_key=row.day_key,
            )
            for row in self._session.execute(stmt).all()
        ]


class SqlOutbox(OutboxRepository):
    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def _from_row(row) -> OutboxEntry:
        return OutboxEntry(
            intent=RewardIntent(
                id=row.id,
                user_id=row.user_id,
                amount=row.amount,
                source=row.source,
                description=row.description,
                day_key=row.day_key,
                created_at=utc_aware(row.created_at),
            ),
            status=row.status,
            attempts=row.attempts,
            last_error=row.last_error,
            updated_at=utc_aware(row.updated_at),
        )

    def add(self, entry: OutboxEntry) -> None:
        intent = entry.intent
        self._session.execute(
            insert(reward_outbox).values(
                id=intent.id,
                user_id=intent.user_id,
                amount=intent.amount,
                source=intent.source.value,
                description=intent.description,
                day_key=intent.day_key,
                created_at=intent.created_at,
                status=entry.status.value,
                attempts=entry.attempts,
                last_error=entry.last_error,
                updated_at=entry.updated_at,
            )
        )

    def get(self, intent_id: str) -> Optional[OutboxEntry]:
        row = self._session.execute(select(reward_outbox).where(reward_outbox.c.id == intent_id)).first()
        return self._from_row(row) if row else None

    def pending(self, limit: int = 100, user_id: Optional[str] = None) -> List[OutboxEntry]:
        stmt = select(reward_outbox).where(reward_outbox.c.status == OutboxStatus.PENDING.value)
        if user_id is not None:
            stmt = stmt.where(reward_outbox.c.user_id == user_id)
        rows = self._session.execute(stmt.order_by(reward_outbox.c.created_at).limit(limit)).all()
        return [self._from_row(row) for row in rows]

    def update(self, entry: OutboxEntry) -> None:
        result = self._session.execute(
            update(reward_outbox)
            .where(reward_outbox.c.id == entry.intent.id)
            .values(
                status=entry.status.value,
                attempts=entry.attempts,
                last_error=entry.last_error,
                updated_at=entry.updated_at,
            )
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Outbox entry {entry.intent.id} not found")


class SqlStore(Store):
    backend = "sql"

    def __init__(self, engine: Engine):
        self._engine = engine
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=engine,
        )

    @classmethod
    def from_url(cls, url: str, settings_obj=None, create_tables: bool = True) -> "SqlStore":
        engine = build_engine(url, settings_obj)
        if create_tables:
            create_all_tables(engine)
        return cls(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    @staticmethod
    def _rollback(session: Session) -> None:
        try:
            session.rollback()
        except DBAPIError as exc:
            log_event("warning", "store.rollback_failed", error_code="store_unavailable", extra={"error": str(exc)})

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        session = self._session_factory()
        try:
            yield UnitOfWork(
                habits=SqlHabits(session),
                chains=SqlChains(session),
                sessions=SqlSessions(session),
                rewards=SqlRewards(session),
                outbox=SqlOutbox(session),
            )
            session.commit()
        except AppError:
            self._rollback(session)
            raise
        except IntegrityError as exc:
            self._rollback(session)
            raise ConflictError("Conflicting concurrent write") from exc
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            self._rollback(session)
            raise TransientStoreError(f"Store unavailable: {exc.__class__.__name__}") from exc
        except DBAPIError as exc:
            self._rollback(session)
            if exc.connection_invalidated:
                raise TransientStoreError("Store connection lost") from exc
            raise
        except BaseException:
            self._rollback(session)
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        return check_connection(self._engine)

    def close(self) -> None:
        self._engine.dispose()
