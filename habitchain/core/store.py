"""
Persistence boundary.

Every user action runs inside exactly one unit of work: reads and writes go
through the repositories it exposes, and either all of them commit or none
do. Two implementations exist:

- InMemoryStore: dict-backed, used when DATABASE_URL is unset and in tests.
  A re-entrant lock serializes units of work; the lock wait is bounded by
  STORE_TIMEOUT_SECONDS and surfaces as TransientStoreError.
- SqlStore (habitchain.core.sql_store): SQLAlchemy Core tables, one
  database transaction per unit of work.

Repositories hand out copies. Mutating a returned model changes nothing
until it is written back through a repository call.
"""
from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from habitchain.core.errors import (
    ActiveSessionExistsError,
    AlreadyCompletedError,
    ConcurrentUpdateError,
    NotCompletedError,
    NotFoundError,
    TransientStoreError,
)
from habitchain.models.chain import ChainDefinition, ChainSession, SessionStatus
from habitchain.models.habit import CompletionEvent, Habit, HabitStatus
from habitchain.models.reward import (
    OutboxEntry,
    OutboxStatus,
    RewardLedgerEntry,
    UserRewardState,
)


class HabitRepository:
    def get(self, user_id: str, habit_id: str) -> Optional[Habit]:
        raise NotImplementedError

    def list(self, user_id: str, status: Optional[HabitStatus] = None) -> List[Habit]:
        """Owned habits, newest first."""
        raise NotImplementedError

    def insert(self, habit: Habit) -> None:
        raise NotImplementedError

    def save(self, habit: Habit) -> None:
        """Persist scalar fields (not completions)."""
        raise NotImplementedError

    def delete(self, user_id: str, habit_id: str) -> bool:
        raise NotImplementedError

    def add_completion(self, habit_id: str, event: CompletionEvent) -> None:
        """Conditional insert. Raises AlreadyCompletedError when the day is taken."""
        raise NotImplementedError

    def remove_completion(self, habit_id: str, day_key: str) -> None:
        """Raises NotCompletedError when there is nothing to remove."""
        raise NotImplementedError


class ChainRepository:
    def get(self, user_id: str, chain_id: str) -> Optional[ChainDefinition]:
        raise NotImplementedError

    def list(self, user_id: str) -> List[ChainDefinition]:
        raise NotImplementedError

    def insert(self, chain: ChainDefinition) -> None:
        raise NotImplementedError

    def delete(self, user_id: str, chain_id: str) -> bool:
        raise NotImplementedError


class SessionRepository:
    def get(self, user_id: str, session_id: str) -> Optional[ChainSession]:
        raise NotImplementedError

    def get_active(self, user_id: str) -> Optional[ChainSession]:
        raise NotImplementedError

    def insert_active(self, session: ChainSession) -> None:
        """Raises ActiveSessionExistsError if the user already has one."""
        raise NotImplementedError

    def save(self, session: ChainSession, expected_version: int) -> ChainSession:
        """
        Compare-and-swap on `version`. Returns the stored session with the
        bumped version; raises ConcurrentUpdateError if another writer won.
        """
        raise NotImplementedError

    def list_past(self, user_id: str, limit: int) -> List[ChainSession]:
        """Completed and abandoned sessions, newest first."""
        raise NotImplementedError


class RewardRepository:
    def get_state(self, user_id: str) -> UserRewardState:
        """Zeroed state for users with no rewards yet."""
        raise NotImplementedError

    def save_state(self, state: UserRewardState) -> None:
        raise NotImplementedError

    def append_history(self, user_id: str, entry: RewardLedgerEntry, limit: int) -> None:
        """Append and evict the oldest entries beyond `limit`."""
        raise NotImplementedError

    def history(self, user_id: str, limit: Optional[int] = None) -> List[RewardLedgerEntry]:
        """Newest first."""
        raise NotImplementedError


class OutboxRepository:
    def add(self, entry: OutboxEntry) -> None:
        raise NotImplementedError

    def get(self, intent_id: str) -> Optional[OutboxEntry]:
        raise NotImplementedError

    def pending(self, limit: int = 100, user_id: Optional[str] = None) -> List[OutboxEntry]:
        """Oldest first."""
        raise NotImplementedError

    def update(self, entry: OutboxEntry) -> None:
        raise NotImplementedError


@dataclass
class UnitOfWork:
    habits: HabitRepository
    chains: ChainRepository
    sessions: SessionRepository
    rewards: RewardRepository
    outbox: OutboxRepository


class Store:
    backend = "abstract"

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        raise NotImplementedError
        yield  # pragma: no cover

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


@dataclass
class _MemoryState:
    habits: Dict[str, Habit] = field(default_factory=dict)
    chains: Dict[str, ChainDefinition] = field(default_factory=dict)
    sessions: Dict[str, ChainSession] = field(default_factory=dict)
    reward_states: Dict[str, UserRewardState] = field(default_factory=dict)
    reward_history: Dict[str, List[RewardLedgerEntry]] = field(default_factory=dict)
    outbox: Dict[str, OutboxEntry] = field(default_factory=dict)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class _MemoryHabits(HabitRepository):
    def __init__(self, store: "InMemoryStore"):
        self._store = store

    @property
    def _rows(self) -> Dict[str, Habit]:
        return self._store._state.habits

    def get(self, user_id: str, habit_id: str) -> Optional[Habit]:
        habit = self._rows.get(habit_id)
        if habit is None or habit.user_id != user_id:
            return None
        return _copy(habit)

    def list(self, user_id: str, status: Optional[HabitStatus] = None) -> List[Habit]:
        rows = [
            h for h in self._rows.values()
            if h.user_id == user_id and (status is None or h.status == status)
        ]
        rows.sort(key=lambda h: h.created_at, reverse=True)
        return [_copy(h) for h in rows]

    def insert(self, habit: Habit) -> None:
        self._rows[habit.id] = _copy(habit)

    def save(self, habit: Habit) -> None:
        stored = self._rows.get(habit.id)
        if stored is None:
            raise NotFoundError(f"Habit {habit.id} not found")
        scalars = habit.model_dump(exclude={"completions", "id", "user_id", "created_at"})
        self._rows[habit.id] = stored.model_copy(update=scalars)

    def delete(self, user_id: str, habit_id: str) -> bool:
        habit = self._rows.get(habit_id)
        if habit is None or habit.user_id != user_id:
            return False
        del self._rows[habit_id]
        return True

    def add_completion(self, habit_id: str, event: CompletionEvent) -> None:
        stored = self._rows.get(habit_id)
        if stored is None:
            raise NotFoundError(f"Habit {habit_id} not found")
        if stored.is_completed_on(event.day_key):
            raise AlreadyCompletedError("Habit already completed today")
        completions = sorted([*stored.completions, event], key=lambda c: c.day_key)
        self._rows[habit_id] = stored.model_copy(update={"completions": completions})

    def remove_completion(self, habit_id: str, day_key: str) -> None:
        stored = self._rows.get(habit_id)
        if stored is None:
            raise NotFoundError(f"Habit {habit_id} not found")
        if not stored.is_completed_on(day_key):
            raise NotCompletedError("Habit was not completed today")
        remaining = [c for c in stored.completions if c.day_key != day_key]
        self._rows[habit_id] = stored.model_copy(update={"completions": remaining})


class _MemoryChains(ChainRepository):
    def __init__(self, store: "InMemoryStore"):
        self._store = store

    @property
    def _rows(self) -> Dict[str, ChainDefinition]:
        return self._store._state.chains

    def get(self, user_id: str, chain_id: str) -> Optional[ChainDefinition]:
        chain = self._rows.get(chain_id)
        if chain is None or chain.user_id != user_id:
            return None
        return chain

    def list(self, user_id: str) -> List[ChainDefinition]:
        rows = [c for c in self._rows.values() if c.user_id == user_id]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return rows

    def insert(self, chain: ChainDefinition) -> None:
        self._rows[chain.id] = chain

    def delete(self, user_id: str, chain_id: str) -> bool:
        chain = self._rows.get(chain_id)
        if chain is None or chain.user_id != user_id:
            return False
        del self._rows[chain_id]
        return True


class _MemorySessions(SessionRepository):
    def __init__(self, store: "InMemoryStore"):
        self._store = store

    @property
    def _rows(self) -> Dict[str, ChainSession]:
        return self._store._state.sessions

    def get(self, user_id: str, session_id: str) -> Optional[ChainSession]:
        session = self._rows.get(session_id)
        if session is None or session.user_id != user_id:
            return None
        return _copy(session)

    def get_active(self, user_id: str) -> Optional[ChainSession]:
        for session in self._rows.values():
            if session.user_id == user_id and session.status == SessionStatus.ACTIVE:
                return _copy(session)
        return None

    def insert_active(self, session: ChainSession) -> None:
        existing = self.get_active(session.user_id)
        if existing is not None:
            raise ActiveSessionExistsError(
                "You already have an active chain session",
                active_session_id=existing.id,
            )
        self._rows[session.id] = _copy(session)

    def save(self, session: ChainSession, expected_version: int) -> ChainSession:
        stored = self._rows.get(session.id)
        if stored is None:
            raise NotFoundError(f"Session {session.id} not found")
        if stored.version != expected_version:
            raise ConcurrentUpdateError("Session was modified concurrently")
        updated = session.model_copy(update={"version": expected_version + 1}, deep=True)
        self._rows[session.id] = updated
        return _copy(updated)

    def list_past(self, user_id: str, limit: int) -> List[ChainSession]:
        rows = [
            s for s in self._rows.values()
            if s.user_id == user_id and s.status != SessionStatus.ACTIVE
        ]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return [_copy(s) for s in rows[:limit]]


class _MemoryRewards(RewardRepository):
    def __init__(self, store: "InMemoryStore"):
        self._store = store

    def get_state(self, user_id: str) -> UserRewardState:
        state = self._store._state.reward_states.get(user_id)
        if state is None:
            return UserRewardState(user_id=user_id)
        return _copy(state)

    def save_state(self, state: UserRewardState) -> None:
        self._store._state.reward_states[state.user_id] = _copy(state)

    def append_history(self, user_id: str, entry: RewardLedgerEntry, limit: int) -> None:
        entries = self._store._state.reward_history.setdefault(user_id, [])
        entries.append(entry)
        if limit > 0 and len(entries) > limit:
            del entries[: len(entries) - limit]

    def history(self, user_id: str, limit: Optional[int] = None) -> List[RewardLedgerEntry]:
        entries = list(reversed(self._store._state.reward_history.get(user_id, [])))
        return entries[:limit] if limit is not None else entries


class _MemoryOutbox(OutboxRepository):
    def __init__(self, store: "InMemoryStore"):
        self._store = store

    @property
    def _rows(self) -> Dict[str, OutboxEntry]:
        return self._store._state.outbox

    def add(self, entry: OutboxEntry) -> None:
        self._rows[entry.intent.id] = _copy(entry)

    def get(self, intent_id: str) -> Optional[OutboxEntry]:
        return _copy(self._rows.get(intent_id))

    def pending(self, limit: int = 100, user_id: Optional[str] = None) -> List[OutboxEntry]:
        rows = [
            e for e in self._rows.values()
            if e.status == OutboxStatus.PENDING and (user_id is None or e.intent.user_id == user_id)
        ]
        rows.sort(key=lambda e: e.intent.created_at)
        return [_copy(e) for e in rows[:limit]]

    def update(self, entry: OutboxEntry) -> None:
        if entry.intent.id not in self._rows:
            raise NotFoundError(f"Outbox entry {entry.intent.id} not found")
        self._rows[entry.intent.id] = _copy(entry)


class InMemoryStore(Store):
    """Process-local store. Snapshots state on entry and restores it on error."""

    backend = "memory"

    def __init__(self, lock_timeout_seconds: float = 5.0):
        self._state = _MemoryState()
        self._lock = threading.RLock()
        self._local = threading.local()
        self._lock_timeout = lock_timeout_seconds
        self._uow = UnitOfWork(
            habits=_MemoryHabits(self),
            chains=_MemoryChains(self),
            sessions=_MemorySessions(self),
            rewards=_MemoryRewards(self),
            outbox=_MemoryOutbox(self),
        )

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        depth = getattr(self._local, "depth", 0)
        if depth:
            # Nested units of work join the outer one.
            self._local.depth = depth + 1
            try:
                yield self._uow
            finally:
                self._local.depth = depth
            return

        if not self._lock.acquire(timeout=self._lock_timeout):
            raise TransientStoreError("Timed out waiting for the store")
        self._local.depth = 1
        snapshot = copy.deepcopy(self._state)
        try:
            yield self._uow
        except BaseException:
            self._state = snapshot
            raise
        finally:
            self._local.depth = 0
            self._lock.release()

    def reset(self) -> None:
        with self._lock:
            self._state = _MemoryState()


def build_store(database_url: Optional[str] = None, settings_obj=None) -> Store:
    """SqlStore when a database URL is configured, InMemoryStore otherwise."""
    from habitchain.core.config import settings as default_settings

    cfg = settings_obj or default_settings
    url = database_url or cfg.TEST_DATABASE_URL or cfg.DATABASE_URL
    if url:
        from habitchain.core.sql_store import SqlStore

        return SqlStore.from_url(url, settings_obj=cfg)
    return InMemoryStore(lock_timeout_seconds=cfg.STORE_TIMEOUT_SECONDS)


def utc_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything we store is UTC."""
    from datetime import timezone

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
