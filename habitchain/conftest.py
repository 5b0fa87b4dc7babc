# habitchain/conftest.py
from datetime import datetime, timedelta, timezone

import pytest

from habitchain.core.cache import InMemoryCache
from habitchain.core.config import Settings
from habitchain.core.sql_store import SqlStore
from habitchain.core.store import InMemoryStore
from habitchain.features.actions import UserActions
from habitchain.models.habit import CompletionEvent, Habit, HabitCreateRequest
from habitchain.tests.mocks import FixedClock

# Wednesday
FIXED_NOW = datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc)


def make_settings(**overrides) -> Settings:
    defaults = dict(
        ENV="test",
        DATABASE_URL=None,
        TEST_DATABASE_URL=None,
        REDIS_URL=None,
        GROQ_API_KEY=None,
        AUTH_JWT_SECRET=None,
        DEFAULT_TIMEZONE="UTC",
        REWARD_POSTING_MODE="inline",
        RATE_LIMIT_PER_MINUTE=0,
    )
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


@pytest.fixture
def clock():
    return FixedClock(FIXED_NOW)


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def store():
    return InMemoryStore(lock_timeout_seconds=1.0)


@pytest.fixture
def sql_store():
    s = SqlStore.from_url("sqlite://")
    yield s
    s.close()


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def actions(store, cache, test_settings, clock):
    return UserActions(store, cache, settings_obj=test_settings, clock=clock)


@pytest.fixture
def make_habit(actions):
    """Create a habit through the facade and return its id."""

    def _make(user_id="user-1", name="Meditate", **fields):
        result = actions.create_habit(user_id, HabitCreateRequest(name=name, **fields))
        assert result.success, result.error
        return result.data["id"]

    return _make


@pytest.fixture
def seed_habit():
    """Insert a habit with prior completions straight into a store."""

    def _seed(store, user_id="user-1", days_completed=(), schedule="Daily", now=FIXED_NOW, streak=0, **fields):
        habit = Habit.new(
            user_id=user_id,
            name=fields.pop("name", "Read"),
            now=now - timedelta(days=60),
            schedule=schedule,
            streak=streak,
            completions=[
                CompletionEvent(day_key=key, completed_at=now - timedelta(days=1))
                for key in sorted(days_completed)
            ],
            **fields,
        )
        with store.unit_of_work() as uow:
            uow.habits.insert(habit)
        return habit

    return _seed
