"""
Database configuration and table definitions.

This module provides:
- SQLAlchemy engine construction with pooling and timeouts
- Table definitions for habits, chains, sessions and the reward ledger
- Create/drop helpers for tests and local development
"""
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from habitchain.core.config import Settings, settings

metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_RECYCLE = 3600


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or url.endswith(":memory:")


def _own_sqlite_transactions(engine: Engine) -> None:
    """
    pysqlite delays BEGIN until the first write, which breaks SAVEPOINT.
    Hand BEGIN to SQLAlchemy so nested transactions behave as on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: Optional[str] = None, settings_obj: Optional[Settings] = None) -> Engine:
    """
    Build an engine whose every checkout and statement is bounded by
    STORE_TIMEOUT_SECONDS.
    """
    cfg = settings_obj or settings
    url = database_url or cfg.TEST_DATABASE_URL or cfg.DATABASE_URL
    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    timeout = float(cfg.STORE_TIMEOUT_SECONDS)

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"timeout": timeout, "check_same_thread": False}}
        if _is_memory_sqlite(url):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        _own_sqlite_transactions(engine)
        return engine

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=timeout,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        connect_args=connect_args,
        echo=False,
    )


def create_all_tables(engine: Engine) -> None:
    """Idempotent: tables that already exist are left alone."""
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


habits = Table(
    'habits',
    metadata,
    Column('id', String(32), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('name', String(120), nullable=False),
    Column('description', Text, nullable=False, server_default=''),
    Column('category', String(50), nullable=False),
    Column('schedule', String(100), nullable=False),
    Column('time_of_day', String(50), nullable=False),
    Column('priority', String(20), nullable=False),
    Column('streak', Integer, nullable=False, server_default='0'),
    Column('milestone_day_key', String(10), nullable=True),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_habits_user_status', 'user_id', 'status'),
    Index('idx_habits_user_created', 'user_id', 'created_at'),
)

# One row per completed day; the unique constraint is the conditional write
# that keeps concurrent completions from both landing on the same day.
habit_completions = Table(
    'habit_completions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('habit_id', String(32), ForeignKey('habits.id', ondelete='CASCADE'), nullable=False, index=True),
    Column('day_key', String(10), nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=False),
    Column('completed', Boolean, nullable=False, server_default='1'),
    Column('notes', Text, nullable=True),
    UniqueConstraint('habit_id', 'day_key', name='uq_habit_completions_habit_day'),
)

habit_chains = Table(
    'habit_chains',
    metadata,
    Column('id', String(32), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('name', String(120), nullable=False),
    Column('description', Text, nullable=False, server_default=''),
    Column('time_of_day', String(50), nullable=False),
    Column('steps', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_habit_chains_user_created', 'user_id', 'created_at'),
)

chain_sessions = Table(
    'chain_sessions',
    metadata,
    Column('id', String(32), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('chain_id', String(32), nullable=False),
    Column('chain_name', String(120), nullable=False),
    Column('status', String(20), nullable=False),
    Column('current_index', Integer, nullable=False, server_default='0'),
    Column('steps', JSON, nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Column('actual_duration_minutes', Integer, nullable=True),
    Column('expected_duration_minutes', Integer, nullable=False, server_default='0'),
    Column('paused_at', DateTime(timezone=True), nullable=True),
    Column('pause_accumulated_minutes', Integer, nullable=False, server_default='0'),
    Column('on_break', Boolean, nullable=False, server_default='0'),
    Column('break_started_at', DateTime(timezone=True), nullable=True),
    Column('break_minutes_hint', Integer, nullable=True),
    Column('chain_bonus_xp', Integer, nullable=False, server_default='0'),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_chain_sessions_user_created', 'user_id', 'created_at'),
    # At most one active session per user.
    Index(
        'uq_chain_sessions_one_active',
        'user_id',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
)

reward_states = Table(
    'reward_states',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('xp_total', Integer, nullable=False, server_default='0'),
    # Denormalized from xp_total on every write; never written on their own.
    Column('rank_title', String(50), nullable=False),
    Column('rank_level', Integer, nullable=False),
    Column('rank_progress', Integer, nullable=False),
    Column('daily_bonuses_earned', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), nullable=True),
)

reward_history = Table(
    'reward_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('source', String(50), nullable=False),
    Column('description', Text, nullable=False),
    Column('day_key', String(10), nullable=True),
    Index('idx_reward_history_user_id', 'user_id', 'id'),
    Index('idx_reward_history_user_source_day', 'user_id', 'source', 'day_key'),
)

reward_outbox = Table(
    'reward_outbox',
    metadata,
    Column('id', String(32), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=False),
    Column('source', String(50), nullable=False),
    Column('description', Text, nullable=False),
    Column('day_key', String(10), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('last_error', Text, nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=True),
    Index('idx_reward_outbox_status_created', 'status', 'created_at'),
)
