"""
habitchain/models/reward.py
XP ledger entries, per-user reward state, and deferred reward intents.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

from habitchain.features.rewards.ranks import RankInfo, calculate_rank


class RewardSource(str, Enum):
    HABIT_COMPLETION = "habit_completion"
    CHAIN_COMPLETION = "chain_completion"
    STREAK_MILESTONE = "streak_milestone"
    DAILY_BONUS = "daily_bonus"


class RewardLedgerEntry(BaseModel):
    """One signed XP movement. History is append-only apart from bounded eviction."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    amount: int
    source: RewardSource
    description: str
    day_key: Optional[str] = Field(default=None, description="User-local day the entry belongs to")


class UserRewardState(BaseModel):
    """XP total plus derived rank. Rank fields are computed, never assigned."""

    user_id: str
    xp_total: int = Field(default=0, ge=0)
    daily_bonuses_earned: int = 0
    updated_at: Optional[datetime] = None

    @computed_field  # type: ignore[misc]
    @property
    def rank(self) -> RankInfo:
        return calculate_rank(self.xp_total)


class AwardResult(BaseModel):
    success: bool = True
    amount: int = 0
    new_total: int = 0
    ranked_up: bool = False
    ranked_down: bool = False
    rank: Optional[RankInfo] = None
    previous_rank_title: Optional[str] = None
    message: Optional[str] = None
    queued: bool = False


class RewardIntent(BaseModel):
    """
    A reward decision waiting to be applied. Positive amounts award, negative
    amounts remove. Daily bonus intents are re-checked against history when
    applied, so replaying one never double-awards.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    amount: int
    source: RewardSource
    description: str
    day_key: Optional[str] = None
    created_at: datetime


class OutboxStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"
    FAILED = "failed"


class OutboxEntry(BaseModel):
    intent: RewardIntent
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None
