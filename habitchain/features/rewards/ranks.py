"""
Rank tiers. Rank is a pure function of total XP and is never stored on its own.
"""
from __future__ import annotations

import math
from typing import NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class RankTier(NamedTuple):
    level: int
    title: str
    min_xp: int
    max_xp: Optional[int]  # exclusive; None = unbounded


RANK_TIERS: Tuple[RankTier, ...] = (
    RankTier(1, "Novice", 0, 500),
    RankTier(2, "Beginner", 500, 1500),
    RankTier(3, "Apprentice", 1500, 3500),
    RankTier(4, "Practitioner", 3500, 7000),
    RankTier(5, "Expert", 7000, 12500),
    RankTier(6, "Master", 12500, 20000),
    RankTier(7, "Grandmaster", 20000, 30000),
    RankTier(8, "Legend", 30000, None),
)


class RankInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    level: int
    progress_percent: int


def tier_for(xp_total: int) -> RankTier:
    xp = max(0, int(xp_total))
    for tier in reversed(RANK_TIERS):
        if xp >= tier.min_xp:
            return tier
    return RANK_TIERS[0]


def calculate_rank(xp_total: int) -> RankInfo:
    """Map total XP to (title, level, progress through the tier's range)."""
    xp = max(0, int(xp_total))
    tier = tier_for(xp)
    if tier.max_xp is None:
        progress = 100
    else:
        span = tier.max_xp - tier.min_xp
        progress = min(100, math.floor((xp - tier.min_xp) * 100 / span))
    return RankInfo(title=tier.title, level=tier.level, progress_percent=progress)


def xp_to_next_rank(xp_total: int) -> Optional[int]:
    tier = tier_for(xp_total)
    if tier.max_xp is None:
        return None
    return tier.max_xp - max(0, int(xp_total))
