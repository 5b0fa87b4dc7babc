"""
Reward economy constants and the pure functions over them.
"""
from __future__ import annotations

import math
from fractions import Fraction
from typing import Dict, Optional

from habitchain.models.habit import HabitPriority

HABIT_XP_BY_PRIORITY: Dict[HabitPriority, int] = {
    HabitPriority.HIGH: 30,
    HabitPriority.MEDIUM: 25,
    HabitPriority.LOW: 20,
}

STREAK_MILESTONES: Dict[int, int] = {
    7: 100,
    30: 500,
    100: 1500,
    365: 5000,
}

DAILY_BONUS_BASE = 50


def habit_xp(priority: HabitPriority) -> int:
    return HABIT_XP_BY_PRIORITY.get(HabitPriority(priority), HABIT_XP_BY_PRIORITY[HabitPriority.MEDIUM])


def milestone_bonus(streak: int) -> Optional[int]:
    """Bonus for an exact milestone hit, None for every other streak value."""
    return STREAK_MILESTONES.get(streak)


def daily_bonus_amount(longest_streak: int) -> int:
    # base + floor(base * (longest / 10) * 0.5), kept exact
    scaled = Fraction(DAILY_BONUS_BASE * max(0, longest_streak), 10) * Fraction(1, 2)
    return DAILY_BONUS_BASE + math.floor(scaled)


def chain_bonus(completed: int, total: int) -> int:
    """Completion-rate tiered bonus paid when a chain session finishes."""
    if total <= 0:
        return 0
    rate = Fraction(completed, total)
    if rate == 1:
        return 100 + 15 * completed
    if rate >= Fraction(4, 5):
        return 60 + 10 * completed
    if rate >= Fraction(1, 2):
        return 30 + 5 * completed
    return 0
