"""Rewards that follow a habit completion or its reversal."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from habitchain.core.store import UnitOfWork
from habitchain.features.habits.ledger import HabitLedger, LedgerChange
from habitchain.features.rewards.ledger import DailyBonusOutcome, RewardLedger
from habitchain.features.rewards.rules import habit_xp
from habitchain.models.reward import AwardResult, RewardSource


@dataclass
class CompletionRewards:
    xp_earned: int
    award: AwardResult
    milestone: Optional[AwardResult] = None
    daily_bonus: Optional[DailyBonusOutcome] = None

    def as_dict(self) -> dict:
        return {
            "xp_earned": self.xp_earned,
            "award": self.award.model_dump(mode="json"),
            "milestone": self.milestone.model_dump(mode="json") if self.milestone else None,
            "daily_bonus": self.daily_bonus.as_dict() if self.daily_bonus else None,
        }


class CompletionRewarder:
    def __init__(self, habit_ledger: HabitLedger, reward_ledger: RewardLedger):
        self.habit_ledger = habit_ledger
        self.reward_ledger = reward_ledger

    def on_completed(
        self,
        uow: UnitOfWork,
        user_id: str,
        change: LedgerChange,
        *,
        now: datetime,
        via_chain: bool = False,
    ) -> CompletionRewards:
        habit = change.habit
        amount = habit_xp(habit.priority)
        where = " (chain)" if via_chain else ""
        award = self.reward_ledger.grant(
            uow,
            user_id,
            amount,
            RewardSource.HABIT_COMPLETION,
            f"Completed {habit.name}{where}",
            day_key=change.day_key,
            now=now,
        )

        milestone = None
        # A habit's streak is fixed for a given day, so one milestone per habit per day.
        if change.new_streak > change.old_streak and habit.milestone_day_key != change.day_key:
            milestone = self.reward_ledger.check_streak_milestone(
                uow,
                user_id,
                change.new_streak,
                habit_name=habit.name,
                day_key=change.day_key,
                now=now,
            )
            if milestone is not None:
                habit.milestone_day_key = change.day_key
                uow.habits.save(habit)

        completed, scheduled, longest = self.habit_ledger.daily_totals(uow, user_id, change.day_key)
        daily = self.reward_ledger.check_daily_bonus(
            uow,
            user_id,
            completed,
            scheduled,
            longest_streak=longest,
            day_key=change.day_key,
            now=now,
        )
        return CompletionRewards(xp_earned=amount, award=award, milestone=milestone, daily_bonus=daily)

    def on_skipped(self, uow: UnitOfWork, user_id: str, change: LedgerChange, *, now: datetime) -> AwardResult:
        """
        Take back the completion XP. Milestone and daily bonus XP granted on
        the strength of that completion stay where they are.
        """
        habit = change.habit
        return self.reward_ledger.grant(
            uow,
            user_id,
            -habit_xp(habit.priority),
            RewardSource.HABIT_COMPLETION,
            f"Undid {habit.name}",
            day_key=change.day_key,
            now=now,
        )
