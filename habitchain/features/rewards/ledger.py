"""
Reward Ledger

Owns the XP economy for a user:
- xp_total and the rank derived from it
- a bounded, newest-first history of signed entries
- streak milestone and daily bonus detection

Every method takes the caller's unit of work, so XP changes commit or roll
back together with the progress that earned them. In deferred posting mode
the ledger records reward intents in the outbox instead of applying them;
OutboxDrainer applies them later.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from habitchain.core.errors import ValidationError
from habitchain.core.logging import log_event
from habitchain.core.store import UnitOfWork
from habitchain.features.rewards.ranks import calculate_rank, xp_to_next_rank
from habitchain.features.rewards.rules import daily_bonus_amount, milestone_bonus
from habitchain.models.reward import (
    AwardResult,
    OutboxEntry,
    RewardIntent,
    RewardLedgerEntry,
    RewardSource,
    UserRewardState,
)

POSTING_MODES = ("inline", "deferred")

ALREADY_AWARDED = "already awarded"


@dataclass
class DailyBonusOutcome:
    awarded: bool
    amount: int = 0
    message: Optional[str] = None
    award: Optional[AwardResult] = None

    def as_dict(self) -> dict:
        return {
            "awarded": self.awarded,
            "amount": self.amount,
            "message": self.message,
            "award": self.award.model_dump(mode="json") if self.award else None,
        }


class RewardLedger:
    def __init__(
        self,
        history_limit: int = 100,
        posting_mode: str = "inline",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.history_limit = history_limit
        self.posting_mode = posting_mode if posting_mode in POSTING_MODES else "inline"
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def deferred(self) -> bool:
        return self.posting_mode == "deferred"

    # ------------------------------------------------------------------
    # Direct ledger writes
    # ------------------------------------------------------------------

    def award_xp(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount: int,
        source: RewardSource,
        description: str,
        *,
        day_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AwardResult:
        if amount < 0:
            raise ValidationError("XP amount must be non-negative")
        return self._apply(uow, user_id, amount, source, description, day_key, now)

    def remove_xp(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount: int,
        source: RewardSource,
        description: str,
        *,
        day_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AwardResult:
        if amount < 0:
            raise ValidationError("XP amount must be non-negative")
        return self._apply(uow, user_id, -amount, source, description, day_key, now)

    def _apply(
        self,
        uow: UnitOfWork,
        user_id: str,
        delta: int,
        source: RewardSource,
        description: str,
        day_key: Optional[str],
        now: Optional[datetime],
    ) -> AwardResult:
        ts = now or self.clock()
        state = uow.rewards.get_state(user_id)
        old_rank = state.rank
        new_total = max(0, state.xp_total + delta)
        applied = new_total - state.xp_total

        new_state = UserRewardState(
            user_id=user_id,
            xp_total=new_total,
            daily_bonuses_earned=state.daily_bonuses_earned + (1 if source == RewardSource.DAILY_BONUS and delta > 0 else 0),
            updated_at=ts,
        )
        new_rank = new_state.rank

        uow.rewards.append_history(
            user_id,
            RewardLedgerEntry(
                timestamp=ts,
                amount=applied,
                source=source,
                description=description,
                day_key=day_key,
            ),
            self.history_limit,
        )
        uow.rewards.save_state(new_state)

        result = AwardResult(
            amount=applied,
            new_total=new_total,
            ranked_up=new_rank.level > old_rank.level,
            ranked_down=new_rank.level < old_rank.level,
            rank=new_rank,
            previous_rank_title=old_rank.title,
        )
        log_event(
            "info",
            "reward.awarded" if delta >= 0 else "reward.removed",
            user_id=user_id,
            event_type=f"reward.{source.value}",
            extra={"amount": applied, "new_total": new_total, "rank": new_rank.title},
        )
        if result.ranked_up:
            log_event(
                "info",
                "reward.rank_up",
                user_id=user_id,
                event_type="reward.rank_up",
                extra={"from": old_rank.title, "to": new_rank.title},
            )
        return result

    # ------------------------------------------------------------------
    # Posting (inline apply or outbox)
    # ------------------------------------------------------------------

    def grant(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount: int,
        source: RewardSource,
        description: str,
        *,
        day_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AwardResult:
        """Award (positive) or remove (negative) XP through the configured posting mode."""
        intent = RewardIntent(
            user_id=user_id,
            amount=amount,
            source=source,
            description=description,
            day_key=day_key,
            created_at=now or self.clock(),
        )
        return self.post(uow, intent)

    def post(self, uow: UnitOfWork, intent: RewardIntent) -> AwardResult:
        if not self.deferred:
            return self.apply_intent(uow, intent)

        uow.outbox.add(OutboxEntry(intent=intent, updated_at=intent.created_at))
        log_event(
            "info",
            "reward.queued",
            user_id=intent.user_id,
            event_type=f"reward.{intent.source.value}",
            extra={"intent_id": intent.id, "amount": intent.amount},
        )
        state = uow.rewards.get_state(intent.user_id)
        return AwardResult(
            amount=intent.amount,
            new_total=state.xp_total,
            rank=state.rank,
            previous_rank_title=state.rank.title,
            message="queued",
            queued=True,
        )

    def apply_intent(self, uow: UnitOfWork, intent: RewardIntent) -> AwardResult:
        if intent.source == RewardSource.DAILY_BONUS and self._daily_bonus_in_history(uow, intent.user_id, intent.day_key):
            return AwardResult(success=False, message=ALREADY_AWARDED)
        if intent.amount >= 0:
            return self.award_xp(
                uow, intent.user_id, intent.amount, intent.source, intent.description,
                day_key=intent.day_key, now=intent.created_at,
            )
        return self.remove_xp(
            uow, intent.user_id, -intent.amount, intent.source, intent.description,
            day_key=intent.day_key, now=intent.created_at,
        )

    # ------------------------------------------------------------------
    # Bonus detection
    # ------------------------------------------------------------------

    def check_streak_milestone(
        self,
        uow: UnitOfWork,
        user_id: str,
        new_streak: int,
        *,
        habit_name: str = "",
        day_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AwardResult]:
        """Award the milestone bonus on an exact table hit, None otherwise."""
        bonus = milestone_bonus(new_streak)
        if bonus is None:
            return None
        label = f" on {habit_name}" if habit_name else ""
        return self.grant(
            uow,
            user_id,
            bonus,
            RewardSource.STREAK_MILESTONE,
            f"{new_streak}-day streak{label}",
            day_key=day_key,
            now=now,
        )

    def _daily_bonus_in_history(self, uow: UnitOfWork, user_id: str, day_key: Optional[str]) -> bool:
        return any(
            entry.source == RewardSource.DAILY_BONUS and entry.day_key == day_key
            for entry in uow.rewards.history(user_id)
        )

    def has_daily_bonus(self, uow: UnitOfWork, user_id: str, day_key: str) -> bool:
        if self._daily_bonus_in_history(uow, user_id, day_key):
            return True
        if self.deferred:
            return any(
                e.intent.source == RewardSource.DAILY_BONUS and e.intent.day_key == day_key
                for e in uow.outbox.pending(limit=1000, user_id=user_id)
            )
        return False

    def check_daily_bonus(
        self,
        uow: UnitOfWork,
        user_id: str,
        completed_today: int,
        total_scheduled_today: int,
        *,
        longest_streak: int,
        day_key: str,
        now: Optional[datetime] = None,
    ) -> DailyBonusOutcome:
        if total_scheduled_today <= 0 or completed_today < total_scheduled_today:
            return DailyBonusOutcome(awarded=False, message="not all habits completed")
        if self.has_daily_bonus(uow, user_id, day_key):
            return DailyBonusOutcome(awarded=False, message=ALREADY_AWARDED)

        amount = daily_bonus_amount(longest_streak)
        award = self.grant(
            uow,
            user_id,
            amount,
            RewardSource.DAILY_BONUS,
            f"Completed all {total_scheduled_today} habits today",
            day_key=day_key,
            now=now,
        )
        return DailyBonusOutcome(awarded=True, amount=amount, award=award)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def rank_info(self, uow: UnitOfWork, user_id: str) -> dict:
        state = uow.rewards.get_state(user_id)
        rank = calculate_rank(state.xp_total)
        return {
            "xp_total": state.xp_total,
            "rank": rank.model_dump(),
            "xp_to_next_rank": xp_to_next_rank(state.xp_total),
            "daily_bonuses_earned": state.daily_bonuses_earned,
        }

    def history(self, uow: UnitOfWork, user_id: str, limit: Optional[int] = None) -> List[RewardLedgerEntry]:
        return uow.rewards.history(user_id, limit)
