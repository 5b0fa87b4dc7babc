from datetime import timedelta

import pytest

from habitchain.core.errors import ValidationError
from habitchain.features.rewards.ledger import ALREADY_AWARDED, RewardLedger
from habitchain.features.rewards.ranks import RANK_TIERS, calculate_rank, xp_to_next_rank
from habitchain.features.rewards.rules import chain_bonus, daily_bonus_amount, milestone_bonus
from habitchain.models.reward import RewardSource


@pytest.mark.parametrize(
    "xp,title,level,progress",
    [
        (0, "Novice", 1, 0),
        (250, "Novice", 1, 50),
        (499, "Novice", 1, 99),
        (500, "Beginner", 2, 0),
        (1499, "Beginner", 2, 99),
        (1500, "Apprentice", 3, 0),
        (3500, "Practitioner", 4, 0),
        (7000, "Expert", 5, 0),
        (12500, "Master", 6, 0),
        (20000, "Grandmaster", 7, 0),
        (29999, "Grandmaster", 7, 99),
        (30000, "Legend", 8, 100),
        (1_000_000, "Legend", 8, 100),
    ],
)
def test_rank_boundaries(xp, title, level, progress):
    rank = calculate_rank(xp)
    assert (rank.title, rank.level, rank.progress_percent) == (title, level, progress)


def test_rank_is_pure_and_monotonic():
    assert calculate_rank(1234) == calculate_rank(1234)
    levels = [calculate_rank(xp).level for xp in range(0, 31000, 250)]
    assert levels == sorted(levels)
    assert len(RANK_TIERS) == 8


def test_xp_to_next_rank():
    assert xp_to_next_rank(0) == 500
    assert xp_to_next_rank(499) == 1
    assert xp_to_next_rank(30000) is None


def test_milestone_table_is_exact_match():
    assert milestone_bonus(7) == 100
    assert milestone_bonus(30) == 500
    assert milestone_bonus(100) == 1500
    assert milestone_bonus(365) == 5000
    assert milestone_bonus(8) is None
    assert milestone_bonus(31) is None


@pytest.mark.parametrize("longest,expected", [(0, 50), (1, 52), (3, 57), (10, 75), (30, 125)])
def test_daily_bonus_formula(longest, expected):
    assert daily_bonus_amount(longest) == expected


@pytest.mark.parametrize(
    "completed,total,bonus",
    [(5, 5, 175), (4, 5, 100), (3, 5, 45), (2, 5, 0), (0, 5, 0), (1, 2, 35), (0, 0, 0)],
)
def test_chain_bonus_tiers(completed, total, bonus):
    assert chain_bonus(completed, total) == bonus


def test_award_then_remove(store, clock):
    ledger = RewardLedger(clock=clock)
    with store.unit_of_work() as uow:
        first = ledger.award_xp(uow, "u", 520, RewardSource.HABIT_COMPLETION, "Did it")
        assert first.new_total == 520
        assert first.ranked_up
        assert first.previous_rank_title == "Novice"

        second = ledger.remove_xp(uow, "u", 100, RewardSource.HABIT_COMPLETION, "Undid it")
        assert second.new_total == 420
        assert second.amount == -100
        assert second.ranked_down

        history = ledger.history(uow, "u")
    assert [e.amount for e in history] == [-100, 520]


def test_remove_clamps_at_zero_and_records_applied_amount(store, clock):
    ledger = RewardLedger(clock=clock)
    with store.unit_of_work() as uow:
        ledger.award_xp(uow, "u", 30, RewardSource.HABIT_COMPLETION, "Did it")
        result = ledger.remove_xp(uow, "u", 100, RewardSource.HABIT_COMPLETION, "Undid it")
        assert result.new_total == 0
        assert result.amount == -30
        assert ledger.rank_info(uow, "u")["xp_total"] == 0


def test_negative_amounts_rejected(store):
    ledger = RewardLedger()
    with store.unit_of_work() as uow:
        with pytest.raises(ValidationError):
            ledger.award_xp(uow, "u", -5, RewardSource.HABIT_COMPLETION, "bad")
        with pytest.raises(ValidationError):
            ledger.remove_xp(uow, "u", -5, RewardSource.HABIT_COMPLETION, "bad")


def test_history_is_bounded_newest_first(store, clock):
    ledger = RewardLedger(history_limit=3, clock=clock)
    with store.unit_of_work() as uow:
        for amount in (1, 2, 3, 4, 5):
            clock.advance(minutes=1)
            ledger.award_xp(uow, "u", amount, RewardSource.HABIT_COMPLETION, f"+{amount}")
        history = ledger.history(uow, "u")
        assert ledger.rank_info(uow, "u")["xp_total"] == 15
    assert [e.amount for e in history] == [5, 4, 3]


def test_milestone_awarded_when_streak_reaches_seven(actions, seed_habit, store):
    prior = ["2024-03-07", "2024-03-08", "2024-03-09", "2024-03-10", "2024-03-11", "2024-03-12"]
    habit = seed_habit(store, days_completed=prior, streak=6)
    result = actions.complete_habit("user-1", habit.id)

    assert result.data["new_streak"] == 7
    assert result.data["milestone"]["amount"] == 100


def test_milestone_paid_once_across_undo_and_redo(actions, seed_habit, store):
    prior = ["2024-03-07", "2024-03-08", "2024-03-09", "2024-03-10", "2024-03-11", "2024-03-12"]
    habit = seed_habit(store, days_completed=prior, streak=6)

    first = actions.complete_habit("user-1", habit.id)
    assert first.data["milestone"]["amount"] == 100
    for _ in range(3):
        assert actions.skip_habit("user-1", habit.id).success
        again = actions.complete_habit("user-1", habit.id)
        assert again.data["new_streak"] == 7
        assert again.data["milestone"] is None

    history = actions.get_reward_history("user-1", limit=100).data
    milestones = [e for e in history if e["source"] == RewardSource.STREAK_MILESTONE.value]
    assert len(milestones) == 1
    # 25 habit XP + 100 milestone + 67 daily bonus, undo/redo nets zero
    assert actions.get_rank_info("user-1").data["xp_total"] == 192


def test_no_milestone_between_table_entries(actions, seed_habit, store):
    prior = [f"2024-03-{d:02d}" for d in range(5, 13)]
    habit = seed_habit(store, days_completed=prior, streak=8)
    result = actions.complete_habit("user-1", habit.id)
    assert result.data["new_streak"] == 9
    assert result.data["milestone"] is None


def test_daily_bonus_needs_every_scheduled_habit(actions, make_habit):
    first = make_habit(name="Meditate")
    make_habit(name="Journal")
    result = actions.complete_habit("user-1", first)
    assert result.data["daily_bonus"]["awarded"] is False

    check = actions.check_daily_bonus("user-1")
    assert check.data["awarded"] is False
    assert check.data["message"] == "not all habits completed"


def test_daily_bonus_awarded_once_per_day(actions, make_habit):
    habit_id = make_habit()
    done = actions.complete_habit("user-1", habit_id)
    assert done.data["daily_bonus"]["awarded"] is True
    assert done.data["daily_bonus"]["amount"] == 52

    again = actions.check_daily_bonus("user-1")
    assert again.success
    assert again.data["awarded"] is False
    assert again.data["message"] == ALREADY_AWARDED

    rank = actions.get_rank_info("user-1").data
    assert rank["xp_total"] == 25 + 52
    assert rank["daily_bonuses_earned"] == 1


def test_daily_bonus_ignores_habits_not_due_today(actions, make_habit):
    # Wednesday: a weekend habit is not due
    daily = make_habit(name="Meditate")
    make_habit(name="Hike", schedule="Weekends")
    result = actions.complete_habit("user-1", daily)
    assert result.data["daily_bonus"]["awarded"] is True


def test_daily_bonus_available_again_next_day(actions, make_habit, clock):
    habit_id = make_habit()
    actions.complete_habit("user-1", habit_id)
    clock.advance(days=1)
    nxt = actions.complete_habit("user-1", habit_id)
    # longest stored streak is now 2
    assert nxt.data["daily_bonus"]["awarded"] is True
    assert nxt.data["daily_bonus"]["amount"] == 55


def test_reward_history_limit_validation(actions, make_habit):
    habit_id = make_habit()
    actions.complete_habit("user-1", habit_id)

    history = actions.get_reward_history("user-1", limit=1)
    assert len(history.data) == 1
    assert history.data[0]["source"] == "daily_bonus"

    assert actions.get_reward_history("user-1", limit=0).code == "validation_error"
    assert actions.get_reward_history("user-1", limit=101).code == "validation_error"


def test_rank_info_for_new_user(actions):
    info = actions.get_rank_info("nobody").data
    assert info["xp_total"] == 0
    assert info["rank"]["title"] == "Novice"
    assert info["xp_to_next_rank"] == 500


def test_history_entries_carry_day_key(actions, make_habit, clock):
    habit_id = make_habit()
    clock.set(clock() + timedelta(hours=10))  # 22:00 UTC
    actions.complete_habit("user-1", habit_id, tz_name="Asia/Tokyo")
    entries = actions.get_reward_history("user-1").data
    assert {e["day_key"] for e in entries} == {"2024-03-14"}
