from habitchain.conftest import make_settings
from habitchain.features.actions import UserActions
from habitchain.features.stats.aggregator import content_hash, data_key, hash_key, status_key
from habitchain.tests.mocks import FailingCache

WEEK = ["2024-03-07", "2024-03-08", "2024-03-09", "2024-03-10", "2024-03-11", "2024-03-12", "2024-03-13"]


def test_stats_rollups(actions, seed_habit, store):
    seed_habit(store, days_completed=WEEK, streak=7)
    seed_habit(store, name="Old", days_completed=WEEK, status="archived")

    stats = actions.get_stats("user-1").data
    assert stats["total_habits"] == 2
    assert stats["active_habits"] == 1
    assert stats["scheduled_today"] == 1
    assert stats["completed_today"] == 1
    assert stats["completion_rate_7d"] == 100.0
    assert stats["completion_rate_30d"] == 23.3
    assert stats["consistency_score"] == 23.3
    assert stats["longest_streak"] == 7
    assert stats["habits"][0]["current_streak"] == 7
    assert len(stats["daily"]) == 14
    assert stats["daily"][-1]["day_key"] == "2024-03-13"


def test_habit_created_today_only_counts_today(actions, make_habit):
    habit_id = make_habit()
    actions.complete_habit("user-1", habit_id)
    stats = actions.get_stats("user-1").data
    assert stats["completion_rate_30d"] == 100.0
    assert stats["consistency_score"] == 100.0


def test_second_read_is_served_from_cache(actions, make_habit, cache):
    make_habit()
    first = actions.get_stats("user-1").data
    second = actions.get_stats("user-1").data

    assert first["from_cache"] is False
    assert second["from_cache"] is True
    assert second["stale"] is False
    assert second["content_hash"] == first["content_hash"]
    assert cache.get(hash_key("user-1")) == first["content_hash"]
    assert cache.get(status_key("user-1")) is None


def test_completion_invalidates_cached_stats(actions, make_habit):
    habit_id = make_habit()
    before = actions.get_stats("user-1").data
    actions.complete_habit("user-1", habit_id)
    after = actions.get_stats("user-1").data

    assert after["from_cache"] is False
    assert after["content_hash"] != before["content_hash"]
    assert after["completed_today"] == 1


def test_cached_stats_roll_over_at_local_midnight(actions, make_habit, clock):
    habit_id = make_habit()
    actions.complete_habit("user-1", habit_id)
    assert actions.get_stats("user-1").data["completed_today"] == 1

    clock.advance(days=1)
    next_day = actions.get_stats("user-1").data
    assert next_day["from_cache"] is False
    assert next_day["completed_today"] == 0


def test_cached_stats_are_per_timezone(actions, make_habit):
    habit_id = make_habit()
    actions.complete_habit("user-1", habit_id)
    assert actions.get_stats("user-1").data["completed_today"] == 1

    # Already 2024-03-14 in Auckland
    auckland = actions.get_stats("user-1", tz_name="Pacific/Auckland").data
    assert auckland["from_cache"] is False
    assert auckland["completed_today"] == 0


def test_force_refresh_recomputes(actions, make_habit):
    make_habit()
    actions.get_stats("user-1")
    assert actions.get_stats("user-1", force_refresh=True).data["from_cache"] is False


def test_generating_marker_serves_stale_payload(actions, make_habit, cache):
    habit_id = make_habit()
    actions.get_stats("user-1")
    actions.complete_habit("user-1", habit_id)

    assert cache.set_nx(status_key("user-1"), "generating", 60)
    stats = actions.get_stats("user-1").data
    assert stats["from_cache"] is True
    assert stats["stale"] is True
    assert stats["completed_today"] == 0


def test_generating_marker_without_cache_still_computes(actions, make_habit, cache):
    make_habit()
    cache.set_nx(status_key("user-1"), "generating", 60)
    stats = actions.get_stats("user-1").data
    assert stats["from_cache"] is False
    assert stats["total_habits"] == 1
    # The other request still owns its marker
    assert cache.get(status_key("user-1")) == "generating"


def test_cache_outage_degrades_to_recompute(store, clock, seed_habit):
    seed_habit(store, days_completed=WEEK)
    actions = UserActions(store, FailingCache(), settings_obj=make_settings(), clock=clock)
    first = actions.get_stats("user-1")
    second = actions.get_stats("user-1")
    assert first.success and second.success
    assert second.data["from_cache"] is False
    assert second.data["completed_today"] == 1


def test_content_hash_tracks_completions(store, seed_habit):
    habit = seed_habit(store, days_completed=["2024-03-12"])
    changed = habit.model_copy(update={"completions": []})
    assert content_hash([habit]) == content_hash([habit])
    assert content_hash([habit]) != content_hash([changed])


def test_invalidate_clears_cached_payload(actions, make_habit, cache):
    make_habit()
    actions.get_stats("user-1")
    actions.stats.invalidate("user-1")
    assert cache.get(data_key("user-1")) is None
    assert actions.get_stats("user-1").data["from_cache"] is False


def test_analytics_window(actions, seed_habit, store):
    seed_habit(store, days_completed=WEEK)
    result = actions.get_habit_analytics("user-1", days=7)
    assert result.success
    assert result.data["days"] == 7
    assert len(result.data["daily"]) == 7
    assert result.data["completion_rate"] == 100.0
    assert result.data["total_completed"] == 7


def test_analytics_days_validation(actions):
    assert actions.get_habit_analytics("user-1", days=0).code == "validation_error"
    assert actions.get_habit_analytics("user-1", days=366).code == "validation_error"
    assert actions.get_habit_analytics("user-1", days=365).success


def test_invalid_timezone_is_a_config_error(actions):
    result = actions.get_stats("user-1", tz_name="Mars/Olympus")
    assert result.code == "config_error"
