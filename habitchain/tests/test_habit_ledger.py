from habitchain.core.errors import ConflictError
from habitchain.features.streaks.calculator import compute_streak
from habitchain.models.habit import HabitStatus


def test_complete_twice_same_day_conflicts(actions, make_habit, store):
    habit_id = make_habit()
    first = actions.complete_habit("user-1", habit_id)
    second = actions.complete_habit("user-1", habit_id)

    assert first.success
    assert first.data["new_streak"] == 1
    assert not second.success
    assert second.code == "already_completed"
    assert second.status_code == 409

    with store.unit_of_work() as uow:
        habit = uow.habits.get("user-1", habit_id)
    assert [c.day_key for c in habit.completions] == ["2024-03-13"]


def test_already_completed_is_a_conflict_error():
    from habitchain.core.errors import AlreadyCompletedError

    assert issubclass(AlreadyCompletedError, ConflictError)


def test_completion_next_day_extends_streak(actions, make_habit, clock):
    habit_id = make_habit()
    actions.complete_habit("user-1", habit_id)
    clock.advance(days=1)
    result = actions.complete_habit("user-1", habit_id)
    assert result.data["new_streak"] == 2
    assert result.data["day_key"] == "2024-03-14"


def test_stored_streak_matches_recompute(actions, seed_habit, store, clock):
    habit = seed_habit(store, days_completed=["2024-03-10", "2024-03-11", "2024-03-12"], streak=3)
    actions.complete_habit("user-1", habit.id)

    with store.unit_of_work() as uow:
        stored = uow.habits.get("user-1", habit.id)
    assert stored.streak == 4
    assert stored.streak == compute_streak(stored.completed_day_keys(), stored.schedule, "UTC", now=clock())


def test_skip_without_completion_fails(actions, make_habit):
    habit_id = make_habit()
    result = actions.skip_habit("user-1", habit_id)
    assert not result.success
    assert result.code == "not_completed"


def test_skip_removes_completion_and_recomputes(actions, seed_habit, store):
    habit = seed_habit(store, days_completed=["2024-03-11", "2024-03-12"], streak=2)
    actions.complete_habit("user-1", habit.id)
    result = actions.skip_habit("user-1", habit.id)

    assert result.success
    # Yesterday still chains back
    assert result.data["new_streak"] == 2
    with store.unit_of_work() as uow:
        stored = uow.habits.get("user-1", habit.id)
    assert not stored.is_completed_on("2024-03-13")
    assert stored.streak == 2


def test_completion_awards_priority_xp(actions, make_habit):
    low = make_habit(name="Stretch", priority="low")
    high = make_habit(name="Run", priority="high")
    assert actions.complete_habit("user-1", low).data["xp_earned"] == 20
    assert actions.complete_habit("user-1", high).data["xp_earned"] == 30


def test_skip_takes_back_completion_xp_only(actions, make_habit):
    habit_id = make_habit()
    done = actions.complete_habit("user-1", habit_id)
    # The only habit due today is done, so the daily bonus lands too
    assert done.data["daily_bonus"]["awarded"] is True
    total_after_complete = done.data["daily_bonus"]["award"]["new_total"]

    undo = actions.skip_habit("user-1", habit_id)
    assert undo.data["xp_removed"] == 25
    assert undo.data["award"]["new_total"] == total_after_complete - 25


def test_archived_habit_cannot_be_completed(actions, make_habit):
    habit_id = make_habit()
    assert actions.update_habit_status("user-1", habit_id, HabitStatus.ARCHIVED).success
    result = actions.complete_habit("user-1", habit_id)
    assert result.code == "invalid_transition"


def test_habit_status_transitions(actions, make_habit):
    habit_id = make_habit()
    assert actions.update_habit_status("user-1", habit_id, HabitStatus.PAUSED).data["status"] == "paused"
    assert actions.update_habit_status("user-1", habit_id, HabitStatus.ACTIVE).data["status"] == "active"
    assert actions.update_habit_status("user-1", habit_id, HabitStatus.ARCHIVED).success
    blocked = actions.update_habit_status("user-1", habit_id, HabitStatus.PAUSED)
    assert blocked.code == "invalid_transition"


def test_unknown_habit_status_is_a_validation_result(actions, make_habit):
    habit_id = make_habit()
    result = actions.update_habit_status("user-1", habit_id, "bogus")
    assert not result.success
    assert result.code == "validation_error"
    assert result.status_code == 400
    assert "bogus" in result.error
    # Plain strings naming a real status are coerced
    assert actions.update_habit_status("user-1", habit_id, "paused").data["status"] == "paused"


def test_other_users_habit_is_not_found(actions, make_habit):
    habit_id = make_habit(user_id="owner")
    result = actions.complete_habit("intruder", habit_id)
    assert result.code == "not_found"
    assert result.status_code == 404


def test_create_habit_rejects_unknown_schedule(actions):
    from habitchain.models.habit import HabitCreateRequest

    result = actions.create_habit("user-1", HabitCreateRequest(name="Swim", schedule="sometimes"))
    assert result.code == "validation_error"


def test_list_habits_refreshes_decayed_streak(actions, seed_habit, store, clock):
    habit = seed_habit(store, days_completed=["2024-03-12"], streak=1)
    clock.advance(days=3)
    listed = actions.list_habits("user-1")
    assert listed.data[0]["streak"] == 0


def test_delete_habit(actions, make_habit):
    habit_id = make_habit()
    assert actions.delete_habit("user-1", habit_id).success
    assert actions.delete_habit("user-1", habit_id).code == "not_found"
