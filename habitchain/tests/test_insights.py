from habitchain.conftest import make_settings
from habitchain.features.actions import UserActions
from habitchain.features.insights.service import InsightWriter, fallback_insights
from habitchain.features.stats.models import HabitStats
from habitchain.models.habit import HabitCreateRequest
from habitchain.tests.mocks import FakeGroq


def _stats(**fields):
    base = dict(user_id="user-1", active_habits=2, scheduled_today=2, completed_today=2)
    base.update(fields)
    return HabitStats(**base)


def test_model_output_is_trimmed_to_three_lines(test_settings):
    client = FakeGroq(content="- Strong week\n\n* Keep the morning chain\n- Sleep earlier\n- Extra line")
    writer = InsightWriter(client=client, settings_obj=test_settings)
    lines = writer.write(_stats())

    assert lines == ["Strong week", "Keep the morning chain", "Sleep earlier"]
    call = client.chat.completions.calls[0]
    assert call["model"] == test_settings.GROQ_MODEL
    assert call["messages"][0]["role"] == "system"
    assert "completion_rate_7d" in call["messages"][1]["content"]


def test_model_error_falls_back_to_rules(test_settings):
    writer = InsightWriter(client=FakeGroq(error=TimeoutError("slow")), settings_obj=test_settings)
    assert writer.write(_stats()) == ["Every habit due today is done. Nice work."]


def test_empty_model_reply_falls_back(test_settings):
    writer = InsightWriter(client=FakeGroq(content="   \n"), settings_obj=test_settings)
    assert writer.write(_stats()) == fallback_insights(_stats())


def test_no_api_key_means_no_client(test_settings):
    writer = InsightWriter(settings_obj=test_settings)
    assert writer.client is None
    assert writer.write(_stats(active_habits=0)) == ["Add a habit to start building your first streak."]


def test_fallback_rules():
    lines = fallback_insights(
        _stats(
            completed_today=1,
            completion_rate_7d=80.0,
            completion_rate_30d=60.0,
            longest_streak=12,
        )
    )
    assert lines[0] == "1 habit still due today."
    assert "ahead of your 30-day pace" in lines[1]
    assert lines[2] == "Your longest streak is 12 days."


def test_stats_include_insights(store, cache, clock):
    cfg = make_settings()
    writer = InsightWriter(client=FakeGroq(content="Great start"), settings_obj=cfg)
    actions = UserActions(store, cache, settings_obj=cfg, clock=clock, insight_writer=writer)
    actions.create_habit("user-1", HabitCreateRequest(name="Walk"))

    assert actions.get_stats("user-1").data["insights"] == ["Great start"]
