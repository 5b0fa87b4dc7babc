import json
import logging
import sys

from habitchain.core.logging import (
    JsonFormatter,
    PrettyFormatter,
    RequestIdFilter,
    latency_bucket_ms,
    log_event,
    request_id_ctx_var,
    user_id_ctx_var,
)


def _record(**extra):
    record = logging.LogRecord("habitchain", logging.INFO, __file__, 1, "habit.completed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_structured_fields():
    payload = json.loads(
        JsonFormatter().format(_record(request_id="r-1", user_id="u-1", event_type="habit.completed"))
    )
    assert payload["message"] == "habit.completed"
    assert payload["request_id"] == "r-1"
    assert payload["user_id"] == "u-1"
    assert payload["event_type"] == "habit.completed"
    assert payload["timestamp"].endswith("Z")
    assert "error_code" not in payload


def test_request_id_filter_reads_context():
    token = request_id_ctx_var.set("ctx-9")
    try:
        record = _record()
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)
    assert record.request_id == "ctx-9"


def test_log_event_attaches_fields(caplog):
    with caplog.at_level(logging.INFO, logger="habitchain"):
        log_event("info", "reward.awarded", user_id="u-1", event_type="reward.habit_completion", extra={"amount": 25})
    record = caplog.records[-1]
    assert record.getMessage() == "reward.awarded"
    assert record.user_id == "u-1"
    assert record.amount == "25"


def test_log_event_truncates_long_values(caplog):
    with caplog.at_level(logging.INFO, logger="habitchain"):
        log_event("info", "big", extra={"blob": "x" * 2000})
    assert caplog.records[-1].blob.endswith("...<truncated>")


def test_log_event_context_reaches_both_formatters(caplog):
    with caplog.at_level(logging.INFO, logger="habitchain"):
        log_event("info", "habit.completed", user_id="u-1", extra={"habit_id": "h-1", "streak": 7})
    record = caplog.records[-1]

    payload = json.loads(JsonFormatter().format(record))
    assert payload["context"] == {"habit_id": "h-1", "streak": "7"}
    assert payload["user_id"] == "u-1"

    line = PrettyFormatter().format(record)
    assert "habit.completed user=u-1" in line
    assert line.endswith("habit_id=h-1 streak=7")


def test_json_formatter_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("habitchain", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
    payload = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in payload["exception"]


def test_filter_and_log_event_read_user_from_context(caplog):
    token = user_id_ctx_var.set("ctx-user")
    try:
        record = _record()
        RequestIdFilter().filter(record)
        with caplog.at_level(logging.INFO, logger="habitchain"):
            log_event("info", "stats.generated")
    finally:
        user_id_ctx_var.reset(token)
    assert record.user_id == "ctx-user"
    assert caplog.records[-1].user_id == "ctx-user"


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(5000) == ">=1000ms"


def test_actions_log_failures(actions, caplog):
    with caplog.at_level(logging.WARNING, logger="habitchain"):
        actions.complete_habit("user-1", "missing")
    failed = [r for r in caplog.records if r.getMessage() == "action.failed"]
    assert failed and failed[0].error_code == "not_found"
    assert failed[0].event_type == "habit.complete"
