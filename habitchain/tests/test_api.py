import logging
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from habitchain.conftest import make_settings
from habitchain.main import create_app
from habitchain.tests.mocks import FailingCache

SECRET = "test-secret-that-is-long-enough-for-hs256"
USER = {"X-User-Id": "user-1"}


@pytest.fixture
def client(test_settings, store, cache, actions):
    app = create_app(test_settings, store=store, cache=cache, actions=actions)
    with TestClient(app) as c:
        yield c


def _create_habit(client, name="Meditate", headers=USER):
    response = client.post("/v1/habits", json={"name": name}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


def test_habit_lifecycle(client):
    habit_id = _create_habit(client)

    listed = client.get("/v1/habits", headers=USER).json()
    assert listed["count"] == 1
    assert listed["data"][0]["id"] == habit_id

    done = client.post(f"/v1/habits/{habit_id}/complete", headers=USER)
    assert done.status_code == 200
    assert done.json()["data"]["new_streak"] == 1
    assert done.json()["data"]["xp_earned"] == 25

    again = client.post(f"/v1/habits/{habit_id}/complete", headers=USER)
    assert again.status_code == 409
    body = again.json()
    assert body["error"]["code"] == "already_completed"
    assert body["error"]["request_id"] == again.headers["x-request-id"]

    undo = client.post(f"/v1/habits/{habit_id}/skip", headers=USER)
    assert undo.json()["data"]["xp_removed"] == 25

    archived = client.patch(f"/v1/habits/{habit_id}/status", json={"status": "archived"}, headers=USER)
    assert archived.json()["data"]["status"] == "archived"
    assert client.get("/v1/habits?status=active", headers=USER).json()["count"] == 0

    assert client.delete(f"/v1/habits/{habit_id}", headers=USER).status_code == 200
    assert client.delete(f"/v1/habits/{habit_id}", headers=USER).status_code == 404


def test_missing_identity_is_unauthenticated(client):
    response = client.get("/v1/habits")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthenticated"
    assert "x-request-id" in response.headers


def test_bearer_token_without_secret_is_rejected(client):
    response = client.get("/v1/habits", headers={"Authorization": "Bearer abc"})
    assert response.status_code == 401


def test_unknown_timezone_header_is_a_bad_request(client):
    response = client.get("/v1/stats", headers={**USER, "X-Timezone": "Nope/Zone"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_timezone_header_sets_the_day(client, clock):
    habit_id = _create_habit(client)
    clock.set(datetime(2024, 3, 13, 23, 30, tzinfo=timezone.utc))
    done = client.post(f"/v1/habits/{habit_id}/complete", headers={**USER, "X-Timezone": "Asia/Tokyo"})
    assert done.json()["data"]["day_key"] == "2024-03-14"


def test_jwt_identity(store, cache, actions):
    app = create_app(make_settings(AUTH_JWT_SECRET=SECRET), store=store, cache=cache, actions=actions)
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode({"sub": "jwt-user", "exp": exp}, SECRET, algorithm="HS256")
    expired = jwt.encode({"sub": "jwt-user", "exp": exp - timedelta(hours=1)}, SECRET, algorithm="HS256")
    forged = jwt.encode({"sub": "jwt-user", "exp": exp}, "another-secret-of-sufficient-length!!", algorithm="HS256")

    with TestClient(app) as client:
        ok = client.post("/v1/habits", json={"name": "Run"}, headers={"Authorization": f"Bearer {token}"})
        assert ok.status_code == 201
        assert ok.json()["data"]["user_id"] == "jwt-user"

        assert client.get("/v1/habits", headers=USER).status_code == 401
        stale = client.get("/v1/habits", headers={"Authorization": f"Bearer {expired}"})
        assert stale.status_code == 401
        assert stale.json()["error"]["message"] == "Token expired"
        assert client.get("/v1/habits", headers={"Authorization": f"Bearer {forged}"}).status_code == 401


def test_chain_session_flow(client):
    habits = [_create_habit(client, name=n) for n in ("Water", "Stretch")]
    chain = client.post(
        "/v1/chains",
        json={"name": "Morning", "steps": [{"habit_id": h, "expected_minutes": 3} for h in habits]},
        headers=USER,
    )
    assert chain.status_code == 201
    chain_id = chain.json()["data"]["id"]
    assert len(client.get("/v1/chains", headers=USER).json()["data"]) == 1

    started = client.post(f"/v1/chains/{chain_id}/start", headers=USER)
    assert started.status_code == 201
    session_id = started.json()["data"]["id"]

    clash = client.post(f"/v1/chains/{chain_id}/start", headers=USER)
    assert clash.status_code == 409
    assert clash.json()["error"]["code"] == "active_session_exists"
    assert clash.json()["error"]["data"] == {"activeSessionId": session_id}

    assert client.get("/v1/sessions/active", headers=USER).json()["data"]["id"] == session_id
    assert client.post(f"/v1/sessions/{session_id}/pause", headers=USER).status_code == 200
    assert client.post(f"/v1/sessions/{session_id}/complete", headers=USER).status_code == 409
    assert client.post(f"/v1/sessions/{session_id}/resume", headers=USER).status_code == 200
    assert client.post(f"/v1/sessions/{session_id}/break", json={"minutes": 5}, headers=USER).status_code == 200
    assert client.post(f"/v1/sessions/{session_id}/break/end", headers=USER).status_code == 200

    first = client.post(f"/v1/sessions/{session_id}/complete", json={"notes": "cold"}, headers=USER)
    assert first.json()["data"]["session"]["steps"][0]["notes"] == "cold"
    last = client.post(f"/v1/sessions/{session_id}/skip", json={"reason": "late"}, headers=USER)
    assert last.json()["data"]["chain_completed"] is True
    assert last.json()["data"]["chain_bonus"] == 35

    assert client.get("/v1/sessions/active", headers=USER).json()["data"] is None
    history = client.get("/v1/sessions/history?limit=5", headers=USER).json()["data"]
    assert [s["id"] for s in history] == [session_id]
    assert client.get("/v1/sessions/history?limit=500", headers=USER).status_code == 400


def test_abandon_via_api(client):
    habit_id = _create_habit(client)
    chain_id = client.post("/v1/chains", json={"name": "Solo", "steps": [{"habit_id": habit_id}]}, headers=USER).json()["data"]["id"]
    session_id = client.post(f"/v1/chains/{chain_id}/start", headers=USER).json()["data"]["id"]
    abandoned = client.post(f"/v1/sessions/{session_id}/abandon", headers=USER)
    assert abandoned.json()["data"]["status"] == "abandoned"
    assert client.delete(f"/v1/chains/{chain_id}", headers=USER).status_code == 200


def test_rewards_endpoints(client):
    habit_id = _create_habit(client)
    client.post(f"/v1/habits/{habit_id}/complete", headers=USER)

    rank = client.get("/v1/rewards/rank", headers=USER).json()["data"]
    assert rank["xp_total"] == 77
    assert rank["rank"]["title"] == "Novice"

    history = client.get("/v1/rewards/history?limit=2", headers=USER).json()["data"]
    assert [e["amount"] for e in history] == [52, 25]
    assert client.get("/v1/rewards/history?limit=0", headers=USER).status_code == 400

    bonus = client.post("/v1/rewards/daily-bonus", headers=USER).json()["data"]
    assert bonus["awarded"] is False
    assert bonus["message"] == "already awarded"


def test_stats_and_analytics(client):
    _create_habit(client)
    first = client.get("/v1/stats", headers=USER).json()["data"]
    assert first["total_habits"] == 1
    assert client.get("/v1/stats", headers=USER).json()["data"]["from_cache"] is True
    assert client.get("/v1/stats?refresh=true", headers=USER).json()["data"]["from_cache"] is False

    analytics = client.get("/v1/habits/analytics?days=7", headers=USER)
    assert len(analytics.json()["data"]["daily"]) == 7
    assert client.get("/v1/habits/analytics?days=0", headers=USER).status_code == 400


def test_rate_limit_on_mutations(store, cache, actions):
    app = create_app(make_settings(RATE_LIMIT_PER_MINUTE=2), store=store, cache=cache, actions=actions)
    with TestClient(app) as client:
        codes = [client.post("/v1/habits", json={"name": f"H{i}"}, headers=USER).status_code for i in range(3)]
        assert codes == [201, 201, 429]
        limited = client.post("/v1/habits", json={"name": "H"}, headers=USER)
        assert limited.json()["error"]["code"] == "rate_limited"
        # Reads and other users are not affected
        assert client.get("/v1/habits", headers=USER).status_code == 200
        assert client.post("/v1/habits", json={"name": "X"}, headers={"X-User-Id": "other"}).status_code == 201


def test_rate_limit_fails_open_without_cache(store, actions):
    app = create_app(make_settings(RATE_LIMIT_PER_MINUTE=1), store=store, cache=FailingCache(), actions=actions)
    with TestClient(app) as client:
        codes = [client.post("/v1/habits", json={"name": f"H{i}"}, headers=USER).status_code for i in range(3)]
    assert codes == [201, 201, 201]


def test_health_checks(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["checks"]["store"] == {"backend": "memory", "ok": True}


def test_readiness_fails_when_cache_is_down(test_settings, store, actions):
    app = create_app(test_settings, store=store, cache=FailingCache(), actions=actions)
    with TestClient(app) as client:
        ready = client.get("/readyz")
    assert ready.status_code == 503
    assert ready.json()["checks"]["cache"]["ok"] is False


def test_request_id_is_echoed(client):
    response = client.get("/v1/rewards/rank", headers={**USER, "x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"
    assert response.json()["request_id"] == "req-123"


def test_unsafe_request_id_is_replaced_and_access_log_names_user(client, caplog):
    with caplog.at_level(logging.INFO, logger="habitchain"):
        response = client.get("/v1/rewards/rank", headers={**USER, "x-request-id": "not a safe id"})
    rid = response.headers["x-request-id"]
    assert rid != "not a safe id"

    done = [r for r in caplog.records if r.getMessage() == "request.complete"]
    assert done[-1].request_id == rid
    assert done[-1].user_id == "user-1"
    assert done[-1].status == "200"


def test_health_checks_stay_out_of_the_access_log(client, caplog):
    with caplog.at_level(logging.INFO, logger="habitchain"):
        assert client.get("/healthz").status_code == 200
    assert not [r for r in caplog.records if r.getMessage() == "request.complete"]


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/v1/nothing-here", headers=USER)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"
