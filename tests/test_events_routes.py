import json

from starlette.testclient import TestClient

from lugx_analytics.main import create_app
from lugx_analytics.models import EventKind
from lugx_analytics.settings import MAX_INGEST_BYTES, PipelineSettings
from tests.conftest import RecordingDeadLetter, raw_event, settle
from tests.test_pipeline import StuckStore

INGEST_PATH = "/events"


def test_accepts_valid_events(api_client, store):
    resp = api_client.post(INGEST_PATH, json={"events": [raw_event(), raw_event("search"), raw_event("performance", session_id=None)]})

    assert resp.status_code == 202
    assert resp.json() == {"accepted": 3, "rejected": [], "dead_lettered": 0}

    settle(api_client)
    assert store.count(EventKind.page_view) == 1
    assert store.count(EventKind.search) == 1
    assert store.count(EventKind.performance) == 1


def test_unknown_kind_is_rejected_by_index(api_client):
    resp = api_client.post(INGEST_PATH, json={"events": [raw_event(), raw_event("bogus")]})

    assert resp.status_code == 202
    body = resp.json()
    assert body["accepted"] == 1
    assert body["rejected"] == [{"index": 1, "reason": "UnknownKind"}]


def test_empty_batch_is_ok(api_client):
    resp = api_client.post(INGEST_PATH, json={"events": []})
    assert resp.status_code == 200
    assert resp.json()["accepted"] == 0


def test_malformed_body_is_400(api_client):
    resp = api_client.post(INGEST_PATH, content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "malformed_request"

    resp = api_client.post(INGEST_PATH, json={"event": []})
    assert resp.status_code == 400


def test_large_payload_is_413(api_client):
    payload = {"events": [raw_event(payload={"page_url": "a" * (MAX_INGEST_BYTES + 1)})]}
    resp = api_client.post(INGEST_PATH, content=json.dumps(payload), headers={"Content-Type": "application/json"})
    assert resp.status_code == 413


def test_chunked_payload_over_limit_is_413(api_client, store):
    def body():
        yield b'{"events": ['
        yield json.dumps(raw_event()).encode()
        # no Content-Length is sent for a generator body
        yield b" " * (MAX_INGEST_BYTES + 1)
        yield b"]}"

    resp = api_client.post(INGEST_PATH, content=body(), headers={"Content-Type": "application/json"})

    assert resp.status_code == 413
    settle(api_client)
    assert store.count(EventKind.page_view) == 0


def test_legacy_prefix_is_served(api_client):
    resp = api_client.post("/api/analytics/events", json={"events": [raw_event()]})
    assert resp.status_code == 202


def test_busy_buffers_answer_429():
    store = StuckStore()
    settings = PipelineSettings(max_batch_size=2, max_pending=4, shutdown_grace=0.1)
    app = create_app(store=store, dead_letter=RecordingDeadLetter(), settings=settings, background=False)

    with TestClient(app) as client:
        first = client.post(INGEST_PATH, json={"events": [raw_event(event_id=f"e{i}") for i in range(6)]})
        assert first.status_code == 202
        assert first.json()["accepted"] == 4

        second = client.post(INGEST_PATH, json={"events": [raw_event(event_id="late")]})
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) >= 1
        assert second.json()["rejected"] == [{"index": 0, "reason": "Busy"}]


# ---------------------------------------------------------------------------
# Dashboard / health
# ---------------------------------------------------------------------------

def test_dashboard_counts_ingested_events(api_client):
    api_client.post(INGEST_PATH, json={"events": [raw_event(event_id=f"pv-{i}") for i in range(3)]})
    settle(api_client)

    resp = api_client.get("/dashboard", params={"range": "PT1H", "kind": "page_view"})

    assert resp.status_code == 200
    body = resp.json()
    assert list(body["kinds"]) == ["page_view"]
    assert body["kinds"]["page_view"]["count"] == 3


def test_dashboard_defaults_to_all_kinds(api_client):
    resp = api_client.get("/dashboard")
    assert resp.status_code == 200
    assert set(resp.json()["kinds"]) == {k.value for k in EventKind}


def test_dashboard_rejects_bad_input(api_client):
    resp = api_client.get("/dashboard", params={"range": "last tuesday"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "invalid_range"

    resp = api_client.get("/dashboard", params={"kind": "bogus"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "unknown_kind"

    resp = api_client.get("/dashboard", params={"range": "P400D"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "range_too_large"


def test_game_and_funnel_reports(api_client):
    events = [
        raw_event("interaction", event_id="i1", payload={"target_id": "game-7", "action": "view"}),
        raw_event("interaction", event_id="i2", payload={"target_id": "game-7", "action": "purchase", "amount": 30}),
        raw_event("game_interaction", event_id="i3", payload={"game_id": "game-2", "interaction_type": "view"}),
    ]
    api_client.post(INGEST_PATH, json={"events": events})
    settle(api_client)

    games = api_client.get("/api/analytics/games", params={"range": "PT1H"}).json()
    assert games["total_games"] == 2
    assert games["games"][0]["target_id"] == "game-7"
    assert games["games"][0]["conversion_rate"] == 100.0

    funnel = api_client.get("/conversion", params={"range": "PT1H"}).json()
    assert [s["step_count"] for s in funnel["steps"]] == [2, 0, 0, 1]
    assert funnel["total_revenue"] == 30.0


def test_user_report(api_client):
    api_client.post(INGEST_PATH, json={"events": [raw_event(event_id="p1", user_id="u1"), raw_event(event_id="p2", session_id="sess-2")]})
    settle(api_client)

    body = api_client.get("/users", params={"range": "PT1H"}).json()
    assert body["overall"]["sessions"] == 2
    assert body["overall"]["bounce_rate"] == 100.0


def test_reports_reject_bad_input(api_client):
    assert api_client.get("/games", params={"limit": 0}).status_code == 400
    resp = api_client.get("/users", params={"range": "P400D"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "range_too_large"


def test_health(api_client):
    resp = api_client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["sink"]["backend"] == "memory"
    assert set(body["buffers"]) == {k.value for k in EventKind}


def test_root_liveness(api_client):
    assert api_client.get("/").json() == {"status": "ok"}


def test_openapi_yaml_outside_production(api_client):
    resp = api_client.get("/openapi.yaml")
    assert resp.status_code == 200
    assert "/events" in resp.text


def test_out_of_range_values_are_rejected_per_record(api_client, store):
    huge = raw_event(
        "performance",
        session_id=None,
        payload={"service_name": "orders", "metric_type": "latency_ms", "metric_value": 10 ** 400},
    )
    events = [
        raw_event(event_id="ok"),
        raw_event(event_id="too-early", occurred_at="0001-01-01T00:00:00+05:00"),
        raw_event(event_id="too-late", occurred_at="9999-12-31T23:00:00-05:00"),
        huge,
    ]
    resp = api_client.post(INGEST_PATH, json={"events": events})

    assert resp.status_code == 202
    assert resp.json()["rejected"] == [
        {"index": 1, "reason": "BadTimestamp"},
        {"index": 2, "reason": "BadTimestamp"},
        {"index": 3, "reason": "MissingField"},
    ]
    settle(api_client)
    assert store.count(EventKind.page_view) == 1
