import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from identity_sync.api.main import app
from identity_sync.config import get_settings
from identity_sync.security.hmac import sign_payload
from identity_sync.utils.clock import utcnow


@pytest.fixture
def client(engine, recording):
    return TestClient(app)


def event_body(**overrides):
    body = {
        "workspace_id": "ws1",
        "event": "add_to_cart",
        "properties": {"product_id": "p1", "email": "dee@shop.io"},
        "context": {"anonymous_id": "anon-d"},
        "timestamp": (utcnow() - timedelta(hours=2)).isoformat() + "Z",
    }
    body.update(overrides)
    return body


def _destination(client, **overrides):
    body = {"workspace_id": "ws1", "name": "crm", "type": "recording"}
    body.update(overrides)
    resp = client.post("/destinations", json=body)
    assert resp.status_code == 201
    return resp.json()["id"]


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"db": True, "status": "ok"}
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert b"fingerprint_events_admitted" in resp.content


def test_ingest_accepts_then_reports_duplicate(client):
    body = event_body()
    first = client.post("/events", json=body)
    assert first.status_code == 202
    assert first.json()["accepted"] is True
    assert first.headers["X-Correlation-ID"]

    again = client.post("/events", json=body)
    assert again.status_code == 200
    assert again.json()["duplicate"] is True
    assert again.json()["event_id"] == first.json()["event_id"]


def test_idempotency_header(client):
    a = client.post("/events", json=event_body(properties={"q": 1}), headers={"X-Idempotency-Key": "req-1"})
    b = client.post("/events", json=event_body(properties={"q": 2}), headers={"X-Idempotency-Key": "req-1"})
    assert a.status_code == 202 and b.status_code == 200


def test_invalid_events(client):
    resp = client.post("/events", json={"workspace_id": "ws1"})
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_event"

    resp = client.post("/events", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 422
    assert resp.json()["detail"] == "invalid_json"


def test_signed_ingest(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "ingest_secret", "shh")
    raw = json.dumps(event_body()).encode()

    assert client.post("/events", content=raw).status_code == 401
    assert client.post("/events", content=raw, headers={"X-Signature": "garbage"}).status_code == 400
    bad = sign_payload(raw, "wrong")
    assert client.post("/events", content=raw, headers={"X-Signature": bad}).status_code == 401
    ok = client.post("/events", content=raw, headers={"X-Signature": sign_payload(raw, "shh")})
    assert ok.status_code == 202


def test_bulk(client):
    body = event_body()
    resp = client.post("/events/bulk", json=[body, body, {"workspace_id": "ws1"}])
    assert resp.status_code == 200
    data = resp.json()
    assert (data["accepted"], data["duplicates"], data["rejected"]) == (1, 1, 1)

    assert client.post("/events/bulk", json={"not": "a list"}).status_code == 422


def test_profile_lifecycle(client):
    _destination(client)
    assert client.post("/events", json=event_body()).status_code == 202
    ident = client.post("/identify", json={"workspace_id": "ws1", "anonymous_id": "anon-d", "traits": {"plan": "pro"}})
    assert ident.status_code == 202

    stats = client.get("/workspaces/ws1/stats").json()
    assert stats["users"]["live"] == 1
    user_id = 1

    profile = client.get(f"/profiles/{user_id}", params={"workspace_id": "ws1"}).json()
    assert profile["email"] == "dee@shop.io"
    assert profile["traits"] == {"plan": "pro"}
    assert profile["computed"]["drop_off_stage"] == "cart"

    resp = client.patch(f"/profiles/{user_id}/traits", params={"workspace_id": "ws1"}, json={"traits": {"plan": None, "vip": True}})
    assert resp.json()["traits"] == {"vip": True}

    assert client.get(f"/profiles/{user_id}", params={"workspace_id": "other"}).status_code == 409
    assert client.get("/profiles/999", params={"workspace_id": "ws1"}).status_code == 404

    deleted = client.delete(f"/profiles/{user_id}", params={"workspace_id": "ws1"}).json()
    assert deleted["events_unlinked"] == 2
    assert client.get(f"/profiles/{user_id}", params={"workspace_id": "ws1"}).status_code == 404


def test_destinations_and_ops(client, recording):
    dest_id = _destination(client)
    assert client.post("/destinations", json={"workspace_id": "ws1", "name": "x", "type": "fax"}).status_code == 422

    assert client.post("/events", json=event_body()).status_code == 202
    # paused destinations keep their queued jobs
    assert client.post(f"/destinations/{dest_id}/disable", params={"workspace_id": "ws1"}).json()["enabled"] is False
    assert client.post("/ops/drain", params={"workspace_id": "ws1"}).json()["processed"] == 0

    assert client.post(f"/destinations/{dest_id}/enable", params={"workspace_id": "ws1"}).json()["enabled"] is True
    drained = client.post("/ops/drain", params={"workspace_id": "ws1"}).json()
    assert drained["processed"] == 2
    assert len(recording.calls) == 2

    stats = client.get("/workspaces/ws1/stats").json()
    assert stats["jobs"]["by_outcome"] == {"success": 2}
    assert stats["destinations"][0]["last_sync_at"] is not None
    assert stats["segments"] == {"atc_no_checkout_24h": 1}

    assert client.post("/ops/retry-failed", json={"workspace_id": "ws1"}).json() == {"requeued": 0}
    assert client.post("/ops/recompute", params={"workspace_id": "ws1"}).json() == {"recomputed": 1, "failed": 0}
    assert client.post("/destinations/404/enable", params={"workspace_id": "ws1"}).status_code == 404


def test_segment_definitions(client):
    good = {"expression": {"field": "lifetime_value", "op": "gte", "value": 100}, "workspace_id": "ws1", "name": "Spenders"}
    resp = client.put("/segments/spenders", json=good)
    assert resp.status_code == 200
    assert resp.json()["key"] == "spenders"

    bad = {"expression": {"field": "shoe_size", "op": "eq", "value": 9}}
    assert client.put("/segments/bad", json=bad).status_code == 422
