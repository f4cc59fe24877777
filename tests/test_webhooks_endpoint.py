import json

import pytest
from fastapi import BackgroundTasks
from fastapi.testclient import TestClient

from fakes import FakeSupabase
from src import storage
from src.config import settings
from src.integrations import outbound
from src.integrations.outbound import DeliveryResult
from src.integrations.signatures import compute_signature, compute_webhook_token
from src.main import app
from src.observability import metrics_snapshot


def _incoming(provider="gohighlevel", user_id="user-1", **overrides):
    row = {
        "id": f"wh-{provider}",
        "user_id": user_id,
        "name": f"{provider} inbound",
        "type": "INCOMING",
        "provider": provider,
        "endpoint_token": compute_webhook_token(user_id, provider),
        "secret_key": None,
        "event_handling": [],
        "is_active": True,
    }
    row.update(overrides)
    return row


def _setup(monkeypatch, webhooks=None):
    fake_db = FakeSupabase(
        {
            "webhooks": webhooks if webhooks is not None else [_incoming()],
            "contacts": [],
            "error_logs": [],
        }
    )
    monkeypatch.setattr(storage, "supabase", fake_db)
    return fake_db, TestClient(app)


CONTACT_EVENT = {"event": "contact.created", "data": {"id": "ghl-1", "name": "Ada Lovelace"}}


def test_incoming_webhook_with_bad_token_is_rejected_without_mutation(monkeypatch):
    fake_db, client = _setup(monkeypatch)

    response = client.post("/api/webhooks/incoming/gohighlevel/badtoken", json=CONTACT_EVENT)

    assert response.status_code == 401
    assert fake_db.rows("contacts") == []
    assert fake_db.writes == []
    assert metrics_snapshot()["webhook.events.rejected|provider_slug=gohighlevel,reason=invalid_token"] == 1


def test_incoming_webhook_token_must_match_row_owner(monkeypatch):
    forged = compute_webhook_token("user-2", "gohighlevel")
    fake_db, client = _setup(monkeypatch, [_incoming(endpoint_token=forged)])

    response = client.post(f"/api/webhooks/incoming/gohighlevel/{forged}", json=CONTACT_EVENT)

    assert response.status_code == 401
    assert fake_db.rows("contacts") == []


def test_incoming_webhook_for_inactive_row_is_rejected(monkeypatch):
    row = _incoming(is_active=False)
    fake_db, client = _setup(monkeypatch, [row])

    response = client.post(f"/api/webhooks/incoming/gohighlevel/{row['endpoint_token']}", json=CONTACT_EVENT)

    assert response.status_code == 401


def test_incoming_webhook_processes_contact_event(monkeypatch):
    fake_db, client = _setup(monkeypatch)
    token = compute_webhook_token("user-1", "gohighlevel")

    response = client.post(f"/api/webhooks/incoming/gohighlevel/{token}", json=CONTACT_EVENT)

    assert response.status_code == 200
    assert response.json() == {"success": True}
    contacts = fake_db.rows("contacts")
    assert len(contacts) == 1
    assert contacts[0]["ghl_id"] == "ghl-1"


def test_incoming_webhook_acknowledges_malformed_payload(monkeypatch):
    fake_db, client = _setup(monkeypatch)
    token = compute_webhook_token("user-1", "gohighlevel")

    response = client.post(
        f"/api/webhooks/incoming/gohighlevel/{token}",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert len(fake_db.rows("error_logs")) == 1
    assert fake_db.rows("contacts") == []


def test_incoming_webhook_row_secret_requires_signature(monkeypatch):
    row = _incoming(secret_key="row-secret")
    fake_db, client = _setup(monkeypatch, [row])
    body = json.dumps(CONTACT_EVENT).encode()
    path = f"/api/webhooks/incoming/gohighlevel/{row['endpoint_token']}"

    unsigned = client.post(path, content=body, headers={"Content-Type": "application/json"})
    assert unsigned.status_code == 401
    assert fake_db.rows("contacts") == []

    signed = client.post(
        path,
        content=body,
        headers={
            "Content-Type": "application/json",
            "x-gohighlevel-signature": compute_signature(body, "row-secret"),
        },
    )
    assert signed.status_code == 200
    assert len(fake_db.rows("contacts")) == 1


def test_incoming_webhook_event_handling_filter(monkeypatch):
    row = _incoming(event_handling=["contact.deleted"])
    fake_db, client = _setup(monkeypatch, [row])

    response = client.post(f"/api/webhooks/incoming/gohighlevel/{row['endpoint_token']}", json=CONTACT_EVENT)

    assert response.status_code == 200
    assert fake_db.rows("contacts") == []
    assert fake_db.rows("error_logs") == []


def test_incoming_webhook_reserved_provider_is_noop(monkeypatch):
    row = _incoming(provider="openai")
    fake_db, client = _setup(monkeypatch, [row])

    response = client.post(f"/api/webhooks/incoming/openai/{row['endpoint_token']}", json=CONTACT_EVENT)

    assert response.status_code == 200
    assert fake_db.writes == []


def test_incoming_webhook_unknown_provider_is_logged(monkeypatch):
    row = _incoming(provider="zapier")
    fake_db, client = _setup(monkeypatch, [row])

    response = client.post(f"/api/webhooks/incoming/zapier/{row['endpoint_token']}", json=CONTACT_EVENT)

    assert response.status_code == 200
    errors = fake_db.rows("error_logs")
    assert len(errors) == 1
    assert errors[0]["message"] == "Unsupported provider: zapier"
    assert fake_db.rows("contacts") == []


def test_incoming_webhook_fires_outgoing_triggers(monkeypatch):
    outgoing = {
        "id": "wh-out",
        "user_id": "user-1",
        "name": "Mirror",
        "type": "OUTGOING",
        "provider": "custom",
        "trigger_event": "contact.created",
        "target_url": "https://hooks.example.com/in",
        "http_method": "POST",
        "is_active": True,
    }
    fake_db, client = _setup(monkeypatch, [_incoming(), outgoing])
    delivered = []

    def _deliver(webhook, event, data, timeout_seconds=None):
        delivered.append((webhook["id"], event, data["ghl_id"]))
        return DeliveryResult(webhook_id=webhook["id"], ok=True, status_code=200)

    monkeypatch.setattr(outbound, "deliver", _deliver)
    token = compute_webhook_token("user-1", "gohighlevel")

    response = client.post(f"/api/webhooks/incoming/gohighlevel/{token}", json=CONTACT_EVENT)

    assert response.status_code == 200
    assert delivered == [("wh-out", "contact.created", "ghl-1")]


def test_incoming_webhook_schedules_outbound_after_response(monkeypatch):
    fake_db, client = _setup(monkeypatch)
    scheduled = []

    def _add_task(self, func, *args, **kwargs):
        scheduled.append((func, args, kwargs))

    monkeypatch.setattr(BackgroundTasks, "add_task", _add_task)
    monkeypatch.setattr(outbound, "deliver", lambda *args, **kwargs: pytest.fail("delivered inline"))
    token = compute_webhook_token("user-1", "gohighlevel")

    response = client.post(f"/api/webhooks/incoming/gohighlevel/{token}", json=CONTACT_EVENT)

    assert response.status_code == 200
    assert fake_db.rows("contacts")[0]["ghl_id"] == "ghl-1"
    assert len(scheduled) == 1
    func, args, kwargs = scheduled[0]
    assert func is outbound.fire_trigger
    assert args[:2] == ("user-1", "contact.created")
    assert args[2]["event"] == "contact.created"
    assert args[2]["ghl_id"] == "ghl-1"


def test_incoming_webhook_schedules_nothing_for_unapplied_events(monkeypatch):
    fake_db, client = _setup(monkeypatch)
    scheduled = []
    monkeypatch.setattr(BackgroundTasks, "add_task", lambda self, func, *args, **kwargs: scheduled.append(func))
    token = compute_webhook_token("user-1", "gohighlevel")

    deleted = client.post(
        f"/api/webhooks/incoming/gohighlevel/{token}",
        json={"event": "contact.deleted", "data": {"id": "ghl-missing"}},
    )
    unknown = client.post(f"/api/webhooks/incoming/gohighlevel/{token}", json={"event": "contact.merged", "data": {}})

    assert deleted.status_code == 200
    assert unknown.status_code == 200
    assert scheduled == []


@pytest.fixture
def ghl_secret(monkeypatch):
    monkeypatch.setattr(settings, "ghl_webhook_secret", "provider-secret")
    return "provider-secret"


def test_signed_webhook_rejects_bad_signature(monkeypatch, ghl_secret):
    fake_db, client = _setup(monkeypatch)
    body = json.dumps(CONTACT_EVENT).encode()

    missing = client.post("/api/webhooks/ghl", content=body, headers={"Content-Type": "application/json"})
    wrong = client.post(
        "/api/webhooks/ghl",
        content=body,
        headers={"Content-Type": "application/json", "x-ghl-signature": compute_signature(body, "other")},
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert fake_db.writes == []


def test_signed_webhook_accepts_valid_signature(monkeypatch, ghl_secret):
    fake_db, client = _setup(monkeypatch)
    body = json.dumps(CONTACT_EVENT).encode()

    response = client.post(
        "/api/webhooks/ghl",
        content=body,
        headers={"Content-Type": "application/json", "x-ghl-signature": compute_signature(body, ghl_secret)},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert len(fake_db.rows("contacts")) == 1
    assert metrics_snapshot()["webhook.events.processed|provider_slug=ghl"] == 1


def test_signed_webhook_acknowledges_handler_failure(monkeypatch, ghl_secret):
    fake_db, client = _setup(monkeypatch)
    body = json.dumps({"event": "email.unsubscribed", "data": {"messageId": "m1"}}).encode()

    response = client.post(
        "/api/webhooks/ghl",
        content=body,
        headers={"Content-Type": "application/json", "x-ghl-signature": compute_signature(body, ghl_secret)},
    )

    assert response.status_code == 200
    assert len(fake_db.rows("error_logs")) == 1


def test_signed_webhook_unsigned_mode(monkeypatch):
    monkeypatch.setattr(settings, "ghl_webhook_secret", None)
    fake_db, client = _setup(monkeypatch)

    response = client.post("/api/webhooks/ghl", json=CONTACT_EVENT)

    assert response.status_code == 200
    assert len(fake_db.rows("contacts")) == 1


def test_signed_webhook_unknown_provider(monkeypatch):
    _, client = _setup(monkeypatch)

    response = client.post("/api/webhooks/hubspot", json=CONTACT_EVENT)

    assert response.status_code == 404
