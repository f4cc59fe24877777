import pytest

from fakes import FakeSupabase
from src import storage
from src.domain.errors import MalformedPayload
from src.integrations import dispatcher, outbound, reconciler
from src.observability import metrics_snapshot


def _fake_db():
    return FakeSupabase(
        {
            "contacts": [{"id": "c7", "ghl_id": "ghl-7", "name": "Grace", "tags": []}],
            "emails": [
                {"id": "e1", "type": "priority", "subject": "Hello"},
                {"id": "e2", "type": "standard", "subject": "Newsletter"},
            ],
            "email_deliveries": [
                {"id": "d1", "email_id": "e1", "contact_id": "c7", "ghl_message_id": "m1", "status": "SENT"},
                {"id": "d2", "email_id": "e2", "contact_id": "c7", "ghl_message_id": "m2", "status": "CLICKED"},
            ],
            "webhooks": [],
            "error_logs": [],
        }
    )


@pytest.fixture
def fake_db(monkeypatch):
    db = _fake_db()
    monkeypatch.setattr(storage, "supabase", db)
    return db


def _contact_payload(**overrides):
    data = {
        "id": "ghl-1",
        "firstName": "Ada",
        "lastName": "Lovelace",
        "email": " ada@example.com ",
        "createdAt": "2024-03-01T10:00:00Z",
        "customFields": [{"id": "cf_1", "value": "gold"}, {"id": "cf_2", "value": 3}],
    }
    data.update(overrides)
    return {"event": "contact.updated", "data": data}


def test_contact_projection_shape():
    projection = reconciler.build_contact_projection(_contact_payload()["data"])

    assert projection == {
        "ghl_id": "ghl-1",
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "joined_date": "2024-03-01T10:00:00+00:00",
        "custom_fields": {"cf_1": "gold", "cf_2": 3},
        "contact_source": "provider_webhook",
    }


def test_contact_projection_prefers_full_name_and_skips_bad_dates():
    projection = reconciler.build_contact_projection(
        {"contactId": "ghl-2", "name": "Grace Hopper", "createdAt": "not-a-date", "customFields": {"a": 1}}
    )

    assert projection["ghl_id"] == "ghl-2"
    assert projection["name"] == "Grace Hopper"
    assert projection["custom_fields"] == {"a": 1}
    assert "joined_date" not in projection
    assert "email" not in projection


def test_contact_projection_requires_id():
    with pytest.raises(MalformedPayload):
        reconciler.build_contact_projection({"name": "Nobody"})


def test_contact_upsert_is_idempotent(fake_db):
    payload = _contact_payload()

    first = dispatcher.process_webhook_payload(payload, source="ghl")
    second = dispatcher.process_webhook_payload(payload, source="ghl")

    assert first["outcome"] == "upserted"
    assert second["outcome"] == "upserted"
    rows = [row for row in fake_db.rows("contacts") if row["ghl_id"] == "ghl-1"]
    assert len(rows) == 1
    assert rows[0]["name"] == "Ada Lovelace"
    assert rows[0]["contact_source"] == "provider_webhook"


def test_contact_update_keeps_existing_tags(fake_db):
    dispatcher.process_webhook_payload(
        {"event": "contact.updated", "data": {"id": "ghl-7", "name": "Grace H."}},
        source="ghl",
    )

    row = next(row for row in fake_db.rows("contacts") if row["ghl_id"] == "ghl-7")
    assert row["id"] == "c7"
    assert row["name"] == "Grace H."
    assert row["tags"] == []


def test_contact_delete_unknown_is_not_an_error(fake_db):
    result = dispatcher.process_webhook_payload(
        {"event": "contact.deleted", "data": {"id": "ghl-missing"}},
        source="ghl",
    )

    assert result["outcome"] == "not_found"
    assert fake_db.rows("error_logs") == []
    assert len(fake_db.rows("contacts")) == 1


def test_contact_delete_removes_row(fake_db):
    result = dispatcher.process_webhook_payload(
        {"event": "contact.deleted", "data": {"id": "ghl-7"}},
        source="ghl",
    )

    assert result["outcome"] == "deleted"
    assert fake_db.rows("contacts") == []


def test_email_opened_on_priority_email_tags_contact_once(fake_db):
    payload = {"event": "email.opened", "data": {"messageId": "m1"}}

    first = dispatcher.process_webhook_payload(payload, source="ghl")
    dispatcher.process_webhook_payload(payload, source="ghl")

    assert first["outcome"] == "updated"
    assert first["detail"]["tags"] == ["opened_email", "opened_priority_email"]
    delivery = next(row for row in fake_db.rows("email_deliveries") if row["ghl_message_id"] == "m1")
    assert delivery["status"] == "OPENED"
    contact = fake_db.rows("contacts")[0]
    assert sorted(contact["tags"]) == ["opened_email", "opened_priority_email"]


def test_email_event_for_unknown_message_is_not_found(fake_db):
    result = dispatcher.process_webhook_payload(
        {"event": "email.delivered", "data": {"message_id": "missing"}},
        source="ghl",
    )

    assert result["outcome"] == "not_found"


def test_overwrite_policy_allows_regression(fake_db, monkeypatch):
    monkeypatch.setattr(reconciler.settings, "email_status_policy", "overwrite")

    dispatcher.process_webhook_payload({"event": "email.delivered", "data": {"messageId": "m2"}}, source="ghl")

    delivery = next(row for row in fake_db.rows("email_deliveries") if row["ghl_message_id"] == "m2")
    assert delivery["status"] == "DELIVERED"


def test_monotonic_policy_ignores_regression(fake_db, monkeypatch):
    monkeypatch.setattr(reconciler.settings, "email_status_policy", "monotonic")

    result = dispatcher.process_webhook_payload(
        {"event": "email.delivered", "data": {"messageId": "m2"}},
        source="ghl",
    )

    assert result["outcome"] == "skipped"
    delivery = next(row for row in fake_db.rows("email_deliveries") if row["ghl_message_id"] == "m2")
    assert delivery["status"] == "CLICKED"
    assert metrics_snapshot()["reconcile.email.regression_ignored|status=DELIVERED"] == 1


def test_unsupported_email_suffix_is_logged_not_raised(fake_db):
    result = dispatcher.process_webhook_payload(
        {"event": "email.unsubscribed", "data": {"messageId": "m1"}},
        source="ghl",
    )

    assert result is None
    errors = fake_db.rows("error_logs")
    assert len(errors) == 1
    assert errors[0]["context"] == "ghl Webhook Handler"
    assert metrics_snapshot()["webhook.events.failed|provider_slug=ghl,reason=unsupported_event"] == 1
    delivery = next(row for row in fake_db.rows("email_deliveries") if row["ghl_message_id"] == "m1")
    assert delivery["status"] == "SENT"


def test_unrecognized_event_is_ignored(fake_db):
    result = dispatcher.process_webhook_payload({"event": "opportunity.created", "data": {}}, source="ghl")

    assert result["outcome"] == "ignored"
    assert result["handler"] is None
    assert fake_db.mutations() == []


@pytest.mark.parametrize(
    "payload",
    [None, [], "text", {"event": "contact.updated"}, {"data": {"id": "x"}}, {"event": 5, "data": {}}],
)
def test_malformed_payload_is_logged(fake_db, payload):
    assert dispatcher.process_webhook_payload(payload, source="ghl") is None
    assert len(fake_db.rows("error_logs")) == 1
    assert fake_db.mutations() == []


def test_allowed_events_filter(fake_db):
    result = dispatcher.process_webhook_payload(
        {"event": "contact.deleted", "data": {"id": "ghl-7"}},
        source="gohighlevel",
        allowed_events=["contact.created", "contact.updated"],
    )

    assert result is None
    assert len(fake_db.rows("contacts")) == 1


def test_handler_resolution():
    assert dispatcher.resolve_handler("contact.created") is reconciler.upsert_contact
    assert dispatcher.resolve_handler("contact.updated") is reconciler.upsert_contact
    assert dispatcher.resolve_handler("contact.deleted") is reconciler.delete_contact
    assert dispatcher.resolve_handler("email.anything") is reconciler.apply_email_event
    assert dispatcher.resolve_handler("contact.merged") is None


def test_outbound_trigger_for_applied_events(fake_db):
    applied = dispatcher.process_webhook_payload(_contact_payload(), source="gohighlevel")
    missing = dispatcher.process_webhook_payload(
        {"event": "contact.deleted", "data": {"id": "ghl-missing"}},
        source="gohighlevel",
    )
    ignored = dispatcher.process_webhook_payload({"event": "contact.merged", "data": {}}, source="gohighlevel")

    event, data = dispatcher.outbound_trigger(applied)
    assert event == "contact.updated"
    assert data["event"] == "contact.updated"
    assert data["ghl_id"] == "ghl-1"
    assert dispatcher.outbound_trigger(missing) is None
    assert dispatcher.outbound_trigger(ignored) is None
    assert dispatcher.outbound_trigger(None) is None


def test_processing_never_delivers_outbound(fake_db, monkeypatch):
    fired = []
    monkeypatch.setattr(outbound, "fire_trigger", lambda *args, **kwargs: fired.append(args) or [])
    monkeypatch.setattr(outbound, "deliver", lambda *args, **kwargs: fired.append(args))
    fake_db.tables["webhooks"].append(
        {
            "id": "wh-out",
            "user_id": "user-1",
            "type": "OUTGOING",
            "trigger_event": "contact.updated",
            "target_url": "https://hooks.example.com/in",
            "http_method": "POST",
            "headers": {},
            "selected_fields": [],
            "payload_template": None,
            "is_active": True,
        }
    )

    dispatcher.process_webhook_payload(_contact_payload(), source="gohighlevel")

    assert fired == []
