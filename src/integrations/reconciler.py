from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src import storage
from src.config import settings
from src.domain.errors import MalformedPayload
from src.domain.normalization import (
    derive_engagement_tags,
    normalize_email_event_status,
    normalize_status_policy,
    should_apply_status,
)
from src.observability import incr_metric, log_event


CONTACT_SOURCE = "provider_webhook"
ENGAGEMENT_STATUSES = {"OPENED", "CLICKED"}


@dataclass
class ReconcileResult:
    event: str
    handler: str | None
    outcome: str
    detail: dict[str, Any] = field(default_factory=dict)


def _extract_contact_id(data: dict[str, Any]) -> str | None:
    for key in ("id", "contact_id", "contactId"):
        if data.get(key):
            return str(data[key])
    return None


def _extract_message_id(data: dict[str, Any]) -> str | None:
    for key in ("messageId", "message_id"):
        if data.get(key):
            return str(data[key])
    return None


def _parse_joined_date(value: Any) -> str | None:
    if not value:
        return None
    try:
        if isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000 if value > 1e11 else value, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except (TypeError, ValueError, OSError):
        log_event("contact_joined_date_unparseable", level=logging.WARNING, value=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.isoformat()


def _normalize_custom_fields(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    # Provider sends [{"id": ..., "value": ...}] for location custom fields.
    if isinstance(raw, list):
        fields: dict[str, Any] = {}
        for item in raw:
            if isinstance(item, dict) and item.get("id") is not None:
                fields[str(item["id"])] = item.get("value", item.get("field_value"))
        return fields
    return {}


def build_contact_projection(data: dict[str, Any]) -> dict[str, Any]:
    ghl_id = _extract_contact_id(data)
    if not ghl_id:
        raise MalformedPayload("Missing contact ID in webhook payload")

    name = data.get("name") or f"{data.get('firstName') or ''} {data.get('lastName') or ''}".strip()
    projection: dict[str, Any] = {
        "ghl_id": ghl_id,
        "name": name,
        "custom_fields": _normalize_custom_fields(data.get("customFields")),
        "contact_source": CONTACT_SOURCE,
    }
    if data.get("email"):
        projection["email"] = str(data["email"]).strip()
    joined_date = _parse_joined_date(data.get("createdAt"))
    if joined_date:
        projection["joined_date"] = joined_date
    return projection


def upsert_contact(event: str, data: dict[str, Any]) -> ReconcileResult:
    projection = build_contact_projection(data)
    contact = storage.upsert_contact_by_ghl_id(projection)
    incr_metric("reconcile.contact.upserted")
    log_event("contact_upserted", webhook_event=event, ghl_id=projection["ghl_id"])
    return ReconcileResult(
        event=event,
        handler="contact_upsert",
        outcome="upserted",
        detail={**projection, "contact_id": (contact or {}).get("id")},
    )


def delete_contact(event: str, data: dict[str, Any]) -> ReconcileResult:
    ghl_id = _extract_contact_id(data)
    if not ghl_id:
        raise MalformedPayload("Missing contact ID in webhook payload")

    contact = storage.get_contact_by_ghl_id(ghl_id)
    if not contact:
        log_event("contact_delete_already_satisfied", webhook_event=event, ghl_id=ghl_id)
        return ReconcileResult(event=event, handler="contact_delete", outcome="not_found", detail={"ghl_id": ghl_id})

    storage.delete_contact(contact["id"])
    incr_metric("reconcile.contact.deleted")
    log_event("contact_deleted", webhook_event=event, ghl_id=ghl_id, contact_id=contact["id"])
    return ReconcileResult(
        event=event,
        handler="contact_delete",
        outcome="deleted",
        detail={"ghl_id": ghl_id, "contact_id": contact["id"]},
    )


def _apply_delivery_status(message_id: str, status: str) -> tuple[dict[str, Any] | None, bool]:
    policy = normalize_status_policy(settings.email_status_policy)
    if policy == "overwrite":
        return storage.update_email_delivery_by_message_id(message_id, {"status": status}), True

    current = storage.get_email_delivery_by_message_id(message_id)
    if not current:
        return None, False
    if not should_apply_status(current.get("status"), status, policy):
        incr_metric("reconcile.email.regression_ignored", status=status)
        log_event(
            "email_status_regression_ignored",
            message_id=message_id,
            current_status=current.get("status"),
            incoming_status=status,
        )
        return current, False
    return storage.update_email_delivery_by_message_id(message_id, {"status": status}), True


def _tag_engaged_contact(delivery: dict[str, Any], status: str) -> list[str]:
    email = storage.get_email(delivery["email_id"]) if delivery.get("email_id") else None
    if not email:
        return []
    contact = storage.get_contact(delivery["contact_id"]) if delivery.get("contact_id") else None
    if not contact:
        return []
    tags = derive_engagement_tags(status, email.get("type"))
    for tag in tags:
        storage.add_tag_to_contact(contact["id"], tag)
    return tags


def apply_email_event(event: str, data: dict[str, Any]) -> ReconcileResult:
    status = normalize_email_event_status(event)
    message_id = _extract_message_id(data)
    if not message_id:
        raise MalformedPayload("Missing message ID in webhook payload")

    delivery, applied = _apply_delivery_status(message_id, status)
    if not delivery:
        log_event("email_delivery_not_found", webhook_event=event, message_id=message_id)
        return ReconcileResult(event=event, handler="email_event", outcome="not_found", detail={"message_id": message_id})

    tags: list[str] = []
    if status in ENGAGEMENT_STATUSES:
        tags = _tag_engaged_contact(delivery, status)

    incr_metric("reconcile.email.status", status=status, applied=applied)
    log_event(
        "email_delivery_status_processed",
        webhook_event=event,
        message_id=message_id,
        status=status,
        applied=applied,
        tags=tags,
    )
    return ReconcileResult(
        event=event,
        handler="email_event",
        outcome="updated" if applied else "skipped",
        detail={
            "message_id": message_id,
            "status": status,
            "delivery_id": delivery.get("id"),
            "email_id": delivery.get("email_id"),
            "contact_id": delivery.get("contact_id"),
            "tags": tags,
        },
    )
