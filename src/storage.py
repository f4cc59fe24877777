"""Row-level access to the CRM tables used by the integration subsystem."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.db import supabase
from src.observability import log_event


_CONNECTION_COLUMNS = (
    "id, user_id, provider, access_token, refresh_token, token_expires_at, is_active, config, created_at, updated_at"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(result: Any) -> dict[str, Any] | None:
    if not result.data:
        return None
    return result.data[0]


# Integration connections


def get_integration_connection(user_id: str, provider: str) -> dict[str, Any] | None:
    result = (
        supabase.table("integration_connections")
        .select(_CONNECTION_COLUMNS)
        .eq("user_id", user_id)
        .eq("provider", provider)
        .limit(1)
        .execute()
    )
    return _first(result)


def create_integration_connection(data: dict[str, Any]) -> dict[str, Any]:
    now_iso = _now_iso()
    row = {**data, "created_at": now_iso, "updated_at": now_iso}
    result = supabase.table("integration_connections").insert(row).execute()
    return result.data[0]


def update_integration_connection(connection_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
    result = (
        supabase.table("integration_connections")
        .update({**patch, "updated_at": _now_iso()})
        .eq("id", connection_id)
        .execute()
    )
    return _first(result)


# Contacts


def get_contact(contact_id: str) -> dict[str, Any] | None:
    result = supabase.table("contacts").select("*").eq("id", contact_id).limit(1).execute()
    return _first(result)


def get_contact_by_ghl_id(ghl_id: str) -> dict[str, Any] | None:
    result = supabase.table("contacts").select("*").eq("ghl_id", ghl_id).limit(1).execute()
    return _first(result)


def upsert_contact_by_ghl_id(data: dict[str, Any]) -> dict[str, Any] | None:
    # ON CONFLICT (ghl_id) DO UPDATE: concurrent duplicate deliveries land on one row.
    result = (
        supabase.table("contacts")
        .upsert({**data, "updated_at": _now_iso()}, on_conflict="ghl_id")
        .execute()
    )
    return _first(result)


def delete_contact(contact_id: str) -> bool:
    result = supabase.table("contacts").delete().eq("id", contact_id).execute()
    return bool(result.data)


def add_tag_to_contact(contact_id: str, tag: str) -> None:
    # add_contact_tag appends only when the tag is absent, in a single UPDATE.
    supabase.rpc("add_contact_tag", {"p_contact_id": contact_id, "p_tag": tag}).execute()


# Emails and deliveries


def get_email(email_id: str) -> dict[str, Any] | None:
    result = supabase.table("emails").select("id, type, subject").eq("id", email_id).limit(1).execute()
    return _first(result)


def get_email_delivery_by_message_id(message_id: str) -> dict[str, Any] | None:
    result = (
        supabase.table("email_deliveries")
        .select("id, email_id, contact_id, ghl_message_id, status")
        .eq("ghl_message_id", message_id)
        .limit(1)
        .execute()
    )
    return _first(result)


def update_email_delivery_by_message_id(message_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
    result = (
        supabase.table("email_deliveries")
        .update({**patch, "updated_at": _now_iso()})
        .eq("ghl_message_id", message_id)
        .execute()
    )
    return _first(result)


# Webhook configuration


def create_webhook(data: dict[str, Any]) -> dict[str, Any]:
    now_iso = _now_iso()
    result = supabase.table("webhooks").insert({**data, "created_at": now_iso, "updated_at": now_iso}).execute()
    return result.data[0]


def list_webhooks(user_id: str) -> list[dict[str, Any]]:
    result = supabase.table("webhooks").select("*").eq("user_id", user_id).execute()
    return list(result.data or [])


def get_webhook(webhook_id: str, user_id: str) -> dict[str, Any] | None:
    result = (
        supabase.table("webhooks")
        .select("*")
        .eq("id", webhook_id)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return _first(result)


def update_webhook(webhook_id: str, user_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
    result = (
        supabase.table("webhooks")
        .update({**patch, "updated_at": _now_iso()})
        .eq("id", webhook_id)
        .eq("user_id", user_id)
        .execute()
    )
    return _first(result)


def delete_webhook(webhook_id: str, user_id: str) -> bool:
    result = supabase.table("webhooks").delete().eq("id", webhook_id).eq("user_id", user_id).execute()
    return bool(result.data)


def get_incoming_webhook_by_token(provider: str, endpoint_token: str) -> dict[str, Any] | None:
    result = (
        supabase.table("webhooks")
        .select("*")
        .eq("type", "INCOMING")
        .eq("provider", provider)
        .eq("endpoint_token", endpoint_token)
        .eq("is_active", True)
        .limit(1)
        .execute()
    )
    return _first(result)


def get_active_incoming_webhook(user_id: str, provider: str) -> dict[str, Any] | None:
    result = (
        supabase.table("webhooks")
        .select("*")
        .eq("type", "INCOMING")
        .eq("user_id", user_id)
        .eq("provider", provider)
        .eq("is_active", True)
        .limit(1)
        .execute()
    )
    return _first(result)


def list_outgoing_webhooks(user_id: str, trigger_event: str) -> list[dict[str, Any]]:
    result = (
        supabase.table("webhooks")
        .select("*")
        .eq("type", "OUTGOING")
        .eq("user_id", user_id)
        .eq("trigger_event", trigger_event)
        .eq("is_active", True)
        .execute()
    )
    return list(result.data or [])


# Error sink


def log_error(
    context: str,
    message: str,
    trace: str | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    log_event(
        "integration_error",
        level=logging.ERROR,
        context=context,
        message=message,
        extra=extra or {},
    )
    try:
        supabase.table("error_logs").insert(
            {
                "context": context,
                "message": message,
                "trace": trace,
                "extra": extra or {},
                "created_at": _now_iso(),
            }
        ).execute()
    except Exception as exc:
        log_event(
            "error_log_persist_failed",
            level=logging.WARNING,
            context=context,
            error=str(exc),
        )
