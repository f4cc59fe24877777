"""Route verified webhook payloads to reconciliation handlers.

:func:`process_webhook_payload` is the entry point for the HTTP layer. It never
raises: every failure is written to the error sink and the caller still
acknowledges the webhook, so the provider does not retry-storm on internal
errors.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import asdict
from typing import Any, Callable

from src import storage
from src.domain.errors import IntegrationError, MalformedPayload
from src.integrations import reconciler
from src.integrations.reconciler import ReconcileResult
from src.observability import incr_metric, log_event


_EXACT_HANDLERS: dict[str, Callable[[str, dict[str, Any]], ReconcileResult]] = {
    "contact.created": reconciler.upsert_contact,
    "contact.updated": reconciler.upsert_contact,
    "contact.deleted": reconciler.delete_contact,
}
_PREFIX_HANDLERS: dict[str, Callable[[str, dict[str, Any]], ReconcileResult]] = {
    "email.": reconciler.apply_email_event,
}


def resolve_handler(event: str) -> Callable[[str, dict[str, Any]], ReconcileResult] | None:
    handler = _EXACT_HANDLERS.get(event)
    if handler is not None:
        return handler
    for prefix, prefix_handler in _PREFIX_HANDLERS.items():
        if event.startswith(prefix):
            return prefix_handler
    return None


def dispatch_event(
    event: str,
    data: dict[str, Any],
    *,
    request_id: str | None = None,
) -> ReconcileResult:
    handler = resolve_handler(event)
    if handler is None:
        incr_metric("webhook.events.ignored", reason="unrecognized_event")
        log_event("webhook_event_ignored", request_id=request_id, webhook_event=event, reason="unrecognized_event")
        return ReconcileResult(event=event, handler=None, outcome="ignored")

    return handler(event, data)


def _unpack(payload: Any) -> tuple[str, dict[str, Any]]:
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook payload must be a JSON object")
    event = payload.get("event")
    data = payload.get("data")
    if not event or not isinstance(event, str) or not isinstance(data, dict):
        raise MalformedPayload("Invalid webhook payload")
    return event, data


def process_webhook_payload(
    payload: Any,
    *,
    source: str,
    allowed_events: list[str] | None = None,
    request_id: str | None = None,
) -> dict[str, Any] | None:
    event = payload.get("event") if isinstance(payload, dict) else None
    try:
        event, data = _unpack(payload)
        if allowed_events and event not in allowed_events:
            incr_metric("webhook.events.ignored", provider_slug=source, reason="not_handled")
            log_event("webhook_event_ignored", request_id=request_id, provider_slug=source, webhook_event=event, reason="not_handled")
            return None
        result = dispatch_event(event, data, request_id=request_id)
    except IntegrationError as exc:
        incr_metric("webhook.events.failed", provider_slug=source, reason=exc.code)
        log_event(
            "webhook_failed",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug=source,
            webhook_event=event,
            error=str(exc),
        )
        storage.log_error(f"{source} Webhook Handler", str(exc), traceback.format_exc(), {"event": event, "payload": payload})
        return None
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug=source, reason="internal_error")
        log_event(
            "webhook_failed",
            level=logging.ERROR,
            request_id=request_id,
            provider_slug=source,
            webhook_event=event,
            error=str(exc),
        )
        storage.log_error(f"{source} Webhook Handler", str(exc), traceback.format_exc(), {"event": event, "payload": payload})
        return None

    incr_metric("webhook.events.processed", provider_slug=source)
    log_event(
        "webhook_processed",
        request_id=request_id,
        provider_slug=source,
        webhook_event=event,
        handler=result.handler,
        outcome=result.outcome,
    )
    return asdict(result)


def outbound_trigger(result: dict[str, Any] | None) -> tuple[str, dict[str, Any]] | None:
    """Event name and trigger data for outgoing webhooks, or None when nothing was applied."""
    if not result or result.get("handler") is None or result.get("outcome") == "not_found":
        return None
    event = result["event"]
    return event, {"event": event, **result.get("detail", {})}
