from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status

from src import storage
from src.auth import AuthContext, get_current_auth
from src.config import settings
from src.domain.errors import IntegrationError
from src.integrations import outbound, signatures
from src.integrations.dispatcher import outbound_trigger, process_webhook_payload
from src.models.webhooks import (
    WebhookAck,
    WebhookCreate,
    WebhookDeleteResponse,
    WebhookResponse,
    WebhookTestRequest,
    WebhookTestResponse,
    WebhookUpdate,
    webhook_response,
)
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

_INCOMING_DISPATCH_PROVIDERS = {"gohighlevel"}
_INCOMING_NOOP_PROVIDERS = {"openai"}


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _provider_secrets() -> dict[str, str | None]:
    return {"ghl": settings.ghl_webhook_secret}


def _signature_header(request: Request, provider: str) -> str | None:
    return request.headers.get(f"x-{provider}-signature")


def _parse_payload(raw_body: bytes) -> Any:
    # Undecodable bodies go to the dispatcher as-is and are logged as malformed there.
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def _reject(provider: str, reason: str, req_id: str | None, detail: str) -> HTTPException:
    incr_metric("webhook.events.rejected", provider_slug=provider, reason=reason)
    log_event(
        "webhook_rejected",
        level=logging.WARNING,
        request_id=req_id,
        provider_slug=provider,
        reason=reason,
    )
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


@router.post("/incoming/{provider}/{token}", response_model=WebhookAck)
async def ingest_incoming_webhook(
    provider: str,
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
):
    """Per-user webhook endpoint. The path token identifies and authenticates the user."""
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug=provider)

    webhook = storage.get_incoming_webhook_by_token(provider, token)
    if not webhook or not signatures.verify_webhook_token(token, str(webhook["user_id"]), provider):
        raise _reject(provider, "invalid_token", req_id, "Invalid webhook token")

    if webhook.get("secret_key") and not signatures.verify_provider_signature(
        raw_body,
        _signature_header(request, provider),
        webhook["secret_key"],
    ):
        raise _reject(provider, "invalid_signature", req_id, "Invalid webhook signature")

    user_id = str(webhook["user_id"])
    log_event("webhook_received", request_id=req_id, provider_slug=provider, webhook_id=webhook.get("id"))

    if provider in _INCOMING_DISPATCH_PROVIDERS:
        result = process_webhook_payload(
            _parse_payload(raw_body),
            source=provider,
            allowed_events=webhook.get("event_handling") or None,
            request_id=req_id,
        )
        trigger = outbound_trigger(result)
        if trigger:
            event, trigger_data = trigger
            background_tasks.add_task(outbound.fire_trigger, user_id, event, trigger_data, request_id=req_id)
    elif provider in _INCOMING_NOOP_PROVIDERS:
        log_event("webhook_event_ignored", request_id=req_id, provider_slug=provider, reason="provider_reserved")
    else:
        storage.log_error(
            "Incoming Webhook",
            f"Unsupported provider: {provider}",
            None,
            {"webhook_id": webhook.get("id"), "user_id": user_id},
        )

    return WebhookAck()


@router.post("/{provider}", response_model=WebhookAck)
async def ingest_provider_webhook(provider: str, request: Request):
    """Provider-signed webhook. Signature failures return 401; everything else is acknowledged."""
    secrets_by_provider = _provider_secrets()
    if provider not in secrets_by_provider:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unsupported provider: {provider}")

    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug=provider)

    if not signatures.verify_provider_signature(
        raw_body,
        _signature_header(request, provider),
        secrets_by_provider[provider],
    ):
        raise _reject(provider, "invalid_signature", req_id, "Invalid webhook signature")

    process_webhook_payload(_parse_payload(raw_body), source=provider, request_id=req_id)
    return WebhookAck()


# Webhook configuration


def _ensure_no_active_incoming(user_id: str, provider: str) -> None:
    # All incoming webhooks of a user and provider share one endpoint token, so only one may be active.
    if storage.get_active_incoming_webhook(user_id, provider):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"An active incoming webhook already exists for provider {provider}",
        )


@router.post("", response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(data: WebhookCreate, auth: AuthContext = Depends(get_current_auth)):
    webhook = data.root
    row = {**webhook.model_dump(mode="json"), "user_id": auth.user_id, "is_active": True}
    if webhook.type == "INCOMING":
        _ensure_no_active_incoming(auth.user_id, webhook.provider)
        row["endpoint_token"] = signatures.compute_webhook_token(auth.user_id, webhook.provider)

    created = storage.create_webhook(row)
    log_event("webhook_config_created", user_id=auth.user_id, webhook_id=created.get("id"), webhook_type=webhook.type)
    return webhook_response(created)


@router.get("", response_model=list[WebhookResponse])
async def list_webhooks(auth: AuthContext = Depends(get_current_auth)):
    return [webhook_response(row) for row in storage.list_webhooks(auth.user_id)]


@router.get("/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(webhook_id: str, auth: AuthContext = Depends(get_current_auth)):
    row = storage.get_webhook(webhook_id, auth.user_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    return webhook_response(row)


@router.put("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(webhook_id: str, data: WebhookUpdate, auth: AuthContext = Depends(get_current_auth)):
    row = storage.get_webhook(webhook_id, auth.user_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")

    patch = data.patch_for(row["type"])
    if row["type"] == "INCOMING" and patch.get("is_active") and not row.get("is_active"):
        _ensure_no_active_incoming(auth.user_id, row["provider"])
    if not patch:
        return webhook_response(row)

    updated = storage.update_webhook(webhook_id, auth.user_id, patch)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    return webhook_response(updated)


@router.delete("/{webhook_id}", response_model=WebhookDeleteResponse)
async def delete_webhook(webhook_id: str, auth: AuthContext = Depends(get_current_auth)):
    if not storage.delete_webhook(webhook_id, auth.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    return WebhookDeleteResponse(success=True, message="Webhook deleted successfully")


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook(
    webhook_id: str,
    request: Request,
    data: WebhookTestRequest | None = None,
    auth: AuthContext = Depends(get_current_auth),
):
    """Send one delivery of an outgoing webhook with sample or caller-supplied data."""
    row = storage.get_webhook(webhook_id, auth.user_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    if row["type"] != "OUTGOING":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only outgoing webhooks can be tested")

    event = (data.event if data else None) or row.get("trigger_event") or "webhook.test"
    sample = (data.data if data else None) or {"event": event, "test": True}
    try:
        result = outbound.deliver(row, event, sample)
    except IntegrationError as exc:
        log_event(
            "outbound_webhook_test_failed",
            level=logging.WARNING,
            request_id=_request_id(request),
            webhook_id=webhook_id,
            error=str(exc),
        )
        return WebhookTestResponse(
            webhook_id=webhook_id,
            ok=False,
            status_code=getattr(exc, "status_code", None),
            error=str(exc),
        )
    return WebhookTestResponse(webhook_id=webhook_id, ok=result.ok, status_code=result.status_code)
