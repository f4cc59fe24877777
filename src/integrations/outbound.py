from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from src import storage
from src.config import settings
from src.domain.errors import IntegrationError, MalformedPayload, ProviderRequestFailed
from src.observability import incr_metric, log_event


ALLOWED_HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


@dataclass
class OutboundRequest:
    method: str
    url: str
    headers: dict[str, str]
    json_body: Any = None
    content: str | None = None
    params: dict[str, str] | None = None


@dataclass
class DeliveryResult:
    webhook_id: str | None
    ok: bool
    status_code: int | None = None
    error: str | None = None


def resolve_field(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def select_fields(data: dict[str, Any], selected_fields: list[str] | None) -> dict[str, Any]:
    if not selected_fields:
        return dict(data)
    return {name: resolve_field(data, name) for name in selected_fields}


def _format_value(value: Any, json_mode: bool) -> str:
    if value is None:
        return "null" if json_mode else ""
    if isinstance(value, str):
        return json.dumps(value)[1:-1] if json_mode else value
    if isinstance(value, (dict, list, bool, int, float)):
        return json.dumps(value)
    return str(value)


def render_template(template: str, values: dict[str, Any]) -> str:
    json_mode = template.lstrip().startswith(("{", "["))

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        value = values.get(name) if name in values else resolve_field(values, name)
        return _format_value(value, json_mode)

    return _PLACEHOLDER.sub(_substitute, template)


def build_outbound_request(webhook: dict[str, Any], event: str, data: dict[str, Any]) -> OutboundRequest:
    target_url = webhook.get("target_url")
    if not target_url:
        raise MalformedPayload("Outgoing webhook has no target_url", webhook_id=webhook.get("id"))
    method = str(webhook.get("http_method") or "POST").upper()
    if method not in ALLOWED_HTTP_METHODS:
        raise MalformedPayload(f"Unsupported HTTP method: {method}", webhook_id=webhook.get("id"))

    fields = select_fields(data, webhook.get("selected_fields"))
    headers = {str(k): str(v) for k, v in (webhook.get("headers") or {}).items()}

    if method == "GET":
        params = {name: _format_value(value, False) for name, value in fields.items()}
        return OutboundRequest(method=method, url=target_url, headers=headers, params=params)

    template = webhook.get("payload_template")
    if not template:
        return OutboundRequest(
            method=method,
            url=target_url,
            headers=headers,
            json_body={"event": event, "data": fields},
        )

    rendered = render_template(
        template,
        {"event": event, "triggered_at": datetime.now(timezone.utc).isoformat(), **fields},
    )
    try:
        return OutboundRequest(method=method, url=target_url, headers=headers, json_body=json.loads(rendered))
    except ValueError:
        if not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = "text/plain"
        return OutboundRequest(method=method, url=target_url, headers=headers, content=rendered)


def deliver(
    webhook: dict[str, Any],
    event: str,
    data: dict[str, Any],
    timeout_seconds: float | None = None,
) -> DeliveryResult:
    request = build_outbound_request(webhook, event, data)
    webhook_id = webhook.get("id")
    try:
        with httpx.Client(timeout=timeout_seconds or settings.outbound_webhook_timeout_seconds) as client:
            response = client.request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                params=request.params,
                json=request.json_body,
                content=request.content,
            )
    except httpx.HTTPError as exc:
        incr_metric("outbound.deliveries.failed", trigger_event=event)
        raise ProviderRequestFailed(f"Outbound webhook connectivity error: {exc}", webhook_id=webhook_id) from exc

    if response.status_code >= 400:
        incr_metric("outbound.deliveries.failed", trigger_event=event)
        raise ProviderRequestFailed(
            f"Outbound webhook target returned HTTP {response.status_code}",
            status_code=response.status_code,
            webhook_id=webhook_id,
        )

    incr_metric("outbound.deliveries.succeeded", trigger_event=event)
    log_event(
        "outbound_webhook_delivered",
        webhook_id=webhook_id,
        trigger_event=event,
        method=request.method,
        status_code=response.status_code,
    )
    return DeliveryResult(webhook_id=webhook_id, ok=True, status_code=response.status_code)


def fire_trigger(
    user_id: str,
    trigger_event: str,
    data: dict[str, Any],
    request_id: str | None = None,
) -> list[DeliveryResult]:
    results: list[DeliveryResult] = []
    for webhook in storage.list_outgoing_webhooks(user_id, trigger_event):
        try:
            results.append(deliver(webhook, trigger_event, data))
        except IntegrationError as exc:
            log_event(
                "outbound_webhook_failed",
                level=logging.WARNING,
                request_id=request_id,
                webhook_id=webhook.get("id"),
                trigger_event=trigger_event,
                error=str(exc),
            )
            storage.log_error(
                "Outgoing Webhook Delivery",
                str(exc),
                None,
                {"webhook_id": webhook.get("id"), "trigger_event": trigger_event},
            )
            results.append(
                DeliveryResult(
                    webhook_id=webhook.get("id"),
                    ok=False,
                    status_code=getattr(exc, "status_code", None),
                    error=str(exc),
                )
            )
    return results
