"""OAuth token lifecycle for provider integration connections.

Callers ask for a usable access token with :func:`get_valid_access_token`.
An expired connection is refreshed before the token is returned, and refreshes
for one ``(user_id, provider)`` connection are single-flight: while one refresh
is outstanding, concurrent callers wait for it and share its outcome instead of
spending the refresh token a second time.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Event, Lock
from types import ModuleType
from typing import Any

from src import storage
from src.config import settings
from src.domain.errors import NoActiveConnection, ProviderRequestFailed, RefreshFailed
from src.models.integrations import ConnectionStatusResponse, ProviderTokenResponse
from src.observability import incr_metric, log_event
from src.providers.ghl import client as ghl_client


_PROVIDER_CLIENTS: dict[str, ModuleType] = {"ghl": ghl_client}


@dataclass
class _InFlightRefresh:
    done: Event = field(default_factory=Event)
    result: dict[str, Any] | None = None
    error: BaseException | None = None


_in_flight_lock = Lock()
_in_flight: dict[tuple[str, str], _InFlightRefresh] = {}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def supported_providers() -> set[str]:
    return set(_PROVIDER_CLIENTS)


def provider_client(provider: str) -> ModuleType:
    client = _PROVIDER_CLIENTS.get(provider)
    if client is None:
        raise ProviderRequestFailed(f"Unsupported OAuth provider: {provider}", provider=provider)
    return client


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_expired(connection: dict[str, Any], now: datetime | None = None) -> bool:
    expires_at = parse_timestamp(connection.get("token_expires_at"))
    if expires_at is None:
        return False
    return expires_at < (now or _utcnow())


def _token_patch(tokens: ProviderTokenResponse) -> dict[str, Any]:
    expires_at = _utcnow() + timedelta(seconds=tokens.expires_in)
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "token_expires_at": expires_at.isoformat(),
    }


def _require_active(connection: dict[str, Any] | None, user_id: str, provider: str) -> dict[str, Any]:
    if not connection or not connection.get("is_active"):
        raise NoActiveConnection(
            f"No active {provider} connection found",
            user_id=user_id,
            provider=provider,
        )
    return connection


def exchange_authorization_code(
    user_id: str,
    provider: str,
    code: str,
    extra_config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    client = provider_client(provider)
    try:
        tokens = client.exchange_authorization_code(code)
    except ProviderRequestFailed:
        incr_metric("oauth.exchange.failed", provider=provider)
        raise

    config = dict(extra_config or {})
    if tokens.location_id:
        config.setdefault("locationId", tokens.location_id)
    patch = {**_token_patch(tokens), "is_active": True, "config": config}
    existing = storage.get_integration_connection(user_id, provider)
    if existing:
        connection = storage.update_integration_connection(existing["id"], patch)
    else:
        connection = storage.create_integration_connection({"user_id": user_id, "provider": provider, **patch})
    if not connection:
        raise ProviderRequestFailed(f"Failed to persist {provider} connection", provider=provider)

    incr_metric("oauth.exchange.succeeded", provider=provider)
    log_event(
        "oauth_connection_stored",
        user_id=user_id,
        provider=provider,
        connection_id=connection.get("id"),
        reauthorized=bool(existing),
        token_expires_at=patch["token_expires_at"],
    )
    return connection


def refresh(connection: dict[str, Any]) -> dict[str, Any]:
    """Spend the stored refresh token once and persist the new token pair.

    Stored tokens are left untouched on failure. There is no retry here; a
    ``RefreshFailed`` means the connection is unusable until re-authorized.
    """
    provider = connection["provider"]
    context = {"connection_id": connection.get("id"), "provider": provider}
    try:
        tokens = provider_client(provider).refresh_access_token(connection["refresh_token"])
    except ProviderRequestFailed as exc:
        incr_metric("oauth.refresh.failed", provider=provider)
        storage.log_error("OAuth Token Refresh", str(exc), traceback.format_exc(), context)
        raise RefreshFailed(f"Failed to refresh {provider} token", **context) from exc

    try:
        updated = storage.update_integration_connection(connection["id"], _token_patch(tokens))
    except Exception as exc:
        incr_metric("oauth.refresh.failed", provider=provider)
        storage.log_error("OAuth Token Refresh", str(exc), traceback.format_exc(), context)
        raise RefreshFailed(f"Failed to store refreshed {provider} token", **context) from exc
    if not updated:
        incr_metric("oauth.refresh.failed", provider=provider)
        raise RefreshFailed(f"{provider} connection disappeared during refresh", **context)

    incr_metric("oauth.refresh.succeeded", provider=provider)
    log_event(
        "oauth_token_refreshed",
        connection_id=updated.get("id"),
        provider=provider,
        token_expires_at=updated.get("token_expires_at"),
    )
    return updated


def _refresh_single_flight(user_id: str, provider: str) -> dict[str, Any]:
    key = (user_id, provider)
    with _in_flight_lock:
        flight = _in_flight.get(key)
        leader = flight is None
        if leader:
            flight = _InFlightRefresh()
            _in_flight[key] = flight

    if not leader:
        incr_metric("oauth.refresh.joined", provider=provider)
        # The leader's provider call is bounded by its own timeout.
        if not flight.done.wait(timeout=settings.provider_timeout_seconds * 3):
            raise RefreshFailed(f"Timed out waiting for in-flight {provider} refresh", provider=provider)
        if isinstance(flight.error, NoActiveConnection):
            raise NoActiveConnection(str(flight.error), provider=provider) from flight.error
        if flight.error is not None:
            raise RefreshFailed(str(flight.error), provider=provider) from flight.error
        assert flight.result is not None
        return flight.result

    try:
        # Re-read under leadership: a refresh that finished after the caller's
        # read has already rotated the refresh token.
        current = _require_active(storage.get_integration_connection(user_id, provider), user_id, provider)
        if is_expired(current):
            current = refresh(current)
        flight.result = current
        return current
    except BaseException as exc:
        flight.error = exc
        raise
    finally:
        with _in_flight_lock:
            _in_flight.pop(key, None)
        flight.done.set()


def get_valid_access_token(user_id: str, provider: str) -> str:
    connection = _require_active(storage.get_integration_connection(user_id, provider), user_id, provider)
    if not is_expired(connection):
        return connection["access_token"]

    _refresh_single_flight(user_id, provider)
    updated = storage.get_integration_connection(user_id, provider)
    if not updated or not updated.get("is_active"):
        raise RefreshFailed(f"Failed to get updated {provider} connection", provider=provider)
    return updated["access_token"]


def connection_status(user_id: str, provider: str) -> ConnectionStatusResponse:
    connection = storage.get_integration_connection(user_id, provider)
    if not connection or not connection.get("is_active"):
        return ConnectionStatusResponse(connected=False)
    if not is_expired(connection):
        return ConnectionStatusResponse(connected=True)
    try:
        _refresh_single_flight(user_id, provider)
    except (RefreshFailed, NoActiveConnection):
        return ConnectionStatusResponse(connected=False, reason="Token expired and refresh failed")
    return ConnectionStatusResponse(connected=True)


def deactivate_connection(user_id: str, provider: str) -> bool:
    connection = storage.get_integration_connection(user_id, provider)
    if not connection:
        return False
    storage.update_integration_connection(connection["id"], {"is_active": False})
    log_event("oauth_connection_deactivated", user_id=user_id, provider=provider, connection_id=connection["id"])
    return True
