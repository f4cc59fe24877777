from __future__ import annotations

import logging
import traceback
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from src import storage
from src.auth import AuthContext, create_oauth_state, decode_oauth_state, get_current_auth, get_current_operator
from src.config import settings
from src.domain.errors import NoActiveConnection, ProviderRequestFailed, RefreshFailed
from src.domain.provider_errors import (
    integration_error_detail,
    provider_error_detail,
    provider_error_http_status,
)
from src.integrations import token_lifecycle
from src.models.integrations import ConnectionStatusResponse, DisconnectResponse, ProviderContactResponse
from src.observability import log_event, metrics_snapshot


router = APIRouter(prefix="/api/integrations", tags=["integrations"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _require_supported_provider(provider: str) -> None:
    if provider not in token_lifecycle.supported_providers():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unsupported provider: {provider}")


def _require_provider_configured(provider: str) -> None:
    if not token_lifecycle.provider_client(provider).is_configured():
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{provider.upper()}_CLIENT_ID or {provider.upper()}_CLIENT_SECRET is not configured.",
        )


def _settings_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{settings.ui_integrations_path}?{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/auth/{provider}")
async def start_oauth(provider: str, request: Request, auth: AuthContext = Depends(get_current_auth)):
    """Redirect the browser to the provider's authorization page."""
    _require_supported_provider(provider)
    _require_provider_configured(provider)
    state = create_oauth_state(auth.user_id, provider)
    log_event("oauth_authorization_started", request_id=_request_id(request), user_id=auth.user_id, provider=provider)
    return RedirectResponse(
        url=token_lifecycle.provider_client(provider).build_authorization_url(state),
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/auth/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: str | None = Query(None),
    location_id: str | None = Query(None, alias="locationId"),
    state: str | None = Query(None),
):
    """Exchange the authorization code and store the connection, then return to the settings UI."""
    _require_supported_provider(provider)
    _require_provider_configured(provider)

    if not code or not location_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Authorization code or location ID is missing",
        )

    user_id = decode_oauth_state(state, provider) if state else None
    if not user_id:
        log_event(
            "oauth_callback_rejected",
            level=logging.WARNING,
            request_id=_request_id(request),
            provider=provider,
            reason="invalid_state",
        )
        return _settings_redirect(error=f"{provider}-auth-failed")

    try:
        token_lifecycle.exchange_authorization_code(user_id, provider, code, {"locationId": location_id})
    except Exception as exc:
        storage.log_error(
            f"{provider.upper()} OAuth Callback",
            str(exc),
            traceback.format_exc(),
            {"locationId": location_id, "user_id": user_id},
        )
        return _settings_redirect(error=f"{provider}-auth-failed")

    return _settings_redirect(success=f"{provider}-connected")


@router.get("/connection-status", response_model=ConnectionStatusResponse)
async def get_connection_status(
    provider: str = Query("ghl"),
    auth: AuthContext = Depends(get_current_auth),
):
    """Report whether the caller has a usable connection, refreshing an expired token first."""
    _require_supported_provider(provider)
    try:
        return token_lifecycle.connection_status(auth.user_id, provider)
    except Exception as exc:
        storage.log_error(
            f"{provider.upper()} Connection Status",
            str(exc),
            traceback.format_exc(),
            {"user_id": auth.user_id},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to check {provider} connection status",
        ) from exc


@router.post("/{provider}/disconnect", response_model=DisconnectResponse)
async def disconnect(provider: str, auth: AuthContext = Depends(get_current_auth)):
    _require_supported_provider(provider)
    if not token_lifecycle.deactivate_connection(auth.user_id, provider):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return DisconnectResponse(provider=provider, connected=False)


@router.get("/{provider}/contacts/{contact_id}", response_model=ProviderContactResponse)
async def get_provider_contact(provider: str, contact_id: str, auth: AuthContext = Depends(get_current_auth)):
    """Fetch a contact straight from the provider API with a valid access token."""
    _require_supported_provider(provider)
    try:
        access_token = token_lifecycle.get_valid_access_token(auth.user_id, provider)
        contact = token_lifecycle.provider_client(provider).get_contact(access_token, contact_id)
    except NoActiveConnection as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=integration_error_detail(provider=provider, operation="get_contact", exc=exc),
        ) from exc
    except RefreshFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=integration_error_detail(provider=provider, operation="get_contact", exc=exc),
        ) from exc
    except ProviderRequestFailed as exc:
        raise HTTPException(
            status_code=provider_error_http_status(exc),
            detail=provider_error_detail(provider=provider, operation="get_contact", exc=exc),
        ) from exc
    return ProviderContactResponse(provider=provider, contact=contact)


@router.get("/metrics")
async def get_metrics(operator: AuthContext = Depends(get_current_operator)):
    """Process-wide counters across all users; restricted to operators."""
    return {"counters": metrics_snapshot()}
