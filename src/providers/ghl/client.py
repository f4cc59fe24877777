from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from src.config import settings
from src.domain.errors import ProviderRequestFailed
from src.models.integrations import ProviderTokenResponse


GHL_API_VERSION = "2021-07-28"


class GHLProviderError(ProviderRequestFailed):
    """Provider-level exception for GoHighLevel integration failures."""


def is_configured() -> bool:
    return bool(settings.ghl_client_id and settings.ghl_client_secret)


def build_authorization_url(state: str | None = None) -> str:
    params = {
        "response_type": "code",
        "client_id": settings.ghl_client_id or "",
        "scope": settings.ghl_scopes,
        "redirect_uri": settings.ghl_redirect_uri,
    }
    if state:
        params["state"] = state
    return f"{settings.ghl_auth_url}?{urlencode(params)}"


def _post_token_request(form: dict[str, str], timeout_seconds: float) -> ProviderTokenResponse:
    if not is_configured():
        raise GHLProviderError("GHL_CLIENT_ID or GHL_CLIENT_SECRET is not configured")

    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            response = client.post(
                settings.ghl_token_url,
                data={
                    "client_id": settings.ghl_client_id,
                    "client_secret": settings.ghl_client_secret,
                    **form,
                },
                headers={"Accept": "application/json"},
            )
    except httpx.TimeoutException as exc:
        raise GHLProviderError(f"GHL token request timed out: {exc}") from exc
    except httpx.HTTPError as exc:
        raise GHLProviderError(f"GHL connectivity error: {exc}") from exc

    if response.status_code >= 400:
        raise GHLProviderError(
            f"GHL token endpoint returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise GHLProviderError("GHL token endpoint returned non-JSON response") from exc
    try:
        return ProviderTokenResponse.model_validate(body)
    except ValidationError as exc:
        missing = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise GHLProviderError(f"Unexpected GHL token response shape: {','.join(missing)}") from exc


def exchange_authorization_code(code: str, timeout_seconds: float | None = None) -> ProviderTokenResponse:
    return _post_token_request(
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": settings.ghl_redirect_uri,
        },
        timeout_seconds or settings.provider_timeout_seconds,
    )


def refresh_access_token(refresh_token: str, timeout_seconds: float | None = None) -> ProviderTokenResponse:
    return _post_token_request(
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        },
        timeout_seconds or settings.provider_timeout_seconds,
    )


def get_contact(access_token: str, contact_id: str, timeout_seconds: float | None = None) -> dict[str, Any]:
    url = f"{settings.ghl_api_base_url.rstrip('/')}/contacts/{contact_id}"
    try:
        with httpx.Client(timeout=timeout_seconds or settings.provider_timeout_seconds) as client:
            response = client.get(
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Version": GHL_API_VERSION,
                    "Accept": "application/json",
                },
            )
    except httpx.HTTPError as exc:
        raise GHLProviderError(f"GHL connectivity error: {exc}") from exc

    if response.status_code >= 400:
        raise GHLProviderError(
            f"GHL API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise GHLProviderError("GHL returned non-JSON response") from exc
    if isinstance(payload, dict) and isinstance(payload.get("contact"), dict):
        return payload["contact"]
    if not isinstance(payload, dict):
        raise GHLProviderError("Unexpected GHL contact response type")
    return payload
