from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProviderTokenResponse(BaseModel):
    """Token endpoint response; both code exchange and refresh return this shape."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_in: int = Field(ge=0)
    token_type: str = Field(min_length=1)
    location_id: str | None = Field(default=None, alias="locationId")


class ConnectionStatusResponse(BaseModel):
    connected: bool
    reason: str | None = None


class DisconnectResponse(BaseModel):
    provider: str
    connected: bool


class ProviderContactResponse(BaseModel):
    provider: str
    contact: dict[str, Any]
