from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, RootModel, ValidationInfo, field_validator


WebhookType = Literal["INCOMING", "OUTGOING"]
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

INCOMING_FIELDS = ("secret_key", "event_handling", "notification_email")
OUTGOING_FIELDS = ("trigger_event", "target_url", "http_method", "headers", "selected_fields", "payload_template")
NON_NULLABLE_FIELDS = (
    "name",
    "is_active",
    "event_handling",
    "trigger_event",
    "target_url",
    "http_method",
    "headers",
    "selected_fields",
)


def _normalize_http_method(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


def _validate_target_url(value: str | None) -> str | None:
    if value is None:
        return None
    url = value.strip()
    if not url.lower().startswith(("http://", "https://")):
        raise ValueError("target_url must be an http(s) URL")
    return url


class _WebhookBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    provider: str = "custom"


class IncomingWebhookCreate(_WebhookBase):
    type: Literal["INCOMING"]
    secret_key: str | None = Field(default=None, validation_alias=AliasChoices("secret_key", "secretKey"))
    event_handling: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("event_handling", "eventHandling"),
    )
    notification_email: EmailStr | None = Field(
        default=None,
        validation_alias=AliasChoices("notification_email", "notificationEmail"),
    )


class OutgoingWebhookCreate(_WebhookBase):
    type: Literal["OUTGOING"]
    trigger_event: str = Field(min_length=1)
    target_url: str
    http_method: HttpMethod = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    selected_fields: list[str] = Field(default_factory=list)
    payload_template: str | None = None

    @field_validator("http_method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return _normalize_http_method(value)

    @field_validator("target_url")
    @classmethod
    def _check_target_url(cls, value: str) -> str:
        return _validate_target_url(value)


class WebhookCreate(
    RootModel[Annotated[Union[IncomingWebhookCreate, OutgoingWebhookCreate], Field(discriminator="type")]]
):
    pass


class WebhookUpdate(BaseModel):
    """Partial update. Only fields of the stored webhook's variant are applied."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    is_active: bool | None = None
    secret_key: str | None = Field(default=None, validation_alias=AliasChoices("secret_key", "secretKey"))
    event_handling: list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("event_handling", "eventHandling"),
    )
    notification_email: EmailStr | None = Field(
        default=None,
        validation_alias=AliasChoices("notification_email", "notificationEmail"),
    )
    trigger_event: str | None = Field(default=None, min_length=1)
    target_url: str | None = None
    http_method: HttpMethod | None = None
    headers: dict[str, str] | None = None
    selected_fields: list[str] | None = None
    payload_template: str | None = None

    @field_validator(*NON_NULLABLE_FIELDS, mode="before")
    @classmethod
    def _reject_null(cls, value: Any, info: ValidationInfo) -> Any:
        # Only runs for keys present in the body; omitted keys keep their stored value.
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value

    @field_validator("http_method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return _normalize_http_method(value)

    @field_validator("target_url")
    @classmethod
    def _check_target_url(cls, value: str | None) -> str | None:
        return _validate_target_url(value)

    def patch_for(self, webhook_type: str) -> dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        variant_fields = INCOMING_FIELDS if webhook_type == "INCOMING" else OUTGOING_FIELDS
        allowed = {"name", "description", "is_active", *variant_fields}
        return {key: value for key, value in changes.items() if key in allowed}


class _WebhookResponseBase(BaseModel):
    id: str
    user_id: str
    name: str
    description: str | None = None
    provider: str
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class IncomingWebhookResponse(_WebhookResponseBase):
    type: Literal["INCOMING"]
    endpoint_token: str
    endpoint_path: str
    secret_configured: bool
    event_handling: list[str] = Field(default_factory=list)
    notification_email: str | None = None


class OutgoingWebhookResponse(_WebhookResponseBase):
    type: Literal["OUTGOING"]
    trigger_event: str
    target_url: str
    http_method: HttpMethod
    headers: dict[str, str] = Field(default_factory=dict)
    selected_fields: list[str] = Field(default_factory=list)
    payload_template: str | None = None


WebhookResponse = Union[IncomingWebhookResponse, OutgoingWebhookResponse]


def webhook_response(row: dict[str, Any]) -> WebhookResponse:
    common = {
        "id": str(row["id"]),
        "user_id": str(row["user_id"]),
        "name": row["name"],
        "description": row.get("description"),
        "provider": row.get("provider") or "custom",
        "is_active": bool(row.get("is_active", True)),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }
    if row["type"] == "INCOMING":
        return IncomingWebhookResponse(
            **common,
            type="INCOMING",
            endpoint_token=row["endpoint_token"],
            endpoint_path=f"/api/webhooks/incoming/{common['provider']}/{row['endpoint_token']}",
            secret_configured=bool(row.get("secret_key")),
            event_handling=row.get("event_handling") or [],
            notification_email=row.get("notification_email"),
        )
    return OutgoingWebhookResponse(
        **common,
        type="OUTGOING",
        trigger_event=row["trigger_event"],
        target_url=row["target_url"],
        http_method=row.get("http_method") or "POST",
        headers=row.get("headers") or {},
        selected_fields=row.get("selected_fields") or [],
        payload_template=row.get("payload_template"),
    )


class WebhookAck(BaseModel):
    success: bool = True


class WebhookDeleteResponse(BaseModel):
    success: bool
    message: str


class WebhookTestRequest(BaseModel):
    event: str | None = None
    data: dict[str, Any] | None = None


class WebhookTestResponse(BaseModel):
    webhook_id: str
    ok: bool
    status_code: int | None = None
    error: str | None = None
