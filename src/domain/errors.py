from __future__ import annotations

from typing import Any


class IntegrationError(Exception):
    """Base class for failures raised by the integration subsystem."""

    code = "integration_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class Unauthorized(IntegrationError):
    code = "unauthorized"


class MalformedPayload(IntegrationError):
    code = "malformed_payload"


class UnsupportedEvent(IntegrationError):
    code = "unsupported_event"


class NoActiveConnection(IntegrationError):
    code = "no_active_connection"


class RefreshFailed(IntegrationError):
    code = "refresh_failed"


class ProviderRequestFailed(IntegrationError):
    """Network or HTTP failure while talking to an external system."""

    code = "provider_request_failed"

    def __init__(self, message: str, *, status_code: int | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.status_code = status_code

    @property
    def category(self) -> str:
        if self.status_code is None:
            message = str(self).lower()
            if "connectivity error" in message or "timed out" in message:
                return "transient"
            return "unknown"
        if self.status_code == 429 or self.status_code >= 500:
            return "transient"
        if 400 <= self.status_code < 500:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"
