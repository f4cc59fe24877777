"""HMAC verification for inbound provider webhooks and per-user webhook tokens.

Both checks are pure and return booleans; the HTTP layer decides how to
surface a ``False`` result.
"""

from __future__ import annotations

import hashlib
import hmac

from src.config import settings


_SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, shared_secret: str) -> str:
    return hmac.new(shared_secret.encode(), raw_body, hashlib.sha256).hexdigest()


def signature_required(shared_secret: str | None) -> bool:
    # Providers without a configured secret run in unsigned mode.
    return bool(shared_secret)


def verify_provider_signature(
    raw_body: bytes,
    presented_signature: str | None,
    shared_secret: str | None,
) -> bool:
    if not signature_required(shared_secret):
        return True
    if not presented_signature:
        return False
    presented = presented_signature.strip()
    if presented.lower().startswith(_SIGNATURE_PREFIX):
        presented = presented[len(_SIGNATURE_PREFIX):]
    expected = compute_signature(raw_body, shared_secret)
    return hmac.compare_digest(expected.encode(), presented.encode())


def compute_webhook_token(user_id: str, provider: str, signing_key: str | None = None) -> str:
    key = signing_key if signing_key is not None else settings.webhook_signing_key
    return hmac.new(key.encode(), f"{user_id}:{provider}".encode(), hashlib.sha256).hexdigest()


def verify_webhook_token(
    presented_token: str | None,
    user_id: str,
    provider: str,
    signing_key: str | None = None,
) -> bool:
    if not presented_token:
        return False
    expected = compute_webhook_token(user_id, provider, signing_key)
    return hmac.compare_digest(expected.encode(), presented_token.encode())
