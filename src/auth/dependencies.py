import hashlib
from datetime import datetime, timezone
from fastapi import Depends, Header, HTTPException, status
from src.auth.context import AuthContext
from src.auth.jwt import decode_access_token
from src.config import settings
from src.db import supabase


def _hash_token(token: str) -> str:
    """SHA-256 hash a token for lookup."""
    return hashlib.sha256(token.encode()).hexdigest()


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _get_active_user(user_id: str) -> dict | None:
    user_result = supabase.table("users").select(
        "id, email"
    ).eq("id", user_id).is_("deleted_at", "null").execute()
    if not user_result.data:
        return None
    return user_result.data[0]


async def _validate_api_token(token: str) -> AuthContext | None:
    """Validate API token against database. Returns AuthContext or None."""
    token_hash = _hash_token(token)

    result = supabase.table("api_tokens").select(
        "id, user_id, expires_at"
    ).eq("token_hash", token_hash).execute()

    if not result.data:
        return None

    token_record = result.data[0]

    # Check expiration
    if token_record.get("expires_at"):
        expires_at = datetime.fromisoformat(token_record["expires_at"].replace("Z", "+00:00"))
        if expires_at < datetime.now(timezone.utc):
            return None

    supabase.table("api_tokens").update({
        "last_used_at": datetime.now(timezone.utc).isoformat()
    }).eq("id", token_record["id"]).execute()

    user = _get_active_user(token_record["user_id"])
    if not user:
        return None

    return AuthContext(
        user_id=token_record["user_id"],
        email=user.get("email"),
        token_id=token_record["id"],
        auth_method="api_token",
    )


async def _validate_jwt(token: str) -> AuthContext | None:
    """Validate JWT session token. Returns AuthContext or None."""
    payload = decode_access_token(token)
    if not payload:
        return None

    user = _get_active_user(payload["sub"])
    if not user:
        return None

    return AuthContext(
        user_id=payload["sub"],
        email=user.get("email"),
        auth_method="session",
    )


async def get_current_auth(authorization: str | None = Header(None)) -> AuthContext:
    """
    Dual auth: tries JWT first, falls back to API token.
    Every integration operation is scoped to the returned user_id.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    auth = await _validate_jwt(token)
    if auth:
        return auth

    auth = await _validate_api_token(token)
    if auth:
        return auth

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
    )


async def get_current_operator(auth: AuthContext = Depends(get_current_auth)) -> AuthContext:
    """Operator-only routes: the caller must be listed in OPERATOR_USER_IDS."""
    if auth.user_id not in settings.operator_user_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access required",
        )
    return auth
