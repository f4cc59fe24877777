from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from src.config import settings


def create_access_token(user_id: str) -> str:
    """Create a signed JWT session token."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload = {
        "sub": user_id,
        "type": "session",
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT. Returns payload or None if invalid."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        if payload.get("type") != "session":
            return None
        return payload
    except JWTError:
        return None


def create_oauth_state(user_id: str, provider: str) -> str:
    """Create the short-lived signed `state` carried through a provider OAuth redirect."""
    expire = datetime.now(timezone.utc) + timedelta(seconds=settings.oauth_state_expiration_seconds)
    payload = {
        "sub": user_id,
        "provider": provider,
        "type": "oauth_state",
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_oauth_state(state: str, provider: str) -> str | None:
    """Return the user id bound to an OAuth state, or None if invalid, expired or for another provider."""
    try:
        payload = jwt.decode(state, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if payload.get("type") != "oauth_state" or payload.get("provider") != provider:
        return None
    return payload.get("sub")
