from src.auth.context import AuthContext
from src.auth.dependencies import get_current_auth, get_current_operator
from src.auth.jwt import create_access_token, create_oauth_state, decode_oauth_state

__all__ = [
    "AuthContext",
    "get_current_auth",
    "get_current_operator",
    "create_access_token",
    "create_oauth_state",
    "decode_oauth_state",
]
