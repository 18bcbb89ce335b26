"""API routers and authentication."""

from callpanion.api.auth import (
    AuthenticatedUser,
    TokenPayload,
    create_access_token,
    decode_token,
    get_current_user,
    get_optional_user,
)

__all__ = [
    "AuthenticatedUser",
    "TokenPayload",
    "create_access_token",
    "decode_token",
    "get_current_user",
    "get_optional_user",
]
