"""JWT Authentication for family-facing endpoints.

Family members authenticate with HS256 bearer tokens whose ``sub`` is
the user id used in household membership. Devices do not use JWTs; they
present their claimed pairing token in ``X-Device-Token``. Webhooks are
unauthenticated but signature-checked.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from callpanion.config import get_settings
from callpanion.core.logging import get_logger

log = get_logger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer(auto_error=False)
security_required = HTTPBearer(auto_error=True)

_DEV_SECRET = "INSECURE-DEV-SECRET-DO-NOT-USE-IN-PRODUCTION"


class TokenPayload(BaseModel):
    """JWT token payload."""

    sub: str  # Family user id
    exp: datetime
    iat: datetime
    type: str = "access"
    scopes: list[str] = []


class AuthenticatedUser(BaseModel):
    """Authenticated family member."""

    id: str
    scopes: list[str] = []
    token_type: str = "access"


def get_secret_key() -> str:
    """Get JWT secret key from settings.

    Raises:
        ValueError: If no secret key is configured in production environment.
    """
    settings = get_settings()
    secret = settings.jwt_secret_key

    if not secret:
        if settings.is_production:
            raise ValueError(
                "JWT secret key must be configured in production! "
                "Set CALLPANION_JWT_SECRET_KEY environment variable."
            )
        log.warning("Using insecure development JWT secret")
        secret = _DEV_SECRET

    return secret


def get_algorithm() -> str:
    """Get JWT algorithm."""
    return get_settings().jwt_algorithm


def create_access_token(
    subject: str,
    scopes: list[str] | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a new JWT access token.

    Args:
        subject: Family user id
        scopes: List of permission scopes
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=get_settings().jwt_expiry_minutes)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
        "scopes": scopes or [],
    }
    return jwt.encode(payload, get_secret_key(), algorithm=get_algorithm())


def decode_token(token: str) -> TokenPayload:
    """Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            get_secret_key(),
            algorithms=[get_algorithm()],
        )
        return TokenPayload(**payload)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(security_required),
) -> AuthenticatedUser:
    """Dependency to get the current authenticated family member."""
    payload = decode_token(credentials.credentials)
    return AuthenticatedUser(id=payload.sub, scopes=payload.scopes, token_type=payload.type)


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Security(security),
) -> AuthenticatedUser | None:
    """Dependency for endpoints open to both family members and devices.

    Returns None if no bearer token is provided.
    """
    if credentials is None:
        return None

    payload = decode_token(credentials.credentials)
    return AuthenticatedUser(id=payload.sub, scopes=payload.scopes, token_type=payload.type)
