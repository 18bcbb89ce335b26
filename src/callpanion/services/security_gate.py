"""Security gate wrapped around every orchestrator entry point.

Three checks, all evaluated per request:

- Origin allow-list (browser callers; requests without an Origin header
  pass this check and rely on the ownership checks)
- Moving-window rate limit per caller identity, falling back to an
  IP + origin + user-agent fingerprint for anonymous callers
- Ownership: the household, session or device referenced must belong to
  the caller. These are re-queried on every call, never cached.
"""

from __future__ import annotations

import hashlib
import hmac
import math
import time
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlsplit
from uuid import UUID

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import MovingWindowRateLimiter
from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.core.exceptions import (
    ForbiddenError,
    RateLimitedError,
    UnauthorizedError,
)
from callpanion.core.logging import get_logger
from callpanion.db.models.calls import CallSessionModel
from callpanion.db.models.pairing import PairingCredentialModel
from callpanion.db.repositories.households import HouseholdRepository
from callpanion.db.repositories.pairing import PairingCredentialRepository

log = get_logger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class CallerContext:
    """Request metadata the gate decides on."""

    user_id: str | None = None
    device_token: str | None = None
    origin: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    service_key: str | None = None

    @property
    def rate_limit_key(self) -> str:
        """Window key: user id, then device or service credential, then a fingerprint."""
        if self.user_id:
            return f"user:{self.user_id}"
        if self.device_token:
            return "device:" + _digest(self.device_token.strip())
        if self.service_key:
            return "service:" + _digest(self.service_key)
        raw = f"{self.ip or ''}|{self.origin or ''}|{self.user_agent or ''}"
        return "fp:" + _digest(raw)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:32]


def normalize_origin(origin: str) -> str:
    """Reduce an origin or URL to ``scheme://host[:port]``, lowercased."""
    value = origin.strip().lower().rstrip("/")
    parts = urlsplit(value)
    if not parts.scheme or not parts.hostname:
        return value

    try:
        port = parts.port
    except ValueError:
        return value

    result = f"{parts.scheme}://{parts.hostname}"
    if port is not None and port != _DEFAULT_PORTS.get(parts.scheme):
        result += f":{port}"
    return result


class SecurityGate:
    """Origin, rate-limit and ownership checks.

    Args:
        allowed_origins: Origin allow-list; empty allows every origin
        rate_limit: Requests allowed per window and key
        window_seconds: Window length
        storage: limits storage backend (in-memory by default)
        service_key: Shared key identifying the call scheduler; empty
            disables service callers
    """

    def __init__(
        self,
        allowed_origins: Iterable[str] = (),
        *,
        rate_limit: int = 20,
        window_seconds: int = 300,
        storage: Storage | None = None,
        service_key: str = "",
    ) -> None:
        self.allowed_origins = frozenset(
            normalize_origin(origin) for origin in allowed_origins if origin.strip()
        )
        self._item = RateLimitItemPerSecond(rate_limit, window_seconds)
        self._limiter = MovingWindowRateLimiter(storage or MemoryStorage())
        self._service_key = service_key

    # ========================================================================
    # Request Checks
    # ========================================================================

    def check_origin(self, origin: str | None) -> None:
        """Reject origins outside the allow-list.

        Raises:
            ForbiddenError: Origin present, allow-list configured, no match
        """
        if not self.allowed_origins or not origin:
            return
        if normalize_origin(origin) not in self.allowed_origins:
            log.warning("Origin rejected", origin=origin)
            raise ForbiddenError("Origin not allowed")

    def check_rate_limit(self, caller: CallerContext, action: str) -> None:
        """Count one request for ``action`` against the caller's window.

        Raises:
            RateLimitedError: Window exhausted; carries ``retry_after`` seconds
        """
        key = caller.rate_limit_key
        if self._limiter.hit(self._item, "callpanion", action, key):
            return

        stats = self._limiter.get_window_stats(self._item, "callpanion", action, key)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        log.warning("Rate limit exceeded", action=action, key=key, retry_after=retry_after)
        raise RateLimitedError(
            "Too many requests",
            retry_after=retry_after,
            details={"action": action},
        )

    def admit(self, caller: CallerContext, action: str) -> None:
        """Origin check followed by the rate limit."""
        self.check_origin(caller.origin)
        self.check_rate_limit(caller, action)

    def reset(self) -> None:
        """Clear all rate-limit windows."""
        self._limiter.storage.reset()

    # ========================================================================
    # Ownership Checks
    # ========================================================================

    async def require_member(
        self,
        session: AsyncSession,
        caller: CallerContext,
        household_id: UUID,
    ) -> str:
        """Caller must be a member of the household; returns the user id."""
        if not caller.user_id:
            raise UnauthorizedError("Authentication required")
        if not await HouseholdRepository(session).is_member(household_id, caller.user_id):
            log.warning(
                "Household access denied",
                household_id=str(household_id),
                user_id=caller.user_id,
            )
            raise ForbiddenError("Not a member of this household")
        return caller.user_id

    def is_service(self, caller: CallerContext) -> bool:
        """Whether the caller presented the scheduler's service key."""
        if not self._service_key or not caller.service_key:
            return False
        return hmac.compare_digest(caller.service_key.encode(), self._service_key.encode())

    async def require_household_access(
        self,
        session: AsyncSession,
        caller: CallerContext,
        household_id: UUID,
    ) -> str:
        """Household member, or the trusted call scheduler.

        Returns:
            The member's user id, or ``"service"``

        Raises:
            UnauthorizedError: A service key was presented but does not match
        """
        if caller.service_key and not caller.user_id:
            if not self.is_service(caller):
                log.warning("Invalid service key presented", ip=caller.ip)
                raise UnauthorizedError("Invalid service credentials")
            return "service"
        return await self.require_member(session, caller, household_id)

    async def require_admin(
        self,
        session: AsyncSession,
        caller: CallerContext,
        household_id: UUID,
    ) -> str:
        """Caller must be an admin of the household; returns the user id."""
        if not caller.user_id:
            raise UnauthorizedError("Authentication required")
        if not await HouseholdRepository(session).is_admin(household_id, caller.user_id):
            log.warning(
                "Household admin access denied",
                household_id=str(household_id),
                user_id=caller.user_id,
            )
            raise ForbiddenError("Household admin rights required")
        return caller.user_id

    async def require_device(
        self,
        session: AsyncSession,
        caller: CallerContext,
    ) -> PairingCredentialModel:
        """Caller must present the token of a claimed pairing credential."""
        if not caller.device_token:
            raise UnauthorizedError("Device token required")
        credential = await PairingCredentialRepository(session).get_claimed_by_token(
            caller.device_token.strip()
        )
        if credential is None:
            log.warning("Unknown device token presented", ip=caller.ip)
            raise ForbiddenError("Device is not paired")
        return credential

    async def require_session_access(
        self,
        session: AsyncSession,
        caller: CallerContext,
        call: CallSessionModel,
    ) -> str:
        """Family member of the session's household, or its paired device.

        Returns:
            ``"family"`` or ``"device"``
        """
        if caller.user_id:
            if await HouseholdRepository(session).is_member(call.household_id, caller.user_id):
                return "family"
            if not caller.device_token:
                raise ForbiddenError("Not a member of this household")

        if caller.device_token:
            credential = await self.require_device(session, caller)
            if (
                credential.household_id == call.household_id
                and credential.relative_id == call.relative_id
            ):
                return "device"
            log.warning(
                "Device access to foreign session denied",
                session_id=str(call.id),
                credential_id=str(credential.id),
            )
            raise ForbiddenError("Device is not bound to this call")

        raise UnauthorizedError("Authentication required")
