"""Credential ledger for device pairing.

A family admin issues a pairing credential (6-digit code plus an opaque
QR token); the elder's device claims it once, which binds the device to
the household and relative.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.core.clock import Clock, utc_now
from callpanion.core.exceptions import NotFoundError, ValidationError
from callpanion.core.logging import get_logger
from callpanion.db.models.pairing import PairingCredentialModel
from callpanion.db.repositories.households import HouseholdRepository
from callpanion.db.repositories.pairing import PairingCredentialRepository
from callpanion.services.push_targets import PushTargetRegistry

log = get_logger(__name__)

DEFAULT_PAIRING_TTL_SECONDS = 600
_MAX_GENERATION_ATTEMPTS = 10


@dataclass(frozen=True)
class ClaimResult:
    """What a device learns from a successful claim."""

    credential_id: UUID
    household_id: UUID
    relative_id: UUID
    relative_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "credential_id": str(self.credential_id),
            "household_id": str(self.household_id),
            "relative_id": str(self.relative_id),
            "relative_name": self.relative_name,
        }


def generate_pairing_code() -> str:
    """Cryptographically random 6-digit code (100000-999999)."""
    return str(100000 + secrets.randbelow(900000))


def generate_pairing_token() -> str:
    """High-entropy opaque token for the QR code."""
    return secrets.token_urlsafe(32)


def _validate_code(code: str | None) -> str:
    code = (code or "").strip()
    if len(code) != 6 or not code.isdigit():
        raise ValidationError("Pairing code must be 6 digits")
    return code


def _validate_token(token: str | None) -> str:
    token = (token or "").strip()
    if not token:
        raise ValidationError("Pairing token is required")
    if len(token) > 64:
        raise ValidationError("Pairing token is malformed")
    return token


class CredentialLedger:
    """Issues and consumes pairing credentials.

    Works on one database session; ``claim`` commits so the winning claim
    is durable before the device is told about it.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ttl_seconds: int = DEFAULT_PAIRING_TTL_SECONDS,
        clock: Clock = utc_now,
        push_targets: PushTargetRegistry | None = None,
    ) -> None:
        self._session = session
        self._credentials = PairingCredentialRepository(session)
        self._households = HouseholdRepository(session)
        self._push_targets = push_targets or PushTargetRegistry(session, clock=clock)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def issue(
        self,
        household_id: UUID,
        relative_id: UUID,
        requested_by: str,
    ) -> PairingCredentialModel:
        """Issue a fresh, unclaimed credential for a relative.

        Args:
            household_id: Household the device will join
            relative_id: Elder profile being paired
            requested_by: User id of the family member asking

        Returns:
            Persisted credential (code and token included)

        Raises:
            ValidationError: Caller is not a household admin, or the
                relative is not part of the household
        """
        if not requested_by:
            raise ValidationError("requested_by is required")

        if not await self._households.is_admin(household_id, requested_by):
            log.warning(
                "Pairing issue refused",
                household_id=str(household_id),
                user_id=requested_by,
            )
            raise ValidationError("Only household admins can create pairing codes")

        relative = await self._households.get_relative(household_id, relative_id)
        if relative is None:
            raise ValidationError("Relative does not belong to this household")

        now = self._clock()
        code = await self._unused(generate_pairing_code, self._credentials.is_code_live, now)
        token = await self._unused(generate_pairing_token, self._credentials.is_token_live, now)

        credential = await self._credentials.create(
            PairingCredentialModel(
                household_id=household_id,
                relative_id=relative_id,
                code=code,
                token=token,
                created_by=requested_by,
                created_at=now,
                expires_at=now + self._ttl,
            )
        )
        await self._credentials.commit()

        log.info(
            "Pairing credential issued",
            credential_id=str(credential.id),
            household_id=str(household_id),
            relative_id=str(relative_id),
            expires_at=credential.expires_at.isoformat(),
        )
        return credential

    async def _unused(self, generate, is_live, now) -> str:
        for _ in range(_MAX_GENERATION_ATTEMPTS):
            value = generate()
            if not await is_live(value, now):
                return value
        raise ValidationError("Could not allocate a pairing code, try again")

    async def claim(
        self,
        code: str,
        token: str,
        device_info: dict[str, Any] | None = None,
        *,
        claimed_by: str | None = None,
        claim_ip: str | None = None,
    ) -> ClaimResult:
        """Consume a credential matching both code and token.

        Args:
            code: 6-digit code typed on the device
            token: Token read from the QR code
            device_info: Free-form device metadata; ``push_token``,
                ``platform`` and ``voip_token`` register a push target
            claimed_by: Identifier of the claiming device or user
            claim_ip: Client IP for the audit trail

        Returns:
            Household and relative the device is now bound to

        Raises:
            ValidationError: Malformed code or token
            NotFoundError: No unclaimed, unexpired credential matched
        """
        code = _validate_code(code)
        token = _validate_token(token)
        device_info = dict(device_info or {})
        now = self._clock()

        claimant = claimed_by or str(device_info.get("device_id") or "device")
        recorded_info = {
            **{k: v for k, v in device_info.items() if k not in ("push_token", "voip_token")},
            "claimed_by": claimant,
            "claim_ip": claim_ip,
            "platform": device_info.get("platform"),
            "paired_at": now.isoformat(),
        }

        credential = await self._credentials.claim(
            code,
            token,
            now=now,
            claimed_by=claimant,
            device_info=recorded_info,
        )
        if credential is None:
            await self._credentials.release()
            log.info("Pairing claim rejected", code_suffix=code[-2:])
            raise NotFoundError("Invalid or expired pairing code")

        if device_info.get("push_token") and device_info.get("platform"):
            await self._push_targets.register(
                credential,
                push_token=str(device_info["push_token"]),
                platform=str(device_info["platform"]),
                voip_token=device_info.get("voip_token"),
                capabilities=device_info.get("capabilities"),
            )

        relative = await self._households.get_relative(
            credential.household_id, credential.relative_id
        )
        await self._credentials.commit()

        log.info(
            "Pairing credential claimed",
            credential_id=str(credential.id),
            household_id=str(credential.household_id),
            relative_id=str(credential.relative_id),
        )
        return ClaimResult(
            credential_id=credential.id,
            household_id=credential.household_id,
            relative_id=credential.relative_id,
            relative_name=relative.display_name if relative else None,
        )

    async def resolve_device(self, token: str | None) -> PairingCredentialModel:
        """Resolve a device bearer token to its claimed credential.

        Raises:
            NotFoundError: Token unknown or never claimed
        """
        if not token:
            raise NotFoundError("Device is not paired")
        credential = await self._credentials.get_claimed_by_token(token.strip())
        if credential is None:
            raise NotFoundError("Device is not paired")
        return credential

    async def has_claimed_device(self, household_id: UUID, relative_id: UUID) -> bool:
        return await self._credentials.has_claimed_device(household_id, relative_id)
