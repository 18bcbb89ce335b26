"""Push target registration and resolution.

A device is identified by its claimed pairing credential. Registering a
new push token supersedes the device's previous target, and a token that
moves to another device is unbound from the old one, so each token has
exactly one active (household, relative) binding.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.core.clock import Clock, utc_now
from callpanion.core.exceptions import ValidationError
from callpanion.core.logging import get_logger
from callpanion.db.models.pairing import PairingCredentialModel
from callpanion.db.models.push import PushTargetModel
from callpanion.db.repositories.push import PushTargetRepository
from callpanion.integrations.push.base import Platform, PushTarget

log = get_logger(__name__)


def to_push_target(model: PushTargetModel) -> PushTarget:
    """Build the dispatch-time view of a stored registration."""
    return PushTarget(
        id=model.id,
        device_identifier=model.device_identifier,
        platform=Platform(model.platform),
        owner_household_id=model.owner_household_id,
        owner_relative_id=model.owner_relative_id,
        voip_identifier=model.voip_identifier,
        capabilities=dict(model.capabilities or {}),
    )


class PushTargetRegistry:
    """Keeps device push registrations bound to their claimed credential."""

    def __init__(self, session: AsyncSession, *, clock: Clock = utc_now) -> None:
        self._targets = PushTargetRepository(session)
        self._clock = clock

    async def register(
        self,
        credential: PairingCredentialModel,
        *,
        push_token: str,
        platform: str,
        voip_token: str | None = None,
        capabilities: dict[str, Any] | None = None,
    ) -> PushTargetModel:
        """Record a push token for a paired device (caller commits).

        Raises:
            ValidationError: Unknown platform, empty token, or the
                credential was never claimed
        """
        if credential.claimed_at is None:
            raise ValidationError("Device is not paired")

        push_token = (push_token or "").strip()
        if not push_token:
            raise ValidationError("push_token is required")

        try:
            device_platform = Platform((platform or "").lower())
        except ValueError:
            raise ValidationError(
                f"Unsupported platform: {platform}",
                details={"allowed": [p.value for p in Platform]},
            )

        if device_platform != Platform.IOS:
            voip_token = None

        now = self._clock()
        superseded = await self._targets.supersede(
            credential_id=credential.id,
            device_identifier=push_token,
            now=now,
        )

        target = await self._targets.create(
            PushTargetModel(
                device_identifier=push_token,
                platform=device_platform.value,
                voip_identifier=voip_token or None,
                owner_household_id=credential.household_id,
                owner_relative_id=credential.relative_id,
                credential_id=credential.id,
                capabilities=capabilities or {"voip": bool(voip_token)},
                is_active=True,
                registered_at=now,
            )
        )

        log.info(
            "Push target registered",
            target_id=str(target.id),
            platform=device_platform.value,
            household_id=str(credential.household_id),
            relative_id=str(credential.relative_id),
            has_voip_token=bool(voip_token),
            superseded=superseded,
        )
        return target

    async def resolve(self, household_id: UUID, relative_id: UUID) -> PushTarget | None:
        """Current push target for a relative, looked up fresh each time."""
        model = await self._targets.resolve(household_id, relative_id)
        if model is None:
            return None
        return to_push_target(model)
