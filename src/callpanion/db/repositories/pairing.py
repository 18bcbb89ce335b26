"""Pairing credential repository."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.db.models.pairing import PairingCredentialModel
from callpanion.db.repositories.base import BaseRepository


class PairingCredentialRepository(BaseRepository[PairingCredentialModel]):
    """Repository for pairing credentials.

    ``claim`` is the one place needing mutual exclusion: a single guarded
    UPDATE lets exactly one concurrent claimant win.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(PairingCredentialModel, session)

    async def is_code_live(self, code: str, now: datetime) -> bool:
        """Whether an unclaimed, unexpired credential already uses ``code``."""
        return await self._is_live(PairingCredentialModel.code == code, now)

    async def is_token_live(self, token: str, now: datetime) -> bool:
        """Whether an unclaimed, unexpired credential already uses ``token``."""
        return await self._is_live(PairingCredentialModel.token == token, now)

    async def _is_live(self, condition: Any, now: datetime) -> bool:
        stmt = (
            select(PairingCredentialModel.id)
            .where(
                condition,
                PairingCredentialModel.claimed_at.is_(None),
                PairingCredentialModel.expires_at > now,
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.first() is not None

    async def claim(
        self,
        code: str,
        token: str,
        *,
        now: datetime,
        claimed_by: str,
        device_info: dict[str, Any],
    ) -> PairingCredentialModel | None:
        """Atomically claim the unclaimed, unexpired credential for code + token.

        Returns:
            The claimed credential, or None when nothing matched
        """
        rowcount = await self.conditional_update(
            [
                PairingCredentialModel.code == code,
                PairingCredentialModel.token == token,
                PairingCredentialModel.claimed_at.is_(None),
                PairingCredentialModel.expires_at > now,
            ],
            {
                "claimed_by": claimed_by,
                "claimed_at": now,
                "device_info": device_info,
            },
        )
        if rowcount != 1:
            return None

        stmt = (
            select(PairingCredentialModel)
            .where(
                PairingCredentialModel.code == code,
                PairingCredentialModel.token == token,
                PairingCredentialModel.claimed_at.is_not(None),
            )
            .order_by(PairingCredentialModel.claimed_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def get_claimed_by_token(self, token: str) -> PairingCredentialModel | None:
        """Get the claimed credential a device authenticates with."""
        stmt = (
            select(PairingCredentialModel)
            .where(
                PairingCredentialModel.token == token,
                PairingCredentialModel.claimed_at.is_not(None),
            )
            .order_by(PairingCredentialModel.claimed_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def has_claimed_device(self, household_id: UUID, relative_id: UUID) -> bool:
        """Whether any device has been paired to the relative."""
        stmt = (
            select(PairingCredentialModel.id)
            .where(
                PairingCredentialModel.household_id == household_id,
                PairingCredentialModel.relative_id == relative_id,
                PairingCredentialModel.claimed_at.is_not(None),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.first() is not None
