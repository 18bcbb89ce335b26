"""Push target and delivery log repositories."""
from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.db.models.push import PushDeliveryModel, PushTargetModel
from callpanion.db.repositories.base import BaseRepository


class PushTargetRepository(BaseRepository[PushTargetModel]):
    """Repository for device push registrations."""

    def __init__(self, session: AsyncSession):
        super().__init__(PushTargetModel, session)

    async def supersede(
        self,
        *,
        credential_id: UUID,
        device_identifier: str,
        now: datetime,
    ) -> int:
        """Deactivate the device's current target and any other binding of the token.

        Returns:
            Number of targets superseded
        """
        superseded = await self.conditional_update(
            [
                PushTargetModel.credential_id == credential_id,
                PushTargetModel.is_active.is_(True),
            ],
            {"is_active": False, "superseded_at": now},
        )
        superseded += await self.conditional_update(
            [
                PushTargetModel.device_identifier == device_identifier,
                PushTargetModel.is_active.is_(True),
            ],
            {"is_active": False, "superseded_at": now},
        )
        return superseded

    async def resolve(
        self,
        household_id: UUID,
        relative_id: UUID,
    ) -> PushTargetModel | None:
        """Most recently registered active target for a relative."""
        stmt = (
            select(PushTargetModel)
            .where(
                PushTargetModel.owner_household_id == household_id,
                PushTargetModel.owner_relative_id == relative_id,
                PushTargetModel.is_active.is_(True),
            )
            .order_by(PushTargetModel.registered_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()


class PushDeliveryRepository(BaseRepository[PushDeliveryModel]):
    """Repository for the push attempt log."""

    def __init__(self, session: AsyncSession):
        super().__init__(PushDeliveryModel, session)

    async def for_session(self, session_id: UUID) -> list[PushDeliveryModel]:
        stmt = (
            select(PushDeliveryModel)
            .where(PushDeliveryModel.session_id == session_id)
            .order_by(PushDeliveryModel.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
