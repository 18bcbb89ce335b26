"""Household directory lookups used by ownership checks."""
from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.db.models.household import (
    HouseholdMemberModel,
    HouseholdModel,
    RelativeModel,
)
from callpanion.db.repositories.base import BaseRepository


class HouseholdRepository(BaseRepository[HouseholdModel]):
    """Read access to households, members and relatives."""

    def __init__(self, session: AsyncSession):
        super().__init__(HouseholdModel, session)

    async def get_membership(
        self,
        household_id: UUID,
        user_id: str,
    ) -> HouseholdMemberModel | None:
        """Get the membership row for a user, if any."""
        stmt = select(HouseholdMemberModel).where(
            HouseholdMemberModel.household_id == household_id,
            HouseholdMemberModel.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def is_member(self, household_id: UUID, user_id: str) -> bool:
        return await self.get_membership(household_id, user_id) is not None

    async def is_admin(self, household_id: UUID, user_id: str) -> bool:
        membership = await self.get_membership(household_id, user_id)
        return membership is not None and membership.role == "admin"

    async def get_relative(
        self,
        household_id: UUID,
        relative_id: UUID,
    ) -> RelativeModel | None:
        """Get a relative only if it belongs to the given household."""
        stmt = select(RelativeModel).where(
            RelativeModel.id == relative_id,
            RelativeModel.household_id == household_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
