"""Call session repository.

State changes go through ``compare_and_set``: the UPDATE only matches
while the row is still in the state the caller last observed.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.db.models.calls import CallSessionModel
from callpanion.db.repositories.base import BaseRepository


class CallSessionRepository(BaseRepository[CallSessionModel]):
    """Repository for call session database operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(CallSessionModel, session)

    async def compare_and_set(
        self,
        session_id: UUID,
        expected_state: str,
        values: dict[str, Any],
    ) -> int:
        """Update the session only if it is still in ``expected_state``.

        Returns:
            1 on success, 0 if the state moved on or the row is missing
        """
        return await self.conditional_update(
            [
                CallSessionModel.id == session_id,
                CallSessionModel.state == expected_state,
            ],
            values,
        )

    async def set_conversation_id(
        self,
        session_id: UUID,
        provider_conversation_id: str,
    ) -> int:
        """Attach the provider conversation id if none is set yet."""
        return await self.conditional_update(
            [
                CallSessionModel.id == session_id,
                CallSessionModel.provider_conversation_id.is_(None),
            ],
            {"provider_conversation_id": provider_conversation_id},
        )

    async def count_open_for_household(
        self,
        household_id: UUID,
        open_states: Sequence[str],
    ) -> int:
        """Count sessions of a household that are not yet terminal."""
        stmt = select(func.count()).select_from(CallSessionModel).where(
            CallSessionModel.household_id == household_id,
            CallSessionModel.state.in_(open_states),
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_by_conversation_id(
        self,
        provider_conversation_id: str,
    ) -> CallSessionModel | None:
        stmt = (
            select(CallSessionModel)
            .where(CallSessionModel.provider_conversation_id == provider_conversation_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_stale(
        self,
        states: Sequence[str],
        changed_before: datetime,
        *,
        trigger: str | None = None,
        limit: int = 200,
    ) -> Sequence[CallSessionModel]:
        """Find sessions whose last state change is older than a cutoff.

        Args:
            states: States to look at
            changed_before: Cutoff for ``state_changed_at``
            trigger: Optional trigger filter (scheduled, ad_hoc)
            limit: Maximum results

        Returns:
            Oldest sessions first
        """
        stmt = select(CallSessionModel).where(
            CallSessionModel.state.in_(states),
            CallSessionModel.state_changed_at < changed_before,
        )
        if trigger is not None:
            stmt = stmt.where(CallSessionModel.trigger == trigger)

        stmt = (
            stmt.order_by(CallSessionModel.state_changed_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
