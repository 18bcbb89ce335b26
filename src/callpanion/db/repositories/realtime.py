"""Realtime event repository."""
from __future__ import annotations

from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.db.models.realtime import RealtimeEventModel
from callpanion.db.repositories.base import BaseRepository


def household_channel(household_id: UUID) -> str:
    """Channel name for a household's dashboard stream."""
    return f"household:{household_id}"


class RealtimeEventRepository(BaseRepository[RealtimeEventModel]):
    """Persists events published on household channels."""

    def __init__(self, session: AsyncSession):
        super().__init__(RealtimeEventModel, session)

    async def record(
        self,
        household_id: UUID,
        event: str,
        payload: dict[str, Any],
    ) -> RealtimeEventModel:
        return await self.create(
            RealtimeEventModel(
                household_id=household_id,
                channel=household_channel(household_id),
                event=event,
                payload=payload,
            )
        )

    async def recent(
        self,
        household_id: UUID,
        *,
        limit: int = 50,
    ) -> Sequence[RealtimeEventModel]:
        """Latest events of a household, newest first."""
        stmt = (
            select(RealtimeEventModel)
            .where(RealtimeEventModel.household_id == household_id)
            .order_by(RealtimeEventModel.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
