"""Realtime event model."""
from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import ForeignKey, String
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column

from callpanion.db.base import Base, TimestampMixin, UUIDMixin


class RealtimeEventModel(Base, UUIDMixin, TimestampMixin):
    """Event published on a household channel (call_started, call_ended)."""

    __tablename__ = "realtime_events"

    household_id: Mapped[UUID] = mapped_column(
        ForeignKey("households.id"),
        nullable=False,
        index=True,
    )
    channel: Mapped[str] = mapped_column(String(80), nullable=False)
    event: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "channel": self.channel,
            "event": self.event,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
