"""Call session ORM model."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column

from callpanion.db.base import Base, TimestampMixin, UUIDMixin


class CallSessionModel(Base, UUIDMixin, TimestampMixin):
    """One call attempt from creation to terminal outcome.

    ``slot_key`` holds "{relative_id}:{slot}" while the session is open and
    is cleared on the terminal transition; its unique index is what keeps
    a relative to one open session per slot.
    """

    __tablename__ = "call_sessions"

    household_id: Mapped[UUID] = mapped_column(
        ForeignKey("households.id"),
        nullable=False,
        index=True,
    )
    relative_id: Mapped[UUID] = mapped_column(
        ForeignKey("relatives.id"),
        nullable=False,
        index=True,
    )

    # Classification
    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Conversational-AI provider, e.g. elevenlabs",
    )
    call_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="in_app or telephony",
    )
    trigger: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="ad_hoc",
        comment="scheduled or ad_hoc",
    )
    slot: Mapped[str] = mapped_column(String(32), nullable=False, default="default")
    slot_key: Mapped[str | None] = mapped_column(
        String(80),
        nullable=True,
        unique=True,
    )

    # State machine
    state: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
        comment="created, credential_requested, dispatched, ringing, active, ended, failed",
    )
    state_changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    outcome: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="answered, missed, busy, declined, failed",
    )
    failure_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Provider correlation
    provider_conversation_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
    )
    summary: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Post-call analysis payload",
    )

    # Push dispatch bookkeeping
    push_backend: Mapped[str | None] = mapped_column(String(20), nullable=True)
    delivery_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    delivery_error: Mapped[str | None] = mapped_column(String(255), nullable=True)

    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_call_sessions_state_changed", "state", "state_changed_at"),
        Index("ix_call_sessions_household_state", "household_id", "state"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary for API responses."""
        return {
            "id": str(self.id),
            "household_id": str(self.household_id),
            "relative_id": str(self.relative_id),
            "provider": self.provider,
            "call_type": self.call_type,
            "trigger": self.trigger,
            "slot": self.slot,
            "state": self.state,
            "outcome": self.outcome,
            "failure_reason": self.failure_reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "provider_conversation_id": self.provider_conversation_id,
            "delivery_status": self.delivery_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
