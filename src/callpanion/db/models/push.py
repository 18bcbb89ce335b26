"""Push target and delivery log models."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column

from callpanion.db.base import Base, TimestampMixin, UUIDMixin


class PushTargetModel(Base, UUIDMixin, TimestampMixin):
    """A device endpoint registered for wake notifications.

    Superseded rows are kept with ``is_active`` cleared.
    """

    __tablename__ = "push_targets"

    device_identifier: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        index=True,
        comment="Opaque push token issued by FCM or APNs",
    )
    platform: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="android or ios",
    )
    voip_identifier: Mapped[str | None] = mapped_column(
        String(512),
        nullable=True,
        comment="PushKit VoIP token (ios only)",
    )
    owner_household_id: Mapped[UUID] = mapped_column(
        ForeignKey("households.id"),
        nullable=False,
    )
    owner_relative_id: Mapped[UUID] = mapped_column(
        ForeignKey("relatives.id"),
        nullable=False,
    )
    credential_id: Mapped[UUID] = mapped_column(
        ForeignKey("pairing_credentials.id"),
        nullable=False,
        index=True,
        comment="Claimed pairing credential identifying the device",
    )
    capabilities: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    superseded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index(
            "ix_push_targets_owner_active",
            "owner_household_id",
            "owner_relative_id",
            "is_active",
        ),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary for API responses (token omitted)."""
        return {
            "id": str(self.id),
            "platform": self.platform,
            "household_id": str(self.owner_household_id),
            "relative_id": str(self.owner_relative_id),
            "has_voip_token": bool(self.voip_identifier),
            "capabilities": self.capabilities or {},
            "is_active": self.is_active,
            "registered_at": self.registered_at.isoformat() if self.registered_at else None,
        }


class PushDeliveryModel(Base, UUIDMixin, TimestampMixin):
    """Log of one push attempt for a call session."""

    __tablename__ = "push_deliveries"

    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("call_sessions.id"),
        nullable=False,
        index=True,
    )
    target_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("push_targets.id"),
        nullable=True,
    )
    backend: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="delivered, rejected, skipped, error",
    )
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(String(255), nullable=True)
