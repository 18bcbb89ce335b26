"""Pairing credential model."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column

from callpanion.db.base import Base, TimestampMixin, UUIDMixin


class PairingCredentialModel(Base, UUIDMixin, TimestampMixin):
    """One-time code + token pair that binds a device to a relative.

    Rows are never deleted; claimed and expired credentials stay as the
    audit trail of which device joined which household.
    """

    __tablename__ = "pairing_credentials"

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
    code: Mapped[str] = mapped_column(
        String(6),
        nullable=False,
        comment="6-digit code entered on the device",
    )
    token: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Opaque token carried in the QR code",
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    device_info: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_pairing_credentials_code_token", "code", "token"),
        Index("ix_pairing_credentials_token", "token"),
    )

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at is not None

    def to_dict(self, *, include_secrets: bool = False) -> dict[str, Any]:
        """Convert model to dictionary for API responses."""
        result: dict[str, Any] = {
            "id": str(self.id),
            "household_id": str(self.household_id),
            "relative_id": str(self.relative_id),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "claimed": self.is_claimed,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
        }
        if include_secrets:
            result["code"] = self.code
            result["token"] = self.token
        return result
