"""Household directory models.

Households, their members and the elder relatives being called are
owned by the account service; the orchestrator only reads them to
verify ownership.
"""
from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from callpanion.db.base import Base, TimestampMixin, UUIDMixin


class HouseholdModel(Base, UUIDMixin, TimestampMixin):
    """A family household."""

    __tablename__ = "households"

    name: Mapped[str] = mapped_column(String(255), nullable=False)


class HouseholdMemberModel(Base, UUIDMixin, TimestampMixin):
    """Membership of a family user in a household."""

    __tablename__ = "household_members"

    household_id: Mapped[UUID] = mapped_column(
        ForeignKey("households.id"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Account user id (JWT subject)",
    )
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="member",
        comment="admin or member",
    )

    __table_args__ = (
        Index("ix_household_members_household_user", "household_id", "user_id", unique=True),
    )


class RelativeModel(Base, UUIDMixin, TimestampMixin):
    """Elder profile that receives calls."""

    __tablename__ = "relatives"

    household_id: Mapped[UUID] = mapped_column(
        ForeignKey("households.id"),
        nullable=False,
        index=True,
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    locale: Mapped[str] = mapped_column(String(16), nullable=False, default="en-GB")

    @property
    def display_name(self) -> str:
        """Name the conversational agent greets the relative with."""
        return self.first_name

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary for API responses."""
        return {
            "id": str(self.id),
            "household_id": str(self.household_id),
            "first_name": self.first_name,
            "last_name": self.last_name,
            "locale": self.locale,
        }
