"""Repositories for CallPanion data access."""

from callpanion.db.repositories.base import BaseRepository
from callpanion.db.repositories.households import HouseholdRepository
from callpanion.db.repositories.pairing import PairingCredentialRepository
from callpanion.db.repositories.calls import CallSessionRepository
from callpanion.db.repositories.push import PushDeliveryRepository, PushTargetRepository
from callpanion.db.repositories.realtime import RealtimeEventRepository, household_channel

__all__ = [
    "BaseRepository",
    "HouseholdRepository",
    "PairingCredentialRepository",
    "CallSessionRepository",
    "PushTargetRepository",
    "PushDeliveryRepository",
    "RealtimeEventRepository",
    "household_channel",
]
