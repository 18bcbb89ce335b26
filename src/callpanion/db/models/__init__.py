"""ORM models for CallPanion."""

from callpanion.db.models.household import (
    HouseholdModel,
    HouseholdMemberModel,
    RelativeModel,
)
from callpanion.db.models.pairing import PairingCredentialModel
from callpanion.db.models.calls import CallSessionModel
from callpanion.db.models.push import PushTargetModel, PushDeliveryModel
from callpanion.db.models.realtime import RealtimeEventModel

__all__ = [
    "HouseholdModel",
    "HouseholdMemberModel",
    "RelativeModel",
    "PairingCredentialModel",
    "CallSessionModel",
    "PushTargetModel",
    "PushDeliveryModel",
    "RealtimeEventModel",
]
