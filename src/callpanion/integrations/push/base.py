"""Base Push Backend Interface.

Defines the provider-agnostic push interface. Each gateway (FCM, APNs)
implements ``PushBackend``; ``select_backend`` maps a device platform to
the backend that serves it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import json
from typing import Any
from uuid import UUID


class Platform(str, Enum):
    """Device platforms that can register for push."""

    ANDROID = "android"
    IOS = "ios"


class PushBackendKind(str, Enum):
    """Available push gateways."""

    FCM = "fcm"
    APNS = "apns"


class DeliveryStatus(str, Enum):
    """Outcome of a push attempt."""

    DELIVERED = "delivered"  # Accepted by the gateway
    REJECTED = "rejected"  # Gateway refused the device token
    SKIPPED = "skipped"  # No target on file
    ERROR = "error"  # Transport or auth failure (DeliveryError)


_BACKEND_FOR_PLATFORM: dict[Platform, PushBackendKind] = {
    Platform.ANDROID: PushBackendKind.FCM,
    Platform.IOS: PushBackendKind.APNS,
}


def stringify_data(data: dict[str, Any]) -> dict[str, str]:
    """Coerce a data map to string values (FCM data maps are string-typed)."""
    result: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, bool):
            result[str(key)] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            result[str(key)] = json.dumps(value, separators=(",", ":"), default=str)
        else:
            result[str(key)] = str(value)
    return result


def select_backend(platform: Platform | str) -> PushBackendKind:
    """Map a device platform to the backend that delivers to it."""
    return _BACKEND_FOR_PLATFORM[Platform(platform)]


@dataclass(frozen=True)
class PushTarget:
    """A device binding resolved at dispatch time."""

    id: UUID
    device_identifier: str
    platform: Platform
    owner_household_id: UUID
    owner_relative_id: UUID
    voip_identifier: str | None = None
    capabilities: dict[str, Any] = field(default_factory=dict)

    @property
    def supports_voip(self) -> bool:
        """PushKit token on file and VoIP not switched off in capabilities."""
        return bool(self.voip_identifier) and self.capabilities.get("voip", True) is not False

    def is_bound_to(self, household_id: UUID, relative_id: UUID) -> bool:
        return (
            self.owner_household_id == household_id
            and self.owner_relative_id == relative_id
        )


@dataclass
class PushNotification:
    """Notification to send to one device."""

    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    call_wake: bool = True  # Incoming-call wake: highest priority, no queuing


@dataclass
class DeliveryResult:
    """Result of a push attempt."""

    status: DeliveryStatus
    backend: str | None = None
    message_id: str | None = None
    error: str | None = None
    sent_at: datetime | None = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "backend": self.backend,
            "message_id": self.message_id,
            "error": self.error,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }


class PushBackend(ABC):
    """Abstract base class for push gateways."""

    kind: PushBackendKind

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    async def send(self, target: PushTarget, notification: PushNotification) -> DeliveryResult:
        """Send one notification.

        Returns:
            DELIVERED or REJECTED result

        Raises:
            DeliveryError: Network, auth or gateway failure
        """

    async def close(self) -> None:
        """Release HTTP resources."""
