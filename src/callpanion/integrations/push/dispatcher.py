"""Push dispatch.

Routes a notification to the backend serving the target's platform after
checking that the target is still bound to the household and relative
the call was started for.
"""

from __future__ import annotations

from typing import Mapping
from uuid import UUID

from callpanion.core.exceptions import DeliveryError, ForbiddenError
from callpanion.core.logging import get_logger
from callpanion.integrations.push.base import (
    DeliveryResult,
    DeliveryStatus,
    PushBackend,
    PushBackendKind,
    PushNotification,
    PushTarget,
    select_backend,
)

log = get_logger(__name__)


class PushDispatcher:
    """Sends notifications through the configured push backends."""

    def __init__(self, backends: Mapping[PushBackendKind, PushBackend]) -> None:
        self._backends = dict(backends)

    @property
    def backends(self) -> dict[PushBackendKind, PushBackend]:
        return dict(self._backends)

    async def notify(
        self,
        target: PushTarget | None,
        notification: PushNotification,
        *,
        household_id: UUID,
        relative_id: UUID,
    ) -> DeliveryResult:
        """Deliver one notification to a relative's device.

        Returns:
            SKIPPED when no target is on file, otherwise the backend result

        Raises:
            ForbiddenError: Target is bound to another household or relative
            DeliveryError: No backend configured, or the backend failed
        """
        if target is None or not target.device_identifier:
            log.info(
                "Push skipped, no target",
                household_id=str(household_id),
                relative_id=str(relative_id),
            )
            return DeliveryResult(status=DeliveryStatus.SKIPPED)

        if not target.is_bound_to(household_id, relative_id):
            log.warning(
                "Push target binding mismatch",
                target_id=str(target.id),
                household_id=str(household_id),
                relative_id=str(relative_id),
            )
            raise ForbiddenError(
                "Push target is not bound to this relative",
                details={"target_id": str(target.id)},
            )

        kind = select_backend(target.platform)
        backend = self._backends.get(kind)
        if backend is None:
            raise DeliveryError(
                f"Push backend not configured: {kind.value}",
                details={"backend": kind.value},
            )

        try:
            result = await backend.send(target, notification)
        except DeliveryError as e:
            log.error(
                "Push delivery failed",
                backend=kind.value,
                target_id=str(target.id),
                error=e.message,
            )
            raise

        if result.delivered:
            log.info(
                "Push delivered",
                backend=kind.value,
                target_id=str(target.id),
                message_id=result.message_id,
            )
        else:
            log.warning(
                "Push rejected",
                backend=kind.value,
                target_id=str(target.id),
                error=result.error,
            )
        return result

    async def close(self) -> None:
        for backend in self._backends.values():
            await backend.close()
