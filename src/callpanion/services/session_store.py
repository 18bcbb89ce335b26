"""Call session store.

Every state change is a compare-and-set on the stored state and is
committed on its own, so an interrupted call flow leaves the session in
the last state it actually reached.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.core.call_state import (
    OPEN_STATES,
    CallOutcome,
    CallTrigger,
    CallType,
    FailureReason,
    SessionState,
    validate_transition,
)
from callpanion.core.clock import Clock, ensure_utc, utc_now
from callpanion.core.exceptions import (
    ActiveSessionExistsError,
    ConcurrentCallLimitError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from callpanion.core.logging import get_logger
from callpanion.db.models.calls import CallSessionModel
from callpanion.db.models.push import PushDeliveryModel
from callpanion.db.repositories.calls import CallSessionRepository
from callpanion.db.repositories.pairing import PairingCredentialRepository
from callpanion.db.repositories.push import PushDeliveryRepository
from callpanion.integrations.push.base import DeliveryResult

log = get_logger(__name__)

DEFAULT_SLOT = "default"
_OPEN_STATE_VALUES = [state.value for state in OPEN_STATES]


def slot_key(relative_id: UUID, slot: str) -> str:
    """Unique key held by a relative's open session in one slot."""
    return f"{relative_id}:{slot}"


class SessionStore:
    """Creates call sessions and moves them through the state machine."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock = utc_now,
        max_concurrent: int = 3,
    ) -> None:
        self._session = session
        self._calls = CallSessionRepository(session)
        self._credentials = PairingCredentialRepository(session)
        self._deliveries = PushDeliveryRepository(session)
        self._clock = clock
        self._max_concurrent = max_concurrent

    async def get(self, session_id: UUID | str) -> CallSessionModel:
        """Load a session as currently stored.

        Raises:
            NotFoundError: Unknown session id
        """
        return await self._calls.get_or_raise(session_id, fresh=True)

    async def get_by_conversation_id(self, conversation_id: str) -> CallSessionModel | None:
        return await self._calls.get_by_conversation_id(conversation_id)

    async def create(
        self,
        household_id: UUID,
        relative_id: UUID,
        *,
        call_type: CallType = CallType.IN_APP,
        trigger: CallTrigger = CallTrigger.AD_HOC,
        slot: str = DEFAULT_SLOT,
        provider: str = "elevenlabs",
        metadata: dict[str, Any] | None = None,
    ) -> CallSessionModel:
        """Create a session in ``created``.

        Raises:
            ValidationError: In-app call for a relative with no paired device
            ConcurrentCallLimitError: Household is at its open-call limit
            ActiveSessionExistsError: Relative already has an open session in the slot
        """
        call_type = CallType(call_type)
        trigger = CallTrigger(trigger)
        slot = (slot or DEFAULT_SLOT).strip()

        if call_type == CallType.IN_APP and not await self._credentials.has_claimed_device(
            household_id, relative_id
        ):
            raise ValidationError("Relative has no paired device")

        open_calls = await self._calls.count_open_for_household(household_id, _OPEN_STATE_VALUES)
        if open_calls >= self._max_concurrent:
            log.warning(
                "Concurrent call limit reached",
                household_id=str(household_id),
                open_calls=open_calls,
            )
            raise ConcurrentCallLimitError(
                "Too many concurrent calls. Please wait before starting another call.",
                details={"limit": self._max_concurrent},
            )

        now = self._clock()
        try:
            call = await self._calls.create(
                CallSessionModel(
                    household_id=household_id,
                    relative_id=relative_id,
                    provider=provider,
                    call_type=call_type.value,
                    trigger=trigger.value,
                    slot=slot,
                    slot_key=slot_key(relative_id, slot),
                    state=SessionState.CREATED.value,
                    state_changed_at=now,
                    created_at=now,
                    metadata_json=metadata,
                )
            )
        except IntegrityError as e:
            await self._calls.rollback()
            raise ActiveSessionExistsError(
                "Relative already has a call in progress",
                details={"relative_id": str(relative_id), "slot": slot},
                cause=e,
            )
        await self._calls.commit()

        log.info(
            "Call session created",
            session_id=str(call.id),
            household_id=str(household_id),
            relative_id=str(relative_id),
            call_type=call_type.value,
            trigger=trigger.value,
        )
        return call

    async def transition(
        self,
        session_id: UUID,
        target: SessionState,
        *,
        expected: SessionState | None = None,
        outcome: CallOutcome | None = None,
        failure_reason: FailureReason | None = None,
        duration_seconds: int | None = None,
        provider_conversation_id: str | None = None,
        summary: dict[str, Any] | None = None,
    ) -> CallSessionModel:
        """Move a session to ``target`` if it is still where we last saw it.

        Args:
            session_id: Session to move
            target: New state
            expected: State the caller observed; defaults to the stored state
            outcome: Required for ``ended``
            failure_reason: Required for ``failed``
            duration_seconds: Talk time for ``ended``; derived from
                ``started_at`` when an answered call reports none
            provider_conversation_id: May accompany the move to ``active``
            summary: Post-call payload to store with the transition

        Raises:
            NotFoundError: Unknown session
            InvalidTransitionError: Illegal edge, or the state changed underneath
        """
        target = SessionState(target)
        current = await self.get(session_id)
        stored = SessionState(current.state)

        if expected is not None and SessionState(expected) != stored:
            raise InvalidTransitionError(
                "Session state changed concurrently",
                details={"expected": SessionState(expected).value, "actual": stored.value},
            )
        validate_transition(stored, target)

        now = self._clock()
        values: dict[str, Any] = {"state": target.value, "state_changed_at": now}

        if target == SessionState.ACTIVE:
            values.update(self._activation_values(current, provider_conversation_id, now))

        if target.is_terminal:
            values.update(
                self._terminal_values(current, target, outcome, failure_reason, duration_seconds, now)
            )

        if summary is not None:
            values["summary"] = summary

        try:
            updated = await self._calls.compare_and_set(session_id, stored.value, values)
        except IntegrityError as e:
            await self._calls.rollback()
            raise InvalidTransitionError(
                "Conversation id already belongs to another session",
                cause=e,
            )

        if updated == 0:
            await self._calls.release()
            log.info(
                "Session transition lost race",
                session_id=str(session_id),
                from_state=stored.value,
                to_state=target.value,
            )
            raise InvalidTransitionError(
                "Session state changed concurrently",
                details={"expected": stored.value, "to_state": target.value},
            )
        await self._calls.commit()

        log.info(
            "Session state changed",
            session_id=str(session_id),
            from_state=stored.value,
            to_state=target.value,
            outcome=values.get("outcome"),
            failure_reason=values.get("failure_reason"),
        )
        return await self.get(session_id)

    def _activation_values(
        self,
        current: CallSessionModel,
        provider_conversation_id: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        values: dict[str, Any] = {}
        existing = current.provider_conversation_id

        if provider_conversation_id and existing and provider_conversation_id != existing:
            raise InvalidTransitionError(
                "Session already has a different conversation id",
                details={"session_id": str(current.id)},
            )
        if not (provider_conversation_id or existing):
            raise InvalidTransitionError(
                "Session cannot become active without a conversation id",
                details={"session_id": str(current.id)},
            )
        if provider_conversation_id and not existing:
            values["provider_conversation_id"] = provider_conversation_id
        if current.started_at is None:
            values["started_at"] = now
        return values

    def _terminal_values(
        self,
        current: CallSessionModel,
        target: SessionState,
        outcome: CallOutcome | None,
        failure_reason: FailureReason | None,
        duration_seconds: int | None,
        now: datetime,
    ) -> dict[str, Any]:
        if target == SessionState.FAILED:
            if failure_reason is None:
                raise ValidationError("failure_reason is required for failed sessions")
            return {
                "slot_key": None,
                "ended_at": now,
                "outcome": CallOutcome.FAILED.value,
                "failure_reason": FailureReason(failure_reason).value,
            }

        if outcome is None:
            raise ValidationError("outcome is required for ended sessions")
        outcome = CallOutcome(outcome)

        if duration_seconds is not None and duration_seconds < 0:
            raise ValidationError("duration_seconds must not be negative")

        if outcome == CallOutcome.ANSWERED and duration_seconds is None:
            if current.started_at is not None:
                elapsed = now - ensure_utc(current.started_at)
                duration_seconds = max(0, int(elapsed.total_seconds()))
            else:
                duration_seconds = 0

        return {
            "slot_key": None,
            "ended_at": now,
            "outcome": outcome.value,
            "duration_seconds": duration_seconds,
        }

    async def attach_conversation(
        self,
        session_id: UUID,
        provider_conversation_id: str,
    ) -> CallSessionModel:
        """Record the provider conversation id once.

        Re-sending the same id is a no-op.

        Raises:
            ValidationError: Empty id
            NotFoundError: Unknown session
            InvalidTransitionError: A different id is already attached, or
                the id belongs to another session
        """
        provider_conversation_id = (provider_conversation_id or "").strip()
        if not provider_conversation_id:
            raise ValidationError("provider_conversation_id is required")

        try:
            updated = await self._calls.set_conversation_id(session_id, provider_conversation_id)
        except IntegrityError as e:
            await self._calls.rollback()
            raise InvalidTransitionError(
                "Conversation id already belongs to another session",
                cause=e,
            )

        if updated:
            await self._calls.commit()
            log.info(
                "Conversation attached",
                session_id=str(session_id),
                provider_conversation_id=provider_conversation_id,
            )
            return await self.get(session_id)

        await self._calls.release()
        current = await self.get(session_id)
        if current.provider_conversation_id != provider_conversation_id:
            raise InvalidTransitionError(
                "Session already has a different conversation id",
                details={"session_id": str(session_id)},
            )
        return current

    async def attach_summary(
        self,
        session_id: UUID,
        summary: dict[str, Any],
    ) -> CallSessionModel:
        """Store a post-call summary; allowed in any state."""
        updated = await self._calls.conditional_update(
            [CallSessionModel.id == session_id],
            {"summary": summary},
        )
        if not updated:
            await self._calls.release()
            raise NotFoundError("Call session not found", details={"id": str(session_id)})
        await self._calls.commit()
        return await self.get(session_id)

    async def record_delivery(
        self,
        session_id: UUID,
        result: DeliveryResult,
        *,
        target_id: UUID | None = None,
    ) -> None:
        """Log a push attempt and mirror its result on the session."""
        await self._deliveries.create(
            PushDeliveryModel(
                session_id=session_id,
                target_id=target_id,
                backend=result.backend,
                status=result.status.value,
                message_id=result.message_id,
                error=(result.error or "")[:255] or None,
            )
        )
        await self._calls.conditional_update(
            [CallSessionModel.id == session_id],
            {
                "push_backend": result.backend,
                "delivery_status": result.status.value,
                "delivery_error": (result.error or "")[:255] or None,
            },
        )
        await self._calls.commit()

    async def deliveries(self, session_id: UUID) -> list[PushDeliveryModel]:
        return await self._deliveries.for_session(session_id)
