"""Call orchestration.

Sequences pairing, session creation, conversation-token issuance, push
dispatch and outcome reporting. Every public operation passes the
security gate first; every state change goes through the session store's
compare-and-set, so racing callbacks resolve to exactly one winner.

Flow of ``start_call``:

    created -> credential_requested -> dispatched        (push attempted)
                                    -> failed             (token request failed)

A push failure is recorded on the session but never fails it: the
relative's app may already be open and pick the call up anyway.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.config import Settings
from callpanion.core.call_state import (
    OPEN_STATES,
    CallOutcome,
    CallTrigger,
    CallType,
    FailureReason,
    SessionState,
    failure_category,
    normalize_outcome,
)
from callpanion.core.clock import Clock, utc_now
from callpanion.core.exceptions import (
    DeliveryError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from callpanion.core.logging import get_logger
from callpanion.db.models.calls import CallSessionModel
from callpanion.db.models.household import RelativeModel
from callpanion.db.models.pairing import PairingCredentialModel
from callpanion.db.models.push import PushTargetModel
from callpanion.db.repositories.calls import CallSessionRepository
from callpanion.db.repositories.households import HouseholdRepository
from callpanion.integrations.conversation.base import (
    ConversationBroker,
    ConversationContext,
    ConversationCredential,
)
from callpanion.integrations.push.base import (
    DeliveryResult,
    DeliveryStatus,
    PushNotification,
    PushTarget,
    select_backend,
)
from callpanion.integrations.push.dispatcher import PushDispatcher
from callpanion.services.credential_ledger import ClaimResult, CredentialLedger
from callpanion.services.push_targets import PushTargetRegistry
from callpanion.services.realtime import CALL_ENDED, CALL_STARTED, RealtimeHub
from callpanion.services.security_gate import CallerContext, SecurityGate
from callpanion.services.session_store import DEFAULT_SLOT, SessionStore

log = get_logger(__name__)

_AWAITING_CONNECT = (
    SessionState.CREDENTIAL_REQUESTED,
    SessionState.DISPATCHED,
    SessionState.RINGING,
)


def session_view(call: CallSessionModel) -> dict[str, Any]:
    """Family- and device-facing view of a session.

    Failed sessions expose only a generic category, never provider errors.
    """
    view = call.to_dict()
    view["failure_category"] = failure_category(call.failure_reason)
    return view


@dataclass
class StartCallResult:
    """What ``start_call`` reached."""

    session: CallSessionModel
    credential: ConversationCredential | None = None
    delivery: DeliveryResult | None = None

    def to_dict(self, *, include_token: bool = False) -> dict[str, Any]:
        conversation = None
        if self.credential:
            conversation = self.credential.to_dict()
            if not include_token:
                conversation.pop("token")
        return {
            "session": session_view(self.session),
            "conversation": conversation,
            "delivery": self.delivery.to_dict() if self.delivery else None,
        }


@dataclass
class ReconcileReport:
    """Counts from one reconciliation pass."""

    missed: int = 0
    timed_out: int = 0
    finalized: int = 0
    conflicts: int = 0
    provider_errors: int = 0
    session_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.missed + self.timed_out + self.finalized

    def to_dict(self) -> dict[str, Any]:
        return {
            "missed": self.missed,
            "timed_out": self.timed_out,
            "finalized": self.finalized,
            "conflicts": self.conflicts,
            "provider_errors": self.provider_errors,
        }


@dataclass(frozen=True)
class _StaleSession:
    """Plain copy of a reconciliation candidate, independent of ORM state."""

    id: UUID
    state: SessionState
    provider_conversation_id: str | None

    @classmethod
    def of(cls, call: CallSessionModel) -> _StaleSession:
        return cls(call.id, SessionState(call.state), call.provider_conversation_id)


class CallOrchestrator:
    """Facade over ledger, session store, broker and dispatcher.

    One instance works on one database session; the gate, broker,
    dispatcher and hub are process-wide and shared.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings,
        gate: SecurityGate,
        broker: ConversationBroker,
        dispatcher: PushDispatcher,
        hub: RealtimeHub,
        clock: Clock = utc_now,
    ) -> None:
        self._db = session
        self._settings = settings
        self._gate = gate
        self._broker = broker
        self._dispatcher = dispatcher
        self._hub = hub
        self._clock = clock

        self._households = HouseholdRepository(session)
        self._calls = CallSessionRepository(session)
        self._targets = PushTargetRegistry(session, clock=clock)
        self._ledger = CredentialLedger(
            session,
            ttl_seconds=settings.pairing_ttl_seconds,
            clock=clock,
            push_targets=self._targets,
        )
        self._store = SessionStore(
            session,
            clock=clock,
            max_concurrent=settings.max_concurrent_calls_per_household,
        )

    @property
    def store(self) -> SessionStore:
        return self._store

    # ========================================================================
    # Pairing and Devices
    # ========================================================================

    async def issue_pairing(
        self,
        caller: CallerContext,
        household_id: UUID,
        relative_id: UUID,
    ) -> PairingCredentialModel:
        """Issue a pairing code for a relative (household admins only)."""
        self._gate.admit(caller, "pairing.issue")
        user_id = await self._gate.require_member(self._db, caller, household_id)
        return await self._ledger.issue(household_id, relative_id, user_id)

    async def claim_device(
        self,
        caller: CallerContext,
        code: str,
        token: str,
        device_info: dict[str, Any] | None = None,
    ) -> ClaimResult:
        """Claim a pairing credential from the relative's device."""
        self._gate.admit(caller, "pairing.claim")
        return await self._ledger.claim(
            code,
            token,
            device_info,
            claimed_by=caller.user_id,
            claim_ip=caller.ip,
        )

    async def register_push_target(
        self,
        caller: CallerContext,
        push_token: str,
        platform: str,
        voip_token: str | None = None,
        capabilities: dict[str, Any] | None = None,
    ) -> PushTargetModel:
        """(Re)register the calling device's push token."""
        self._gate.admit(caller, "devices.register")
        credential = await self._gate.require_device(self._db, caller)
        target = await self._targets.register(
            credential,
            push_token=push_token,
            platform=platform,
            voip_token=voip_token,
            capabilities=capabilities,
        )
        await self._db.commit()
        return target

    async def resolve_push_target(self, household_id: UUID, relative_id: UUID) -> PushTarget | None:
        return await self._targets.resolve(household_id, relative_id)

    # ========================================================================
    # Starting Calls
    # ========================================================================

    async def start_call(
        self,
        caller: CallerContext,
        household_id: UUID,
        relative_id: UUID,
        call_type: CallType = CallType.IN_APP,
        *,
        trigger: CallTrigger = CallTrigger.AD_HOC,
        slot: str = DEFAULT_SLOT,
    ) -> StartCallResult:
        """Start a call to a relative.

        Raises:
            UnauthorizedError: Neither a family member nor the scheduler
            ForbiddenError: Origin, rate limit or household membership
            NotFoundError: Relative not in the household
            ActiveSessionExistsError: Relative already has an open call in the slot
            ConcurrentCallLimitError: Household at its open-call limit
        """
        self._gate.admit(caller, "calls.start")
        requested_by = await self._gate.require_household_access(self._db, caller, household_id)
        relative = await self._require_relative(household_id, relative_id)

        call_type = CallType(call_type)
        call = await self._store.create(
            household_id,
            relative_id,
            call_type=call_type,
            trigger=CallTrigger(trigger),
            slot=slot,
            provider=self._broker.provider,
            metadata={"requested_by": requested_by},
        )
        call = await self._store.transition(
            call.id,
            SessionState.CREDENTIAL_REQUESTED,
            expected=SessionState.CREATED,
        )

        try:
            credential = await self._broker.request_token(self._context(call, relative))
        except UpstreamError as e:
            log.error(
                "Conversation credential failed",
                session_id=str(call.id),
                error_code=e.error_code,
            )
            call = await self._store.transition(
                call.id,
                SessionState.FAILED,
                expected=SessionState.CREDENTIAL_REQUESTED,
                failure_reason=FailureReason.CREDENTIAL_ISSUANCE,
            )
            await self._emit_ended(call)
            return StartCallResult(session=call)

        if credential.provider_conversation_id:
            call = await self._store.attach_conversation(call.id, credential.provider_conversation_id)

        delivery = None
        if call_type == CallType.IN_APP:
            call, delivery = await self._dispatch(call, relative)

        await self._hub.emit(
            self._db,
            household_id,
            CALL_STARTED,
            {
                "session_id": str(call.id),
                "relative_id": str(relative_id),
                "relative_name": relative.display_name,
                "call_type": call_type.value,
                "state": call.state,
                "delivery_status": call.delivery_status,
            },
        )
        return StartCallResult(session=call, credential=credential, delivery=delivery)

    async def _dispatch(
        self,
        call: CallSessionModel,
        relative: RelativeModel,
    ) -> tuple[CallSessionModel, DeliveryResult]:
        """Wake the relative's device; failures are recorded, not raised."""
        target = await self._targets.resolve(call.household_id, call.relative_id)
        notification = PushNotification(
            title="Incoming Call",
            body=f"Your family is ready to talk with you, {relative.display_name}!",
            data={
                "type": "incoming_call",
                "session_id": str(call.id),
                "relative_name": relative.display_name,
                "call_type": call.call_type,
                "handle": "CallPanion",
            },
        )

        if target is not None:
            # The push is handed over from here on, whatever the gateway answers
            call = await self._store.transition(
                call.id,
                SessionState.DISPATCHED,
                expected=SessionState.CREDENTIAL_REQUESTED,
            )

        try:
            result = await self._dispatcher.notify(
                target,
                notification,
                household_id=call.household_id,
                relative_id=call.relative_id,
            )
        except (DeliveryError, ForbiddenError) as e:
            result = DeliveryResult(
                status=DeliveryStatus.ERROR,
                backend=select_backend(target.platform).value if target else None,
                error=e.error_code,
            )
            log.warning(
                "Push dispatch failed, session continues",
                session_id=str(call.id),
                error_code=e.error_code,
            )

        await self._store.record_delivery(
            call.id,
            result,
            target_id=target.id if target else None,
        )
        return await self._store.get(call.id), result

    async def fetch_conversation_credential(
        self,
        caller: CallerContext,
        session_id: UUID,
    ) -> ConversationCredential:
        """Fresh conversation token for the paired device of an open call.

        Raises:
            InvalidTransitionError: Session is terminal
            UpstreamError: Provider failed
        """
        self._gate.admit(caller, "calls.credential")
        call = await self._store.get(session_id)
        credential = await self._gate.require_device(self._db, caller)
        if (credential.household_id, credential.relative_id) != (call.household_id, call.relative_id):
            raise ForbiddenError("Device is not bound to this call")
        if SessionState(call.state).is_terminal:
            raise InvalidTransitionError(
                "Call has already finished",
                details={"state": call.state},
            )

        relative = await self._require_relative(call.household_id, call.relative_id)
        return await self._broker.request_token(self._context(call, relative))

    # ========================================================================
    # Session Callbacks
    # ========================================================================

    async def acknowledge_ringing(self, caller: CallerContext, session_id: UUID) -> CallSessionModel:
        """Device reports that it is ringing."""
        call = await self._authorize_session(caller, session_id, "calls.ringing")
        if call.state == SessionState.RINGING.value:
            return call
        return await self._store.transition(
            call.id,
            SessionState.RINGING,
            expected=SessionState(call.state),
        )

    async def attach_conversation(
        self,
        caller: CallerContext,
        session_id: UUID,
        provider_conversation_id: str,
    ) -> CallSessionModel:
        """Client reports the provider conversation id after connecting."""
        call = await self._authorize_session(caller, session_id, "calls.conversation")
        state = SessionState(call.state)

        if state in _AWAITING_CONNECT:
            return await self._store.transition(
                call.id,
                SessionState.ACTIVE,
                expected=state,
                provider_conversation_id=provider_conversation_id,
            )
        if state == SessionState.CREATED:
            raise InvalidTransitionError(
                "Call has not requested a conversation yet",
                details={"state": state.value},
            )
        return await self._store.attach_conversation(call.id, provider_conversation_id)

    async def report_outcome(
        self,
        caller: CallerContext,
        session_id: UUID,
        outcome: CallOutcome | str,
        duration_seconds: int | None = None,
        summary: dict[str, Any] | None = None,
    ) -> CallSessionModel:
        """Finalize a session with the outcome reported by device or family.

        Raises:
            ValidationError: Unknown outcome
            InvalidTransitionError: Session already terminal or changed underneath
        """
        call = await self._authorize_session(caller, session_id, "calls.outcome")
        try:
            outcome = CallOutcome(outcome)
        except ValueError:
            raise ValidationError(
                f"Unknown outcome: {outcome}",
                details={"allowed": [o.value for o in CallOutcome]},
            )

        call = await self._store.transition(
            call.id,
            SessionState.ENDED,
            expected=SessionState(call.state),
            outcome=outcome,
            duration_seconds=duration_seconds,
            summary=summary,
        )
        await self._emit_ended(call)
        return call

    async def get_session(self, caller: CallerContext, session_id: UUID) -> dict[str, Any]:
        """Read a session (family member or its paired device)."""
        call = await self._authorize_session(caller, session_id, "calls.read")
        return session_view(call)

    async def handle_provider_callback(self, payload: dict[str, Any]) -> CallSessionModel | None:
        """Apply a verified post-call webhook from the conversation provider.

        Open sessions end with the normalized outcome; terminal sessions
        only get the late summary attached.

        Returns:
            The session, or None when the event matches no session
        """
        data = payload.get("data") or {}
        conversation_id = data.get("conversation_id")
        metadata = data.get("metadata") or {}
        analysis = data.get("analysis") or {}

        call = await self._find_callback_session(data, conversation_id)
        if call is None:
            log.info(
                "Provider callback matched no session",
                provider_conversation_id=conversation_id,
            )
            return None

        summary = {
            "summary": data.get("summary") or analysis.get("transcript_summary"),
            "call_successful": analysis.get("call_successful"),
            "data_collection": analysis.get("data_collection_results") or {},
            "evaluation": analysis.get("evaluation_criteria_results") or {},
        }

        session_id, state = call.id, SessionState(call.state)
        if state.is_terminal:
            return await self._store.attach_summary(session_id, summary)

        duration = metadata.get("call_duration_secs")
        outcome = normalize_outcome(data.get("status"))
        try:
            call = await self._store.transition(
                session_id,
                SessionState.ENDED,
                expected=state,
                outcome=outcome,
                duration_seconds=int(duration) if duration is not None else None,
                summary=summary,
            )
        except InvalidTransitionError:
            # A client report or the reconciler finalized it first
            return await self._store.attach_summary(session_id, summary)

        await self._emit_ended(call)
        return call

    async def _find_callback_session(
        self,
        data: dict[str, Any],
        conversation_id: str | None,
    ) -> CallSessionModel | None:
        if conversation_id:
            call = await self._store.get_by_conversation_id(conversation_id)
            if call is not None:
                return call

        client_data = data.get("conversation_initiation_client_data") or {}
        variables = client_data.get("dynamic_variables") or {}
        session_id = variables.get("session_id")
        if not session_id:
            return None

        call = await self._calls.get(session_id, fresh=True)
        if call is not None and conversation_id and call.provider_conversation_id is None:
            call = await self._store.attach_conversation(call.id, conversation_id)
        return call

    # ========================================================================
    # Reconciliation
    # ========================================================================

    async def reconcile(self, now: datetime | None = None) -> ReconcileReport:
        """Force-finalize sessions that nobody reported on.

        1. Scheduled calls still waiting on a credential after
           ``scheduled_missed_after_seconds`` end as missed.
        2. Any other open session untouched for ``session_timeout_seconds``
           is finalized from the provider's record when it has one,
           otherwise failed with reason ``timeout``.

        Candidates are snapshotted up front; a session that a client report
        finalizes mid-pass is skipped and counted as a conflict.
        """
        now = now or self._clock()
        report = ReconcileReport()

        scheduled = await self._calls.find_stale(
            [SessionState.CREATED.value, SessionState.CREDENTIAL_REQUESTED.value],
            now - timedelta(seconds=self._settings.scheduled_missed_after_seconds),
            trigger=CallTrigger.SCHEDULED.value,
        )
        for candidate in [_StaleSession.of(call) for call in scheduled]:
            ended = await self._try_finalize(
                candidate,
                report,
                SessionState.ENDED,
                outcome=CallOutcome.MISSED,
            )
            if ended is not None:
                report.missed += 1

        stale = await self._calls.find_stale(
            [state.value for state in OPEN_STATES],
            now - timedelta(seconds=self._settings.session_timeout_seconds),
        )
        handled = set(report.session_ids)
        for candidate in [_StaleSession.of(call) for call in stale]:
            if str(candidate.id) in handled:
                continue
            await self._reconcile_stale(candidate, report)

        if report.total or report.conflicts:
            log.info("Reconciliation pass finished", **report.to_dict())
        return report

    async def _reconcile_stale(self, candidate: _StaleSession, report: ReconcileReport) -> None:
        status = None
        if candidate.provider_conversation_id:
            try:
                status = await self._broker.get_conversation_status(candidate.provider_conversation_id)
            except UpstreamError as e:
                report.provider_errors += 1
                log.warning(
                    "Provider status poll failed",
                    session_id=str(candidate.id),
                    error_code=e.error_code,
                )

        if status is not None and status.is_finished:
            ended = await self._try_finalize(
                candidate,
                report,
                SessionState.ENDED,
                outcome=normalize_outcome(status.status),
                duration_seconds=status.duration_seconds,
                summary=status.summary,
            )
            if ended is not None:
                report.finalized += 1
            return

        failed = await self._try_finalize(
            candidate,
            report,
            SessionState.FAILED,
            failure_reason=FailureReason.TIMEOUT,
        )
        if failed is not None:
            report.timed_out += 1

    async def _try_finalize(
        self,
        candidate: _StaleSession,
        report: ReconcileReport,
        target: SessionState,
        **fields: Any,
    ) -> CallSessionModel | None:
        try:
            finalized = await self._store.transition(
                candidate.id,
                target,
                expected=candidate.state,
                **fields,
            )
        except InvalidTransitionError:
            report.conflicts += 1
            return None

        report.session_ids.append(str(candidate.id))
        await self._emit_ended(finalized)
        return finalized

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _authorize_session(
        self,
        caller: CallerContext,
        session_id: UUID,
        action: str,
    ) -> CallSessionModel:
        self._gate.admit(caller, action)
        call = await self._store.get(session_id)
        await self._gate.require_session_access(self._db, caller, call)
        return call

    async def _require_relative(self, household_id: UUID, relative_id: UUID) -> RelativeModel:
        relative = await self._households.get_relative(household_id, relative_id)
        if relative is None:
            raise NotFoundError("Relative not found", details={"relative_id": str(relative_id)})
        return relative

    def _context(self, call: CallSessionModel, relative: RelativeModel) -> ConversationContext:
        return ConversationContext(
            session_id=call.id,
            household_id=call.household_id,
            relative_id=call.relative_id,
            relative_name=relative.display_name,
            locale=relative.locale,
        )

    async def _emit_ended(self, call: CallSessionModel) -> None:
        await self._hub.emit(
            self._db,
            call.household_id,
            CALL_ENDED,
            {
                "session_id": str(call.id),
                "relative_id": str(call.relative_id),
                "state": call.state,
                "outcome": call.outcome,
                "duration_seconds": call.duration_seconds,
                "failure_category": failure_category(call.failure_reason),
            },
        )
