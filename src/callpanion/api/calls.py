"""Call session endpoints.

Family members start calls and read sessions with their bearer token
(the call scheduler starts calls with ``X-Service-Key``);
the paired device reports ringing, the conversation id and the outcome
with ``X-Device-Token``. Either side may report the outcome.
"""
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from callpanion.api.rate_limits import limiter, RateLimits
from callpanion.core.call_state import CallTrigger, CallType, SessionState
from callpanion.dependencies import CallerDep, OrchestratorDep
from callpanion.services.orchestrator import session_view


router = APIRouter(prefix="/calls")


# ============================================================================
# Pydantic Schemas
# ============================================================================

class CallStart(BaseModel):
    """Schema for starting a call."""

    household_id: UUID
    relative_id: UUID
    call_type: CallType = CallType.IN_APP
    trigger: CallTrigger = CallTrigger.AD_HOC
    slot: str = Field(default="default", min_length=1, max_length=40)


class ConversationAttach(BaseModel):
    """Provider conversation id reported by the client after connecting."""

    provider_conversation_id: str = Field(..., min_length=1, max_length=200)


class OutcomeReport(BaseModel):
    """Outcome reported by the device or a family member."""

    outcome: str = Field(..., max_length=20)
    duration_seconds: int | None = Field(None, ge=0, le=86400)  # Max 24 hours
    summary: dict[str, Any] | None = None


# ============================================================================
# Endpoints
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.WRITE)
async def start_call(
    request: Request,
    body: CallStart,
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> Any:
    """Start a call to a relative.

    Returns 502 with the failed session when no conversation credential
    could be obtained.
    """
    result = await orchestrator.start_call(
        caller,
        body.household_id,
        body.relative_id,
        body.call_type,
        trigger=body.trigger,
        slot=body.slot,
    )
    if result.session.state == SessionState.FAILED.value:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=result.to_dict(),
        )
    return result.to_dict()


@router.get("/{session_id}")
@limiter.limit(RateLimits.READ)
async def get_call(
    request: Request,
    session_id: UUID,
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> dict[str, Any]:
    """Get a call session."""
    return await orchestrator.get_session(caller, session_id)


@router.post("/{session_id}/credential")
@limiter.limit(RateLimits.WRITE)
async def fetch_credential(
    request: Request,
    session_id: UUID,
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> dict[str, Any]:
    """Conversation token for the paired device of an open call."""
    credential = await orchestrator.fetch_conversation_credential(caller, session_id)
    return credential.to_dict()


@router.post("/{session_id}/ringing")
@limiter.limit(RateLimits.WRITE)
async def acknowledge_ringing(
    request: Request,
    session_id: UUID,
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> dict[str, Any]:
    """Device acknowledges that the call is ringing."""
    call = await orchestrator.acknowledge_ringing(caller, session_id)
    return session_view(call)


@router.post("/{session_id}/conversation")
@limiter.limit(RateLimits.WRITE)
async def attach_conversation(
    request: Request,
    session_id: UUID,
    body: ConversationAttach,
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> dict[str, Any]:
    """Attach the provider conversation id; the call becomes active."""
    call = await orchestrator.attach_conversation(
        caller, session_id, body.provider_conversation_id
    )
    return session_view(call)


@router.post("/{session_id}/outcome")
@limiter.limit(RateLimits.WRITE)
async def report_outcome(
    request: Request,
    session_id: UUID,
    body: OutcomeReport,
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> dict[str, Any]:
    """Finalize the call with its outcome."""
    call = await orchestrator.report_outcome(
        caller,
        session_id,
        body.outcome,
        duration_seconds=body.duration_seconds,
        summary=body.summary,
    )
    return session_view(call)
