"""Device pairing endpoints.

A household admin issues a short-lived code and token pair (shown as a
6-digit code and a QR code); the relative's device claims it once.
"""
from typing import Any, Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from callpanion.api.auth import AuthenticatedUser, get_current_user
from callpanion.api.rate_limits import limiter, RateLimits
from callpanion.core.clock import ensure_utc
from callpanion.dependencies import CallerDep, OrchestratorDep


router = APIRouter(prefix="/pairing")


class PairingCodeCreate(BaseModel):
    """Request body for issuing a pairing code."""

    household_id: UUID
    relative_id: UUID


class PairingCodeResponse(BaseModel):
    """Freshly issued pairing credential."""

    id: UUID
    household_id: UUID
    relative_id: UUID
    code: str
    token: str
    expires_at: str


class PairingClaim(BaseModel):
    """Request body sent by the relative's device."""

    code: str = Field(..., max_length=12)
    token: str = Field(..., max_length=256)
    device_info: dict[str, Any] = Field(default_factory=dict)


@router.post("/codes", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.PAIRING)
async def issue_pairing_code(
    request: Request,
    body: PairingCodeCreate,
    user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> PairingCodeResponse:
    """Issue a pairing code for a relative (household admins only)."""
    credential = await orchestrator.issue_pairing(caller, body.household_id, body.relative_id)
    return PairingCodeResponse(
        id=credential.id,
        household_id=credential.household_id,
        relative_id=credential.relative_id,
        code=credential.code,
        token=credential.token,
        expires_at=ensure_utc(credential.expires_at).isoformat(),
    )


@router.post("/claim")
@limiter.limit(RateLimits.PAIRING)
async def claim_pairing_code(
    request: Request,
    body: PairingClaim,
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> dict[str, Any]:
    """Claim a pairing code from the relative's device.

    The device keeps ``token`` and presents it as ``X-Device-Token``
    on every later request.
    """
    result = await orchestrator.claim_device(caller, body.code, body.token, body.device_info)
    return result.to_dict()
