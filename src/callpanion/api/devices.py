"""Paired device endpoints."""
from typing import Any

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field

from callpanion.api.rate_limits import limiter, RateLimits
from callpanion.dependencies import CallerDep, OrchestratorDep


router = APIRouter(prefix="/devices")


class PushTargetRegistration(BaseModel):
    """Push token registration from a paired device."""

    push_token: str = Field(..., min_length=1, max_length=4096)
    platform: str = Field(..., max_length=20, description="ios, android or web")
    voip_token: str | None = Field(None, max_length=4096)
    capabilities: dict[str, Any] = Field(default_factory=dict)


@router.post("/push-target", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.WRITE)
async def register_push_target(
    request: Request,
    body: PushTargetRegistration,
    caller: CallerDep,
    orchestrator: OrchestratorDep,
) -> dict[str, Any]:
    """Register or refresh the calling device's push token."""
    target = await orchestrator.register_push_target(
        caller,
        push_token=body.push_token,
        platform=body.platform,
        voip_token=body.voip_token,
        capabilities=body.capabilities,
    )
    return target.to_dict()
