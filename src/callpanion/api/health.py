"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy import text

from callpanion import __version__
from callpanion.api.rate_limits import limiter, RateLimits
from callpanion.config import get_settings
from callpanion.db.session import get_db_context
from callpanion.integrations.conversation.factory import get_conversation_broker
from callpanion.integrations.push.factory import get_push_dispatcher


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    environment: str
    checks: dict[str, Any]


@router.get("/health")
@limiter.limit(RateLimits.HEALTH)
async def health_check(request: Request) -> HealthResponse:
    """Perform health check.

    Components checked:
    - Database: connectivity via SELECT 1
    - Push: configured gateways
    - Conversation: configured provider
    """
    settings = get_settings()
    checks: dict[str, Any] = {}

    try:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = {"status": "ok"}
    except Exception as e:
        checks["database"] = {"status": "error", "message": type(e).__name__}

    backends = sorted(kind.value for kind in get_push_dispatcher().backends)
    checks["push"] = {
        "status": "ok" if backends else "degraded",
        "backends": backends,
    }
    checks["conversation"] = {
        "status": "ok" if settings.conversation.api_key else "degraded",
        "provider": get_conversation_broker().provider,
    }

    if checks["database"]["status"] == "error":
        overall = "unhealthy"
    elif any(check["status"] != "ok" for check in checks.values()):
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        environment=settings.environment,
        checks=checks,
    )
