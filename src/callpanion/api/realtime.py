"""Household event stream for family dashboards.

``call_started`` and ``call_ended`` events are pushed over a WebSocket
per household. Browsers cannot set headers on WebSocket upgrades, so
the family JWT travels in the ``token`` query parameter. Dashboards that
reconnect catch up through ``GET /households/{id}/events``.
"""
import asyncio
from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from callpanion.api.auth import decode_token
from callpanion.api.rate_limits import limiter, RateLimits
from callpanion.core.exceptions import CallPanionError, ForbiddenError
from callpanion.core.logging import get_logger
from callpanion.db.repositories.realtime import RealtimeEventRepository, household_channel
from callpanion.dependencies import (
    CallerDep,
    DatabaseDep,
    HubDep,
    SecurityGateDep,
    SessionFactoryDep,
)
from callpanion.services.security_gate import CallerContext


router = APIRouter()
log = get_logger(__name__)

# Application close codes (4000-4999)
CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403


@router.get("/households/{household_id}/events")
@limiter.limit(RateLimits.READ)
async def recent_events(
    request: Request,
    household_id: UUID,
    caller: CallerDep,
    gate: SecurityGateDep,
    db: DatabaseDep,
    limit: int = Query(50, ge=1, le=200),
) -> dict[str, Any]:
    """Latest events of a household, newest first."""
    gate.check_origin(caller.origin)
    await gate.require_member(db, caller, household_id)
    events = await RealtimeEventRepository(db).recent(household_id, limit=limit)
    return {"events": [event.to_dict() for event in events]}


async def _forward(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        message = await queue.get()
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError):
            log.debug("Realtime send after disconnect", event_name=message.get("event"))
            return


@router.websocket("/ws/households/{household_id}")
async def household_stream(
    websocket: WebSocket,
    household_id: UUID,
    gate: SecurityGateDep,
    hub: HubDep,
    session_factory: SessionFactoryDep,
    token: str | None = Query(None),
) -> None:
    """Stream a household's call events to a family member."""
    try:
        gate.check_origin(websocket.headers.get("origin"))
        if not token:
            await websocket.close(code=CLOSE_UNAUTHORIZED)
            return
        payload = decode_token(token)
        async with session_factory() as db:
            await gate.require_member(db, CallerContext(user_id=payload.sub), household_id)
    except HTTPException:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return
    except ForbiddenError:
        await websocket.close(code=CLOSE_FORBIDDEN)
        return
    except CallPanionError as e:
        log.warning("Realtime subscription refused", error_code=e.error_code)
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    await websocket.accept()
    channel = household_channel(household_id)
    queue = hub.subscribe(channel)
    sender = asyncio.create_task(_forward(websocket, queue))

    try:
        # Inbound frames are keep-alives only
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        log.info("Realtime client disconnected", channel=channel)
    finally:
        hub.unsubscribe(channel, queue)
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
