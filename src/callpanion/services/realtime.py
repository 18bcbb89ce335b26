"""Realtime fan-out of call events to family dashboards.

Events are persisted to ``realtime_events`` first, then pushed to every
in-process subscriber of the household channel. Subscribers hold a
bounded queue; a subscriber that falls behind loses its oldest events
rather than slowing down the publisher.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.core.logging import get_logger
from callpanion.db.repositories.realtime import RealtimeEventRepository, household_channel

log = get_logger(__name__)

CALL_STARTED = "call_started"
CALL_ENDED = "call_ended"


class RealtimeHub:
    """Manages subscriber queues per household channel."""

    def __init__(self, *, max_queue: int = 100) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._max_queue = max_queue

    def subscribe(self, channel: str) -> asyncio.Queue[dict[str, Any]]:
        """Register a subscriber and return its queue."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.setdefault(channel, set()).add(queue)
        log.info("Realtime subscriber added", channel=channel, total=len(self._subscribers[channel]))
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        subscribers = self._subscribers.get(channel)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[channel]
        log.info("Realtime subscriber removed", channel=channel)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def publish(self, channel: str, message: dict[str, Any]) -> int:
        """Queue a message for every subscriber of the channel.

        Returns:
            Number of subscribers reached
        """
        subscribers = self._subscribers.get(channel, set())
        for queue in subscribers:
            if queue.full():
                queue.get_nowait()
                log.warning("Realtime subscriber lagging, oldest event dropped", channel=channel)
            queue.put_nowait(message)
        return len(subscribers)

    async def emit(
        self,
        session: AsyncSession,
        household_id: UUID,
        event: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Persist an event on the household channel, then fan it out."""
        record = await RealtimeEventRepository(session).record(household_id, event, payload)
        await session.commit()

        channel = household_channel(household_id)
        message = {
            "id": str(record.id),
            "channel": channel,
            "event": event,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        reached = self.publish(channel, message)
        log.info("Realtime event emitted", channel=channel, event_name=event, subscribers=reached)
        return message


# Singleton instance
_hub: RealtimeHub | None = None


def get_realtime_hub() -> RealtimeHub:
    """Get the process-wide realtime hub."""
    global _hub

    if _hub is None:
        _hub = RealtimeHub()
    return _hub


def reset_realtime_hub() -> None:
    """Reset the realtime hub (for testing)."""
    global _hub
    _hub = None
