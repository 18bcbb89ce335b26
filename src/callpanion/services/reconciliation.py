"""Periodic reconciliation of stuck call sessions.

Push delivery and client callbacks are both unreliable, so a background
task runs ``CallOrchestrator.reconcile`` on a fixed interval. Each pass
gets its own database session.
"""

from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.core.logging import get_logger
from callpanion.services.orchestrator import CallOrchestrator, ReconcileReport

log = get_logger(__name__)

OrchestratorFactory = Callable[[AsyncSession], CallOrchestrator]
SessionContext = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class ReconciliationScheduler:
    """Runs reconciliation passes in a background task.

    Args:
        orchestrator_factory: Builds an orchestrator for one database session
        session_context: Async context manager factory yielding sessions
        interval_seconds: Pause between passes
    """

    def __init__(
        self,
        orchestrator_factory: OrchestratorFactory,
        session_context: SessionContext,
        *,
        interval_seconds: float = 60.0,
    ) -> None:
        self._factory = orchestrator_factory
        self._session_context = session_context
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None
        self._running = False
        self.passes = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> ReconcileReport:
        """Run a single reconciliation pass."""
        async with self._session_context() as session:
            report = await self._factory(session).reconcile()
        self.passes += 1
        return report

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.error(
                    "Reconciliation pass failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        """Start the background loop."""
        if self._running:
            log.warning("Reconciliation scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        log.info("Reconciliation scheduler started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Stop the background loop and wait for it to exit."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        log.info("Reconciliation scheduler stopped")
