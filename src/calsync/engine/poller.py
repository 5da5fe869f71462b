"""Background poller that keeps a connected engine in sync."""

from __future__ import annotations

import asyncio
import logging

from calsync.engine.models import SyncOutcome
from calsync.engine.sync import CalendarSyncEngine

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5 * 60


class SyncPoller:
    """Run ``engine.sync_now()`` immediately and then every *interval* seconds.

    Rounds are attempted whenever the engine holds tokens, including after a
    failed round. ``trigger()`` wakes the loop for an immediate round. Errors
    are logged and never end the loop.
    """

    def __init__(
        self,
        engine: CalendarSyncEngine,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"poll interval must be positive, got {interval}")
        self._engine = engine
        self._interval = interval
        self._force_sync_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.rounds = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._engine.attach_poller(self)
        self._task = asyncio.create_task(self._run(), name="calendar-sync-poller")
        logger.info("Calendar sync poller started (interval=%ss)", self._interval)

    def trigger(self) -> None:
        self._force_sync_event.set()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Calendar sync poller stopped")

    async def _run(self) -> None:
        logger.debug("Calendar sync poller loop started (interval=%ss)", self._interval)
        while True:
            if self._engine.is_connected:
                try:
                    result = await self._engine.sync_now()
                    self.rounds += 1
                    if result.outcome == SyncOutcome.error:
                        logger.warning("Calendar sync poll failed: %s", result.error)
                except Exception as exc:
                    logger.error("Calendar sync poller error: %s", exc, exc_info=True)

            # Wait for the interval OR for an immediate-sync request.
            try:
                await asyncio.wait_for(self._force_sync_event.wait(), timeout=self._interval)
                self._force_sync_event.clear()
                logger.debug("Calendar sync poller: immediate sync triggered")
            except TimeoutError:
                pass
