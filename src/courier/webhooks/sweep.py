"""Recovery sweep for pending deliveries that lost their job.

A delivery can be pending with nothing scheduled for it when the process
died between creating the row and scheduling its first attempt, or while
an in-process backoff timer was sleeping. The sweep finds pending rows
that have been due for longer than a grace period and schedules an
immediate attempt for each one the scheduler does not already hold.

Scheduling a delivery twice is harmless: the executor skips anything no
longer pending, and every result is a compare-and-set on the attempt
number.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from courier.models import utc_now

from .retry import PROCESS_DELIVERY_JOB

if TYPE_CHECKING:
    from courier.scheduling import Clock, Scheduler
    from courier.storage import WebhookStore

    from .retry import RetryScheduler

logger = logging.getLogger(__name__)


class RecoverySweeper:
    """Periodically reschedules orphaned pending deliveries."""

    def __init__(
        self,
        store: WebhookStore,
        scheduler: Scheduler,
        retry_scheduler: RetryScheduler,
        grace_seconds: float = 120.0,
        batch_size: int = 100,
        interval_seconds: float = 60.0,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the sweeper.

        Args:
            store: Delivery storage.
            scheduler: Consulted for outstanding jobs.
            retry_scheduler: Schedules the recovered attempts.
            grace_seconds: How long a delivery must have been due before
                it counts as orphaned.
            batch_size: Maximum deliveries rescheduled per sweep.
            interval_seconds: Delay between background sweeps.
            clock: Source of the current time.
        """
        self._store = store
        self._scheduler = scheduler
        self._retry = retry_scheduler
        self._grace = timedelta(seconds=grace_seconds)
        self._batch_size = batch_size
        self._interval = interval_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> int:
        """Run one sweep.

        Returns:
            Number of deliveries rescheduled.
        """
        cutoff = self._clock() - self._grace
        candidates = await self._store.list_pending_deliveries(cutoff, limit=self._batch_size)

        rescheduled = 0
        for delivery in candidates:
            if self._scheduler.is_scheduled(PROCESS_DELIVERY_JOB, {"delivery_id": delivery.id}):
                continue
            await self._retry.schedule_attempt(delivery.id)
            rescheduled += 1

        if rescheduled:
            logger.warning("Recovery sweep rescheduled %d orphaned deliveries", rescheduled)
        else:
            logger.debug("Recovery sweep found nothing to reschedule")
        return rescheduled

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Recovery sweep failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        """Sweep in the background every interval."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="courier-recovery-sweep")
        logger.info("Recovery sweep started (every %gs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Recovery sweep stopped")
