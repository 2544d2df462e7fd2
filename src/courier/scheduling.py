"""Job scheduling for the delivery engine.

The engine only needs "run this job now" and "run this job at time T".
Jobs are referenced by a registered name plus keyword arguments, never
by closure, so a backend is free to persist them.

Backends:

- **InProcess** (default): one asyncio task per job that sleeps until
  the job is due. Nothing survives a restart; the recovery sweep picks
  up deliveries whose timers were lost.
- **Polling**: a due-time queue drained on a fixed tick (or manually via
  `run_due()`), equivalent to a cron poll over elapsed `next_retry_at`.

Example:
    ```python
    scheduler = InProcessScheduler()
    scheduler.register("webhooks.process_delivery", executor.process_delivery)

    await scheduler.run_after(0, "webhooks.process_delivery", {"delivery_id": "dlv_1"})
    await scheduler.run_at(next_retry_at, "webhooks.process_delivery", {"delivery_id": "dlv_1"})
    ```
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import logging
from abc import abstractmethod
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from courier.exceptions import SchedulingError
from courier.models import utc_now

if TYPE_CHECKING:
    from courier.config import Settings

logger = logging.getLogger(__name__)

JobHandler = Callable[..., Awaitable[Any]]
Clock = Callable[[], datetime]


def job_key(job: str, args: dict[str, Any]) -> str:
    """Stable identity of a job invocation, used for outstanding-job checks."""
    return json.dumps([job, args], sort_keys=True, default=str)


@runtime_checkable
class Scheduler(Protocol):
    """Protocol for job schedulers."""

    @abstractmethod
    def register(self, job: str, handler: JobHandler) -> None:
        """Register the coroutine function that runs `job`."""
        ...

    @abstractmethod
    async def run_after(self, delay_ms: int, job: str, args: dict[str, Any]) -> None:
        """Run `job(**args)` once `delay_ms` milliseconds have passed."""
        ...

    @abstractmethod
    async def run_at(self, when: datetime, job: str, args: dict[str, Any]) -> None:
        """Run `job(**args)` at `when` (immediately if already past)."""
        ...

    @abstractmethod
    def is_scheduled(self, job: str, args: dict[str, Any]) -> bool:
        """Whether an invocation of `job` with `args` is waiting or running."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Stop accepting jobs and drop everything outstanding."""
        ...


class _HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}
        self._closed = False

    def register(self, job: str, handler: JobHandler) -> None:
        self._handlers[job] = handler

    def _resolve(self, job: str) -> JobHandler:
        if self._closed:
            raise SchedulingError(f"Scheduler is shut down; cannot schedule {job}")
        handler = self._handlers.get(job)
        if handler is None:
            raise SchedulingError(f"No handler registered for job: {job}")
        return handler

    @staticmethod
    async def _invoke(job: str, handler: JobHandler, args: dict[str, Any]) -> None:
        try:
            await handler(**args)
        except Exception:
            logger.exception("Scheduled job %s failed (args=%s)", job, args)


class InProcessScheduler(_HandlerRegistry):
    """Runs each job as its own asyncio task.

    A job that raises is logged and dropped; it never affects other jobs.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        super().__init__()
        self._clock = clock
        self._tasks: defaultdict[str, set[asyncio.Task[None]]] = defaultdict(set)

    async def run_after(self, delay_ms: int, job: str, args: dict[str, Any]) -> None:
        self._spawn(max(delay_ms, 0) / 1000, job, args)

    async def run_at(self, when: datetime, job: str, args: dict[str, Any]) -> None:
        delay = (when - self._clock()).total_seconds()
        self._spawn(max(delay, 0.0), job, args)

    def is_scheduled(self, job: str, args: dict[str, Any]) -> bool:
        return any(not task.done() for task in self._tasks.get(job_key(job, args), ()))

    @property
    def outstanding(self) -> int:
        """Number of jobs waiting or running."""
        return sum(1 for tasks in self._tasks.values() for t in tasks if not t.done())

    def _spawn(self, delay_seconds: float, job: str, args: dict[str, Any]) -> None:
        handler = self._resolve(job)
        key = job_key(job, args)
        task = asyncio.create_task(self._run(delay_seconds, job, handler, args), name=key)
        self._tasks[key].add(task)
        task.add_done_callback(lambda t: self._discard(key, t))

    def _discard(self, key: str, task: asyncio.Task[None]) -> None:
        tasks = self._tasks.get(key)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            del self._tasks[key]

    async def _run(
        self,
        delay_seconds: float,
        job: str,
        handler: JobHandler,
        args: dict[str, Any],
    ) -> None:
        if delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        await self._invoke(job, handler, args)

    async def join(self) -> None:
        """Wait until no job is waiting or running."""
        while True:
            pending = [t for tasks in self._tasks.values() for t in tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        tasks = [t for group in self._tasks.values() for t in group]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


@dataclass(order=True)
class _QueuedJob:
    due: datetime
    seq: int
    job: str = field(compare=False)
    args: dict[str, Any] = field(compare=False)


class PollingScheduler(_HandlerRegistry):
    """Queues jobs by due time and runs the due ones on each tick.

    `run_due()` can also be called directly, which makes delivery timing
    fully deterministic when paired with a controllable clock.
    """

    def __init__(self, clock: Clock = utc_now, interval_seconds: float = 1.0) -> None:
        super().__init__()
        self._clock = clock
        self._interval = interval_seconds
        self._queue: list[_QueuedJob] = []
        self._queued: Counter[str] = Counter()
        self._running: Counter[str] = Counter()
        self._seq = itertools.count()
        self._loop_task: asyncio.Task[None] | None = None

    async def run_after(self, delay_ms: int, job: str, args: dict[str, Any]) -> None:
        self._push(self._clock() + timedelta(milliseconds=max(delay_ms, 0)), job, args)

    async def run_at(self, when: datetime, job: str, args: dict[str, Any]) -> None:
        self._push(when, job, args)

    def is_scheduled(self, job: str, args: dict[str, Any]) -> bool:
        key = job_key(job, args)
        return self._queued[key] > 0 or self._running[key] > 0

    def __len__(self) -> int:
        return len(self._queue)

    def next_due(self) -> datetime | None:
        """Due time of the earliest queued job."""
        return self._queue[0].due if self._queue else None

    def _push(self, due: datetime, job: str, args: dict[str, Any]) -> None:
        self._resolve(job)
        heapq.heappush(self._queue, _QueuedJob(due, next(self._seq), job, dict(args)))
        self._queued[job_key(job, args)] += 1

    async def run_due(self, now: datetime | None = None) -> int:
        """Run every job due at `now`, including ones scheduled while draining.

        Returns:
            Number of jobs executed.
        """
        if now is None:
            now = self._clock()
        executed = 0
        while self._queue and self._queue[0].due <= now:
            queued = heapq.heappop(self._queue)
            key = job_key(queued.job, queued.args)
            self._queued[key] -= 1
            if self._queued[key] <= 0:
                del self._queued[key]
            handler = self._resolve(queued.job)
            self._running[key] += 1
            try:
                await self._invoke(queued.job, handler, queued.args)
            finally:
                self._running[key] -= 1
                if self._running[key] <= 0:
                    del self._running[key]
            executed += 1
        return executed

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_due()
            except SchedulingError:
                return
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        """Start draining the queue in the background every tick."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._loop(), name="courier-polling-scheduler")

    async def stop(self) -> None:
        """Stop the background loop, keeping queued jobs."""
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None

    async def shutdown(self) -> None:
        await self.stop()
        self._closed = True
        self._queue.clear()
        self._queued.clear()


def create_scheduler(settings: Settings, clock: Clock = utc_now) -> Scheduler:
    """Create the scheduler selected by `settings.scheduler_backend`."""
    if settings.scheduler_backend == "polling":
        return PollingScheduler(clock=clock, interval_seconds=settings.scheduler_poll_interval_seconds)
    return InProcessScheduler(clock=clock)


__all__ = [
    "Clock",
    "InProcessScheduler",
    "JobHandler",
    "PollingScheduler",
    "Scheduler",
    "create_scheduler",
    "job_key",
]
