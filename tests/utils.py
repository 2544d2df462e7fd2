"""Shared helpers for delivery engine tests."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from courier.scheduling import PollingScheduler

T0 = datetime(2026, 1, 15, 9, 30, tzinfo=UTC)


class FakeClock:
    """Controllable clock. Call it to read the time."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, ms: int = 0) -> datetime:
        self.now += timedelta(seconds=seconds, milliseconds=ms)
        return self.now


class Receiver:
    """Webhook endpoint stand-in for httpx.MockTransport.

    Answers with queued status codes (then `default_status`), or raises
    `error` for every request when set.
    """

    def __init__(self, default_status: int = 200, body: str = "ok") -> None:
        self.default_status = default_status
        self.body = body
        self.error: Exception | None = None
        self.requests: list[httpx.Request] = []
        self._queued: list[int] = []

    def respond_with(self, *statuses: int) -> None:
        self._queued.extend(statuses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status = self._queued.pop(0) if self._queued else self.default_status
        return httpx.Response(status, text=self.body)

    @property
    def last_envelope(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def run_until_idle(scheduler: PollingScheduler, clock: FakeClock, max_rounds: int = 100) -> int:
    """Jump the clock to each queued job in turn and run it.

    Returns:
        Number of jobs executed.
    """
    executed = 0
    for _ in range(max_rounds):
        due = scheduler.next_due()
        if due is None:
            return executed
        if due > clock.now:
            clock.now = due
        executed += await scheduler.run_due()
    raise AssertionError("scheduler did not go idle")
