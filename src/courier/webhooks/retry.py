"""Delivery state machine: backoff, re-arming and permanent failure.

States:

    pending --attempt ok--------------------------> success (terminal)
    pending --attempt failed, attempts < max------> pending (re-armed at next_retry_at)
    pending --attempt failed, attempts == max-----> failed  (terminal)
    pending --subscription missing/disabled-------> failed  (terminal, no attempt used)

Every transition is a compare-and-set on (status == "pending",
attempts == attempt_number - 1). If another run of the same delivery
got there first, the transition is dropped and nothing is scheduled.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from courier.models import MAX_ATTEMPTS, utc_now

from .outcome import HttpError, TransportError

if TYPE_CHECKING:
    from courier.models import WebhookDelivery
    from courier.scheduling import Clock, Scheduler
    from courier.storage import WebhookStore

    from .breaker import CircuitBreaker

logger = logging.getLogger(__name__)

# Name under which the delivery executor is registered with the scheduler
PROCESS_DELIVERY_JOB = "webhooks.process_delivery"

# Delay before attempt N+1 after attempt N failed: 1m, 5m, 30m, 2h, 12h
BACKOFF_SCHEDULE_MS: tuple[int, ...] = (60_000, 300_000, 1_800_000, 7_200_000, 43_200_000)


def backoff_ms(attempt_number: int) -> int:
    """Backoff delay after the given (1-based) attempt failed.

    Attempt numbers past the end of the schedule use the last entry.
    """
    index = min(max(attempt_number, 1), len(BACKOFF_SCHEDULE_MS)) - 1
    return BACKOFF_SCHEDULE_MS[index]


def expects_attempt(attempt_number: int) -> Callable[[WebhookDelivery], bool]:
    """Guard: only apply a change if the delivery is still at this attempt."""

    def guard(delivery: WebhookDelivery) -> bool:
        return delivery.status == "pending" and delivery.attempts == attempt_number - 1

    return guard


class RetryScheduler:
    """Owns failure handling for deliveries."""

    def __init__(
        self,
        store: WebhookStore,
        scheduler: Scheduler,
        breaker: CircuitBreaker,
        max_attempts: int = MAX_ATTEMPTS,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._breaker = breaker
        self._max_attempts = max_attempts
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def schedule_attempt(self, delivery_id: str, delay_ms: int = 0) -> None:
        """Schedule the executor for a delivery after `delay_ms`."""
        await self._scheduler.run_after(delay_ms, PROCESS_DELIVERY_JOB, {"delivery_id": delivery_id})

    async def handle_failure(
        self,
        delivery: WebhookDelivery,
        attempt_number: int,
        outcome: HttpError | TransportError,
    ) -> WebhookDelivery | None:
        """Record a failed attempt and either re-arm or permanently fail.

        Args:
            delivery: Delivery as loaded before the attempt.
            attempt_number: 1-based number of the attempt that failed.
            outcome: Why it failed.

        Returns:
            The updated delivery, or None if the transition lost a race.
        """
        response_code = outcome.status_code if isinstance(outcome, HttpError) else None
        response_body = outcome.body if isinstance(outcome, HttpError) else None
        guard = expects_attempt(attempt_number)

        if attempt_number >= self._max_attempts:
            error = f"Max retries exceeded. Last error: {outcome.message}"

            def exhaust(current: WebhookDelivery) -> dict[str, Any] | None:
                if not guard(current):
                    return None
                return {
                    "status": "failed",
                    "attempts": attempt_number,
                    "next_retry_at": None,
                    "error_message": error,
                    "response_code": response_code,
                    "response_body": response_body,
                }

            failed = await self._store.modify_delivery(delivery.id, exhaust)
            if failed is None:
                logger.debug("Delivery %s already advanced; dropping failure", delivery.id)
                return None
            logger.warning(
                "Delivery %s failed permanently after %d attempts: %s",
                delivery.id,
                attempt_number,
                outcome.message,
            )
            await self._breaker.record_failure(delivery.subscription_id)
            return failed

        next_retry_at = self._clock() + timedelta(milliseconds=backoff_ms(attempt_number))

        def rearm(current: WebhookDelivery) -> dict[str, Any] | None:
            if not guard(current):
                return None
            return {
                "attempts": attempt_number,
                "next_retry_at": next_retry_at,
                "error_message": outcome.message,
                "response_code": response_code,
                "response_body": response_body,
            }

        rearmed = await self._store.modify_delivery(delivery.id, rearm)
        if rearmed is None:
            logger.debug("Delivery %s already advanced; not re-arming", delivery.id)
            return None

        await self._scheduler.run_at(
            next_retry_at, PROCESS_DELIVERY_JOB, {"delivery_id": delivery.id}
        )
        logger.info(
            "Delivery %s attempt %d failed (%s); retrying at %s",
            delivery.id,
            attempt_number,
            outcome.message,
            next_retry_at.isoformat(),
        )
        return rearmed

    async def fail_unreachable(self, delivery: WebhookDelivery) -> WebhookDelivery | None:
        """Fail a delivery whose subscription is gone or disabled.

        Consumes no attempt and does not count toward the circuit breaker.
        """

        def close(current: WebhookDelivery) -> dict[str, Any] | None:
            if current.status != "pending":
                return None
            return {
                "status": "failed",
                "next_retry_at": None,
                "error_message": "Subscription not found or disabled",
            }

        return await self._store.modify_delivery(delivery.id, close)

    async def retry_failed(self, subscription_id: str) -> int:
        """Reset every failed delivery of a subscription and attempt it now.

        The subscription's active flag is not consulted here; an inactive
        subscription fails each reset delivery again on its next attempt.

        Returns:
            Number of deliveries reset.
        """
        failed = await self._store.list_deliveries(subscription_id, status="failed")
        retried = 0

        def reset(current: WebhookDelivery) -> dict[str, Any] | None:
            if current.status != "failed":
                return None
            return {
                "status": "pending",
                "attempts": 0,
                "next_retry_at": None,
                "error_message": None,
                "response_code": None,
                "response_body": None,
            }

        for delivery in failed:
            if await self._store.modify_delivery(delivery.id, reset) is None:
                continue
            await self.schedule_attempt(delivery.id)
            retried += 1

        logger.info("Reset %d failed deliveries for subscription %s", retried, subscription_id)
        return retried
