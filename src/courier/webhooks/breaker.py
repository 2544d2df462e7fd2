"""Circuit breaker for chronically failing subscriptions.

Counts consecutive *permanently* failed deliveries per subscription (a
delivery that exhausted its attempts), not individual HTTP attempts.
Reaching the threshold deactivates the subscription; any successful
delivery resets the count. Both updates are single atomic patches on the
subscription record, so concurrently finishing deliveries cannot lose
an increment.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from courier.models import utc_now

if TYPE_CHECKING:
    from courier.models import WebhookSubscription
    from courier.scheduling import Clock
    from courier.storage import WebhookStore

logger = logging.getLogger(__name__)

# Consecutive permanent failures before a subscription is auto-disabled
FAILURE_THRESHOLD = 10


class CircuitBreaker:
    """Tracks permanent failures and disables subscriptions past the threshold."""

    def __init__(
        self,
        store: WebhookStore,
        threshold: int = FAILURE_THRESHOLD,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._threshold = threshold
        self._clock = clock

    @property
    def threshold(self) -> int:
        return self._threshold

    async def record_failure(self, subscription_id: str) -> WebhookSubscription | None:
        """Count one permanently failed delivery.

        Returns:
            The updated subscription, or None if it no longer exists.
        """
        threshold = self._threshold
        now = self._clock()
        tripped = False

        def increment(sub: WebhookSubscription) -> dict[str, Any]:
            nonlocal tripped
            count = sub.failure_count + 1
            changes: dict[str, Any] = {"failure_count": count}
            if count >= threshold and sub.active:
                changes["active"] = False
                changes["updated_at"] = now
                tripped = True
            return changes

        updated = await self._store.modify_subscription(subscription_id, increment)
        if updated is None:
            logger.debug("Failure recorded for missing subscription %s", subscription_id)
            return None

        if tripped:
            logger.warning(
                "Subscription %s disabled after %d consecutive failed deliveries",
                subscription_id,
                updated.failure_count,
            )
        return updated

    async def record_success(self, subscription_id: str) -> None:
        """Reset the consecutive failure count after a successful delivery."""

        def reset(sub: WebhookSubscription) -> dict[str, Any] | None:
            if sub.failure_count == 0:
                return None
            return {"failure_count": 0}

        await self._store.modify_subscription(subscription_id, reset)
