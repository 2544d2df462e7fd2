"""Event fan-out.

Turns one domain event into one pending delivery per matching active
subscription. Rows are persisted first and jobs scheduled second; if the
process dies in between, the recovery sweep finds the pending rows.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from courier.exceptions import CourierError
from courier.models import WebhookDelivery, is_catalog_event, utc_now

if TYPE_CHECKING:
    from courier.models import WebhookSubscription
    from courier.scheduling import Clock
    from courier.storage import WebhookStore

    from .retry import RetryScheduler

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Creates deliveries for domain events and schedules their first attempt."""

    def __init__(
        self,
        store: WebhookStore,
        retry_scheduler: RetryScheduler,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._retry = retry_scheduler
        self._clock = clock

    async def enqueue_event(self, event_type: str, payload: dict[str, Any]) -> int:
        """Fan an event out to every active subscription listening to it.

        Never raises for delivery problems and never waits for an attempt.

        Args:
            event_type: Catalog event name, e.g. "deal.won".
            payload: Event data. Snapshotted per delivery.

        Returns:
            Number of deliveries created (0 if nobody listens).
        """
        if not is_catalog_event(event_type):
            logger.warning("Event %s is not in the catalog; no subscription can match", event_type)
            return 0

        subscriptions = [
            sub
            for sub in await self._store.list_subscriptions(active=True)
            if sub.subscribes_to(event_type)
        ]
        if not subscriptions:
            logger.debug("No active subscriptions for %s", event_type)
            return 0

        created: list[WebhookDelivery] = []
        for sub in subscriptions:
            delivery = await self.create_delivery(sub, event_type, payload)
            if delivery is not None:
                created.append(delivery)

        for delivery in created:
            await self.schedule_first_attempt(delivery)

        logger.info("Enqueued %s to %d subscriptions", event_type, len(created))
        return len(created)

    async def create_delivery(
        self,
        subscription: WebhookSubscription,
        event_type: str,
        payload: dict[str, Any],
        touch: bool = True,
    ) -> WebhookDelivery | None:
        """Persist one pending delivery for a subscription.

        Returns None when the subscription was deleted after it was read;
        nothing is written in that case.

        Args:
            subscription: Receiving subscription.
            event_type: Event name stored on the delivery.
            payload: Event data, deep-copied into the delivery.
            touch: Update the subscription's last_triggered_at.
        """
        now = self._clock()
        delivery = WebhookDelivery(
            subscription_id=subscription.id,
            event=event_type,
            payload=copy.deepcopy(payload),
            created_at=now,
        )
        if await self._store.insert_owned_delivery(delivery) is None:
            logger.debug("Subscription %s deleted during fan-out; skipped", subscription.id)
            return None
        if touch:
            await self._store.modify_subscription(
                subscription.id, lambda _sub: {"last_triggered_at": now}
            )
        logger.debug("Created delivery %s for %s", delivery.id, subscription.id)
        return delivery

    async def schedule_first_attempt(self, delivery: WebhookDelivery) -> bool:
        """Schedule an immediate attempt.

        A scheduling failure leaves the delivery pending for the recovery
        sweep instead of failing the producer.
        """
        try:
            await self._retry.schedule_attempt(delivery.id)
        except CourierError as e:
            logger.error(
                "Could not schedule delivery %s (left pending for recovery): %s",
                delivery.id,
                e.message,
            )
            return False
        return True
