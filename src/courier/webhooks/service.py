"""WebhookService: the delivery engine behind one object.

Wires storage, scheduler, registry, dispatcher, executor, retry
scheduler, circuit breaker and recovery sweep, and exposes the
operations the rest of the application calls.

Example:
    ```python
    from courier import WebhookService

    async with WebhookService.create() as webhooks:
        created = await webhooks.create_subscription(
            name="CRM sync",
            url="https://example.com/hooks",
            events=["deal.won"],
        )
        await webhooks.enqueue_event("deal.won", {"id": "d1", "value": 1200})
    ```
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from courier.config import Settings
from courier.exceptions import NotFoundError
from courier.models import (
    TEST_EVENT,
    DeliveryPage,
    SubscriptionCreated,
    SubscriptionView,
    WebhookDelivery,
    get_event_types,
    to_epoch_ms,
    utc_now,
)
from courier.scheduling import create_scheduler
from courier.storage import create_store

from .breaker import CircuitBreaker
from .dispatcher import EventDispatcher
from .executor import DeliveryExecutor
from .registry import DEFAULT_HISTORY_LIMIT, RESOURCE_TYPE, SubscriptionRegistry
from .retry import PROCESS_DELIVERY_JOB, RetryScheduler
from .sweep import RecoverySweeper

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from courier.scheduling import Clock, Scheduler
    from courier.storage import WebhookStore

    from .outcome import AttemptOutcome

logger = logging.getLogger(__name__)

TEST_MESSAGE = "This is a test webhook from your CRM"


class WebhookService:
    """Outbound webhook delivery engine.

    Event producers only call `enqueue_event`, which returns as soon as
    the deliveries are persisted. Administrative operations raise
    `ValidationError` / `NotFoundError`; delivery failures never raise and
    are recorded on the delivery rows instead.
    """

    def __init__(
        self,
        store: WebhookStore,
        scheduler: Scheduler,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the service.

        Args:
            store: Subscription and delivery storage.
            scheduler: Job scheduler. The delivery job is registered on it.
            settings: Tuning for timeouts, concurrency and the sweep.
            client: HTTP client for outbound POSTs. One is created (and
                closed with the service) when None.
            clock: Source of the current time.
        """
        self.settings = settings or Settings()
        self.store = store
        self.scheduler = scheduler
        self._clock = clock
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self.settings.webhook_timeout_seconds,
            follow_redirects=False,
        )

        self.breaker = CircuitBreaker(store, clock=clock)
        self.retry = RetryScheduler(store, scheduler, self.breaker, clock=clock)
        self.registry = SubscriptionRegistry(store, clock=clock)
        self.dispatcher = EventDispatcher(store, self.retry, clock=clock)
        self.executor = DeliveryExecutor(
            store,
            self.retry,
            self.breaker,
            client=self._client,
            timeout_seconds=self.settings.webhook_timeout_seconds,
            max_concurrent=self.settings.webhook_max_concurrent,
            clock=clock,
        )
        self.sweeper = RecoverySweeper(
            store,
            scheduler,
            self.retry,
            grace_seconds=self.settings.sweep_grace_seconds,
            batch_size=self.settings.sweep_batch_size,
            interval_seconds=self.settings.sweep_interval_seconds,
            clock=clock,
        )

        scheduler.register(PROCESS_DELIVERY_JOB, self.executor.process_delivery)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> WebhookService:
        """Create a WebhookService with the backends chosen by settings.

        Example:
            ```python
            # COURIER_STORAGE_BACKEND=qdrant COURIER_SCHEDULER_BACKEND=polling
            async with WebhookService.create() as webhooks:
                ...
            ```
        """
        if settings is None:
            settings = Settings()
        return cls(
            store=create_store(settings),
            scheduler=create_scheduler(settings, clock=clock),
            settings=settings,
            client=client,
            clock=clock,
        )

    async def initialize(self) -> None:
        """Initialize storage."""
        await self.store.initialize()
        logger.info(
            "Webhook service ready (store=%s, scheduler=%s)",
            type(self.store).__name__,
            type(self.scheduler).__name__,
        )

    async def close(self) -> None:
        """Stop background work and release resources."""
        await self.sweeper.stop()
        await self.scheduler.shutdown()
        if self._owns_client:
            await self._client.aclose()
        await self.store.close()

    async def __aenter__(self) -> WebhookService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Event producers

    async def enqueue_event(self, event_type: str, payload: dict[str, Any]) -> int:
        """Fan an event out to matching subscriptions. Returns deliveries created."""
        return await self.dispatcher.enqueue_event(event_type, payload)

    # Administration

    async def create_subscription(
        self,
        name: str,
        url: str,
        events: Sequence[str],
        active: bool = True,
    ) -> SubscriptionCreated:
        return await self.registry.create(name=name, url=url, events=events, active=active)

    async def update_subscription(
        self,
        subscription_id: str,
        name: str | None = None,
        url: str | None = None,
        events: Sequence[str] | None = None,
        active: bool | None = None,
    ) -> SubscriptionView:
        return await self.registry.update(
            subscription_id, name=name, url=url, events=events, active=active
        )

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.registry.delete(subscription_id)

    async def regenerate_secret(self, subscription_id: str) -> SubscriptionCreated:
        return await self.registry.regenerate_secret(subscription_id)

    async def test_webhook(self, subscription_id: str) -> WebhookDelivery:
        """Send a synthetic "test" event to one subscription.

        Goes through the normal attempt/retry pipeline but does not touch
        the subscription's last_triggered_at.

        Raises:
            NotFoundError: Unknown subscription.
        """
        subscription = await self.registry.load(subscription_id)
        payload = {
            "type": TEST_EVENT,
            "message": TEST_MESSAGE,
            "timestamp": to_epoch_ms(self._clock()),
        }
        delivery = await self.dispatcher.create_delivery(
            subscription, TEST_EVENT, payload, touch=False
        )
        if delivery is None:
            raise NotFoundError(RESOURCE_TYPE, subscription_id)
        await self.dispatcher.schedule_first_attempt(delivery)
        logger.info("Queued test delivery %s for %s", delivery.id, subscription_id)
        return delivery

    async def retry_failed_deliveries(self, subscription_id: str) -> int:
        """Reset and re-attempt every failed delivery of a subscription.

        Raises:
            NotFoundError: Unknown subscription.
        """
        await self.registry.load(subscription_id)
        return await self.retry.retry_failed(subscription_id)

    # Reads

    async def list_subscriptions(self, active: bool | None = None) -> list[SubscriptionView]:
        return await self.registry.list_subscriptions(active=active)

    async def get_subscription(self, subscription_id: str) -> SubscriptionView:
        return await self.registry.get(subscription_id)

    async def get_delivery_history(
        self,
        subscription_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        cursor: datetime | None = None,
    ) -> DeliveryPage:
        return await self.registry.get_delivery_history(subscription_id, limit=limit, cursor=cursor)

    async def get_pending_deliveries(self, limit: int = 100) -> list[WebhookDelivery]:
        """Pending deliveries whose next attempt is due now."""
        return await self.store.list_pending_deliveries(self._clock(), limit=limit)

    def get_event_types(self) -> dict[str, str]:
        return get_event_types()

    # Engine

    async def process_delivery(self, delivery_id: str) -> AttemptOutcome | None:
        """Run one attempt for a delivery (the scheduled job)."""
        return await self.executor.process_delivery(delivery_id)

    async def sweep(self) -> int:
        """Reschedule orphaned pending deliveries once."""
        return await self.sweeper.sweep()
