"""In-memory storage backend.

Dict-backed implementation of `WebhookStore`. Each record has its own
asyncio lock, so concurrent `modify_*` calls on the same record are
serialized while unrelated records proceed in parallel. Records are
deep-copied on the way in and out, so no caller ever holds a reference
to stored state.

Suitable for development, tests and single-process deployments that can
afford to lose pending deliveries on restart.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime

from courier.models import DeliveryStatus, WebhookDelivery, WebhookSubscription

from .base import DeliveryMutator, SubscriptionMutator, apply_changes, due_time

logger = logging.getLogger(__name__)


class InMemoryWebhookStore:
    """Process-local store for subscriptions and deliveries."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, WebhookSubscription] = {}
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def initialize(self) -> None:
        logger.debug("In-memory webhook store ready")

    async def close(self) -> None:
        self._locks.clear()

    async def insert_subscription(self, subscription: WebhookSubscription) -> str:
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.id

    async def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        subscription = self._subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def list_subscriptions(self, active: bool | None = None) -> list[WebhookSubscription]:
        subscriptions = [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if active is None or s.active == active
        ]
        subscriptions.sort(key=lambda s: s.created_at, reverse=True)
        return subscriptions

    async def modify_subscription(
        self,
        subscription_id: str,
        mutate: SubscriptionMutator,
    ) -> WebhookSubscription | None:
        async with self._locks[subscription_id]:
            current = self._subscriptions.get(subscription_id)
            if current is None:
                return None
            changes = mutate(current.model_copy(deep=True))
            if changes is None:
                return None
            updated: WebhookSubscription = apply_changes(current, changes)
            self._subscriptions[subscription_id] = updated
            return updated.model_copy(deep=True)

    async def delete_subscription(self, subscription_id: str) -> bool:
        async with self._locks[subscription_id]:
            await self.delete_deliveries_for_subscription(subscription_id)
            existed = self._subscriptions.pop(subscription_id, None) is not None
        self._locks.pop(subscription_id, None)
        return existed

    async def insert_delivery(self, delivery: WebhookDelivery) -> str:
        self._deliveries[delivery.id] = delivery.model_copy(deep=True)
        return delivery.id

    async def insert_owned_delivery(self, delivery: WebhookDelivery) -> str | None:
        async with self._locks[delivery.subscription_id]:
            if delivery.subscription_id not in self._subscriptions:
                return None
            return await self.insert_delivery(delivery)

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def modify_delivery(
        self,
        delivery_id: str,
        mutate: DeliveryMutator,
    ) -> WebhookDelivery | None:
        async with self._locks[delivery_id]:
            current = self._deliveries.get(delivery_id)
            if current is None:
                return None
            changes = mutate(current.model_copy(deep=True))
            if changes is None:
                return None
            updated: WebhookDelivery = apply_changes(current, changes)
            self._deliveries[delivery_id] = updated
            return updated.model_copy(deep=True)

    async def list_deliveries(
        self,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[WebhookDelivery]:
        deliveries = [
            d
            for d in self._deliveries.values()
            if d.subscription_id == subscription_id
            and (status is None or d.status == status)
            and (before is None or d.created_at < before)
        ]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        if limit is not None:
            deliveries = deliveries[:limit]
        return [d.model_copy(deep=True) for d in deliveries]

    async def list_pending_deliveries(
        self,
        due_before: datetime,
        limit: int = 100,
    ) -> list[WebhookDelivery]:
        pending = [
            d
            for d in self._deliveries.values()
            if d.status == "pending" and due_time(d) <= due_before
        ]
        pending.sort(key=due_time)
        return [d.model_copy(deep=True) for d in pending[:limit]]

    async def delete_deliveries_for_subscription(self, subscription_id: str) -> int:
        owned = [d.id for d in self._deliveries.values() if d.subscription_id == subscription_id]
        for delivery_id in owned:
            del self._deliveries[delivery_id]
            self._locks.pop(delivery_id, None)
        return len(owned)
