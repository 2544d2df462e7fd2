"""Qdrant storage backend.

Subscriptions and deliveries live in two payload-only collections. Qdrant
requires a vector per point, so each point carries a 1-dimensional
placeholder; nothing here uses similarity search.

Qdrant has no multi-point transactions. Atomic read-modify-write of a
single record is provided by a per-record asyncio lock, which serializes
writers inside one process. Run a single delivery process per collection
prefix, or front it with the polling scheduler on one node.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient, models

from courier.config import settings
from courier.exceptions import StorageError
from courier.models import DeliveryStatus, WebhookDelivery, WebhookSubscription

from .base import DeliveryMutator, SubscriptionMutator, apply_changes, due_time
from .retry import qdrant_retry

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", WebhookSubscription, WebhookDelivery)

SUBSCRIPTIONS = "webhook_subscriptions"
DELIVERIES = "webhook_deliveries"

# Qdrant points need a vector; these collections are filtered, never searched
PLACEHOLDER_VECTOR = [1.0]

KEYWORD_INDEXES = {
    SUBSCRIPTIONS: ["id"],
    DELIVERIES: ["id", "subscription_id", "status"],
}
BOOL_INDEXES = {
    SUBSCRIPTIONS: ["active"],
    DELIVERIES: [],
}


class QdrantWebhookStore:
    """Durable `WebhookStore` backed by Qdrant."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        prefix: str | None = None,
        scroll_limit: int | None = None,
    ) -> None:
        """Initialize storage client settings.

        Args:
            url: Qdrant server URL. Defaults to settings.qdrant_url.
            api_key: Qdrant API key. Defaults to settings.qdrant_api_key.
            prefix: Collection name prefix. Defaults to settings.collection_prefix.
            scroll_limit: Page size for scroll operations.
        """
        self._url = url or settings.qdrant_url
        self._api_key = api_key or settings.qdrant_api_key
        self._prefix = prefix or settings.collection_prefix
        self._scroll_limit = scroll_limit or settings.storage_max_scroll_limit
        self._client: AsyncQdrantClient | None = None
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise StorageError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        """Connect and ensure both collections exist."""
        if self._client is None:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> QdrantWebhookStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _collection_name(self, kind: str) -> str:
        return f"{self._prefix}_{kind}"

    @staticmethod
    def _point_id(record_id: str) -> str:
        """Convert a record ID to a valid Qdrant point ID.

        Qdrant requires point IDs to be UUIDs or unsigned integers, so the
        ID is hashed into a deterministic UUID-format string.
        """
        h = hashlib.sha256(record_id.encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    async def _ensure_collections(self) -> None:
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}

        for kind in (SUBSCRIPTIONS, DELIVERIES):
            name = self._collection_name(kind)
            if name in existing:
                continue
            await self.client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(
                    size=len(PLACEHOLDER_VECTOR),
                    distance=models.Distance.DOT,
                ),
            )
            for field_name in KEYWORD_INDEXES[kind]:
                await self.client.create_payload_index(
                    collection_name=name,
                    field_name=field_name,
                    field_schema=models.PayloadSchemaType.KEYWORD,
                )
            for field_name in BOOL_INDEXES[kind]:
                await self.client.create_payload_index(
                    collection_name=name,
                    field_name=field_name,
                    field_schema=models.PayloadSchemaType.BOOL,
                )
            logger.info("Created collection %s", name)

    # Low-level helpers

    @qdrant_retry
    async def _upsert(self, kind: str, record: BaseModel) -> None:
        await self.client.upsert(
            collection_name=self._collection_name(kind),
            points=[
                models.PointStruct(
                    id=self._point_id(record.id),  # type: ignore[attr-defined]
                    vector=PLACEHOLDER_VECTOR,
                    payload=record.model_dump(mode="json"),
                )
            ],
        )

    @qdrant_retry
    async def _retrieve(self, kind: str, record_id: str, model: type[RecordT]) -> RecordT | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name(kind),
            ids=[self._point_id(record_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        return model.model_validate(results[0].payload)

    @qdrant_retry
    async def _scroll_all(
        self,
        kind: str,
        model: type[RecordT],
        conditions: list[models.Condition],
    ) -> list[RecordT]:
        records: list[RecordT] = []
        offset: Any = None
        while True:
            points, offset = await self.client.scroll(
                collection_name=self._collection_name(kind),
                scroll_filter=models.Filter(must=conditions) if conditions else None,
                limit=self._scroll_limit,
                offset=offset,
                with_payload=True,
            )
            records.extend(model.model_validate(p.payload) for p in points if p.payload)
            if offset is None:
                return records

    @qdrant_retry
    async def _delete_where(self, kind: str, conditions: list[models.Condition]) -> None:
        await self.client.delete(
            collection_name=self._collection_name(kind),
            points_selector=models.FilterSelector(filter=models.Filter(must=conditions)),
        )

    @staticmethod
    def _match(key: str, value: Any) -> models.FieldCondition:
        return models.FieldCondition(key=key, match=models.MatchValue(value=value))

    # Subscriptions

    async def insert_subscription(self, subscription: WebhookSubscription) -> str:
        await self._upsert(SUBSCRIPTIONS, subscription)
        return subscription.id

    async def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        return await self._retrieve(SUBSCRIPTIONS, subscription_id, WebhookSubscription)

    async def list_subscriptions(self, active: bool | None = None) -> list[WebhookSubscription]:
        conditions: list[models.Condition] = []
        if active is not None:
            conditions.append(self._match("active", active))
        subscriptions = await self._scroll_all(SUBSCRIPTIONS, WebhookSubscription, conditions)
        subscriptions.sort(key=lambda s: s.created_at, reverse=True)
        return subscriptions

    async def modify_subscription(
        self,
        subscription_id: str,
        mutate: SubscriptionMutator,
    ) -> WebhookSubscription | None:
        async with self._locks[subscription_id]:
            current = await self.get_subscription(subscription_id)
            if current is None:
                return None
            changes = mutate(current.model_copy(deep=True))
            if changes is None:
                return None
            updated: WebhookSubscription = apply_changes(current, changes)
            await self._upsert(SUBSCRIPTIONS, updated)
            return updated

    async def delete_subscription(self, subscription_id: str) -> bool:
        async with self._locks[subscription_id]:
            existing = await self.get_subscription(subscription_id)
            removed = await self.delete_deliveries_for_subscription(subscription_id)
            if existing is not None:
                await self._delete_where(SUBSCRIPTIONS, [self._match("id", subscription_id)])
        self._locks.pop(subscription_id, None)
        logger.debug("Deleted subscription %s with %d deliveries", subscription_id, removed)
        return existing is not None

    # Deliveries

    async def insert_delivery(self, delivery: WebhookDelivery) -> str:
        await self._upsert(DELIVERIES, delivery)
        return delivery.id

    async def insert_owned_delivery(self, delivery: WebhookDelivery) -> str | None:
        async with self._locks[delivery.subscription_id]:
            if await self.get_subscription(delivery.subscription_id) is None:
                return None
            return await self.insert_delivery(delivery)

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        return await self._retrieve(DELIVERIES, delivery_id, WebhookDelivery)

    async def modify_delivery(
        self,
        delivery_id: str,
        mutate: DeliveryMutator,
    ) -> WebhookDelivery | None:
        async with self._locks[delivery_id]:
            current = await self.get_delivery(delivery_id)
            if current is None:
                return None
            changes = mutate(current.model_copy(deep=True))
            if changes is None:
                return None
            updated: WebhookDelivery = apply_changes(current, changes)
            await self._upsert(DELIVERIES, updated)
            return updated

    async def list_deliveries(
        self,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[WebhookDelivery]:
        conditions: list[models.Condition] = [self._match("subscription_id", subscription_id)]
        if status is not None:
            conditions.append(self._match("status", status))
        deliveries = await self._scroll_all(DELIVERIES, WebhookDelivery, conditions)
        if before is not None:
            deliveries = [d for d in deliveries if d.created_at < before]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[:limit] if limit is not None else deliveries

    async def list_pending_deliveries(
        self,
        due_before: datetime,
        limit: int = 100,
    ) -> list[WebhookDelivery]:
        pending = await self._scroll_all(
            DELIVERIES, WebhookDelivery, [self._match("status", "pending")]
        )
        due = sorted((d for d in pending if due_time(d) <= due_before), key=due_time)
        return due[:limit]

    async def delete_deliveries_for_subscription(self, subscription_id: str) -> int:
        owned = await self._scroll_all(
            DELIVERIES, WebhookDelivery, [self._match("subscription_id", subscription_id)]
        )
        if owned:
            await self._delete_where(DELIVERIES, [self._match("subscription_id", subscription_id)])
        for delivery in owned:
            self._locks.pop(delivery.id, None)
        return len(owned)
