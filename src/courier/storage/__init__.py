"""Storage backends for Courier.

Subscriptions and deliveries are persisted through the `WebhookStore`
protocol. Two backends are provided:

- `InMemoryWebhookStore`: process-local, for development and tests
- `QdrantWebhookStore`: durable, on the Qdrant database

Example:
    ```python
    from courier.storage import create_store

    store = create_store(settings)
    await store.initialize()
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import DeliveryMutator, SubscriptionMutator, WebhookStore
from .memory import InMemoryWebhookStore
from .qdrant import QdrantWebhookStore

if TYPE_CHECKING:
    from courier.config import Settings


def create_store(settings: Settings) -> WebhookStore:
    """Create the storage backend selected by `settings.storage_backend`."""
    if settings.storage_backend == "qdrant":
        return QdrantWebhookStore(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            prefix=settings.collection_prefix,
            scroll_limit=settings.storage_max_scroll_limit,
        )
    return InMemoryWebhookStore()


__all__ = [
    "DeliveryMutator",
    "InMemoryWebhookStore",
    "QdrantWebhookStore",
    "SubscriptionMutator",
    "WebhookStore",
    "create_store",
]
