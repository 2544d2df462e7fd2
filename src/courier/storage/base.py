"""Storage contract for subscriptions and deliveries.

The delivery engine never reads a record and writes it back in two
steps. Every change to an existing record goes through `modify_*`,
which runs the caller's mutator while holding that record's lock:

    updated = await store.modify_subscription(
        subscription_id,
        lambda sub: {"failure_count": sub.failure_count + 1},
    )

A mutator returns the field changes to apply, or None to leave the
record untouched. Returning None is how compare-and-set guards are
expressed (e.g. "only if still pending").
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from courier.models import DeliveryStatus, WebhookDelivery, WebhookSubscription

SubscriptionMutator = Callable[[WebhookSubscription], dict[str, Any] | None]
DeliveryMutator = Callable[[WebhookDelivery], dict[str, Any] | None]


@runtime_checkable
class WebhookStore(Protocol):
    """Protocol for subscription and delivery persistence."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (connect, create collections)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    # Subscriptions

    @abstractmethod
    async def insert_subscription(self, subscription: WebhookSubscription) -> str:
        """Persist a new subscription and return its ID."""
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        """Get a subscription by ID."""
        ...

    @abstractmethod
    async def list_subscriptions(self, active: bool | None = None) -> list[WebhookSubscription]:
        """List subscriptions, newest first, optionally filtered by active flag."""
        ...

    @abstractmethod
    async def modify_subscription(
        self,
        subscription_id: str,
        mutate: SubscriptionMutator,
    ) -> WebhookSubscription | None:
        """Atomically apply `mutate` to one subscription.

        Returns:
            The updated subscription, or None if it does not exist or the
            mutator declined the change.
        """
        ...

    @abstractmethod
    async def delete_subscription(self, subscription_id: str) -> bool:
        """Delete a subscription and all of its deliveries.

        Returns:
            True if the subscription existed.
        """
        ...

    # Deliveries

    @abstractmethod
    async def insert_delivery(self, delivery: WebhookDelivery) -> str:
        """Persist a new delivery and return its ID."""
        ...

    @abstractmethod
    async def insert_owned_delivery(self, delivery: WebhookDelivery) -> str | None:
        """Persist a new delivery only if its subscription still exists.

        Runs under the subscription's lock, so it either lands before a
        concurrent `delete_subscription` (and is removed by its cascade) or
        sees the subscription gone and writes nothing.

        Returns:
            The delivery ID, or None if the subscription no longer exists.
        """
        ...

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        """Get a delivery by ID."""
        ...

    @abstractmethod
    async def modify_delivery(
        self,
        delivery_id: str,
        mutate: DeliveryMutator,
    ) -> WebhookDelivery | None:
        """Atomically apply `mutate` to one delivery.

        Returns:
            The updated delivery, or None if it does not exist or the
            mutator declined the change.
        """
        ...

    @abstractmethod
    async def list_deliveries(
        self,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[WebhookDelivery]:
        """List a subscription's deliveries, newest first.

        Args:
            subscription_id: Owning subscription.
            status: Optional status filter.
            before: Only deliveries created strictly before this time.
            limit: Maximum deliveries to return (all if None).
        """
        ...

    @abstractmethod
    async def list_pending_deliveries(
        self,
        due_before: datetime,
        limit: int = 100,
    ) -> list[WebhookDelivery]:
        """List pending deliveries that are due at `due_before`.

        A pending delivery is due when its `next_retry_at` is unset (and it
        was created at or before `due_before`) or is at or before
        `due_before`. Ordered by due time, oldest first.
        """
        ...

    @abstractmethod
    async def delete_deliveries_for_subscription(self, subscription_id: str) -> int:
        """Delete every delivery owned by a subscription. Returns the count."""
        ...


def due_time(delivery: WebhookDelivery) -> datetime:
    """When a pending delivery becomes eligible for an attempt."""
    return delivery.next_retry_at or delivery.created_at


def apply_changes(record: Any, changes: dict[str, Any]) -> Any:
    """Return a validated copy of a pydantic record with `changes` applied.

    Validation runs on the merged data, so a mutator can never persist a
    value the model rejects (e.g. attempts above MAX_ATTEMPTS).
    """
    merged = {**record.model_dump(), **changes}
    return type(record).model_validate(merged)
