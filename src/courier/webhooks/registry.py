"""Subscription registry: administrative CRUD over webhook subscriptions.

Input is validated before anything is persisted. The signing secret is
returned only by `create` and `regenerate_secret`; every read goes
through `WebhookSubscription.to_view()`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from courier.exceptions import NotFoundError, ValidationError
from courier.models import (
    DeliveryPage,
    DeliveryStats,
    SubscriptionCreated,
    SubscriptionView,
    WebhookSubscription,
    is_catalog_event,
    utc_now,
)

from .signing import generate_secret

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from courier.scheduling import Clock
    from courier.storage import WebhookStore

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "webhook_subscription"

# Deliveries counted by recent_stats
RECENT_STATS_WINDOW = 10

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500

_url_adapter: TypeAdapter[HttpUrl] = TypeAdapter(HttpUrl)


def validate_url(url: str) -> HttpUrl:
    """Parse an http(s) URL or raise ValidationError."""
    try:
        return _url_adapter.validate_python(url)
    except PydanticValidationError as e:
        raise ValidationError("url", f"Invalid URL: {url!r}") from e


def validate_events(events: Sequence[str]) -> list[str]:
    """Check an event list is non-empty and drawn from the catalog.

    Duplicates are dropped, first occurrence wins.
    """
    if not events:
        raise ValidationError("events", "At least one event type is required")
    unknown = [e for e in events if not is_catalog_event(e)]
    if unknown:
        raise ValidationError("events", f"Unknown event types: {', '.join(unknown)}")
    return list(dict.fromkeys(events))


def validate_name(name: str) -> str:
    name = name.strip()
    if not name:
        raise ValidationError("name", "Name must not be empty")
    return name


class SubscriptionRegistry:
    """Create, update, delete and read webhook subscriptions."""

    def __init__(self, store: WebhookStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def create(
        self,
        name: str,
        url: str,
        events: Sequence[str],
        active: bool = True,
    ) -> SubscriptionCreated:
        """Register a new subscription.

        Args:
            name: Human-readable name.
            url: http(s) endpoint.
            events: Catalog event names (non-empty).
            active: Start enabled.

        Returns:
            The new id and its secret. This is the only time the secret
            is shown until it is regenerated.

        Raises:
            ValidationError: Bad name, URL or events. Nothing is stored.
        """
        now = self._clock()
        subscription = WebhookSubscription(
            name=validate_name(name),
            url=validate_url(url),
            secret=generate_secret(),
            events=validate_events(events),  # type: ignore[arg-type]
            active=active,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert_subscription(subscription)
        logger.info("Created subscription %s (%s)", subscription.id, subscription.name)
        return SubscriptionCreated(id=subscription.id, secret=subscription.secret)

    async def update(
        self,
        subscription_id: str,
        name: str | None = None,
        url: str | None = None,
        events: Sequence[str] | None = None,
        active: bool | None = None,
    ) -> SubscriptionView:
        """Apply a partial update.

        Reactivating a disabled subscription resets its failure count.

        Raises:
            ValidationError: A changed field is invalid. Nothing is stored.
            NotFoundError: Unknown subscription.
        """
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = validate_name(name)
        if url is not None:
            changes["url"] = validate_url(url)
        if events is not None:
            changes["events"] = validate_events(events)
        now = self._clock()

        def patch(sub: WebhookSubscription) -> dict[str, Any]:
            update = dict(changes)
            if active is not None:
                update["active"] = active
                if active and not sub.active:
                    update["failure_count"] = 0
            update["updated_at"] = now
            return update

        updated = await self._store.modify_subscription(subscription_id, patch)
        if updated is None:
            raise NotFoundError(RESOURCE_TYPE, subscription_id)
        logger.info("Updated subscription %s", subscription_id)
        return updated.to_view()

    async def regenerate_secret(self, subscription_id: str) -> SubscriptionCreated:
        """Replace the signing secret. The old one stops verifying at once.

        Raises:
            NotFoundError: Unknown subscription.
        """
        secret = generate_secret()
        now = self._clock()
        updated = await self._store.modify_subscription(
            subscription_id, lambda _sub: {"secret": secret, "updated_at": now}
        )
        if updated is None:
            raise NotFoundError(RESOURCE_TYPE, subscription_id)
        logger.info("Regenerated secret for subscription %s", subscription_id)
        return SubscriptionCreated(id=subscription_id, secret=secret)

    async def delete(self, subscription_id: str) -> None:
        """Delete a subscription and every delivery it owns.

        Raises:
            NotFoundError: Unknown subscription.
        """
        if not await self._store.delete_subscription(subscription_id):
            raise NotFoundError(RESOURCE_TYPE, subscription_id)
        logger.info("Deleted subscription %s", subscription_id)

    async def load(self, subscription_id: str) -> WebhookSubscription:
        """Internal record, secret included. Not for API responses."""
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(RESOURCE_TYPE, subscription_id)
        return subscription

    async def get(self, subscription_id: str) -> SubscriptionView:
        subscription = await self.load(subscription_id)
        return subscription.to_view(recent_stats=await self.recent_stats(subscription_id))

    async def list_subscriptions(self, active: bool | None = None) -> list[SubscriptionView]:
        """All subscriptions, newest first, each with recent delivery stats."""
        return [
            sub.to_view(recent_stats=await self.recent_stats(sub.id))
            for sub in await self._store.list_subscriptions(active=active)
        ]

    async def recent_stats(self, subscription_id: str) -> DeliveryStats:
        """Outcome counts over the most recent deliveries."""
        recent = await self._store.list_deliveries(subscription_id, limit=RECENT_STATS_WINDOW)
        return DeliveryStats(
            total=len(recent),
            success=sum(1 for d in recent if d.status == "success"),
            failed=sum(1 for d in recent if d.status == "failed"),
        )

    async def get_delivery_history(
        self,
        subscription_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        cursor: datetime | None = None,
    ) -> DeliveryPage:
        """Page through a subscription's deliveries, newest first.

        Args:
            subscription_id: Owning subscription.
            limit: Page size (1..500).
            cursor: Only deliveries created before this; `next_cursor` of
                the previous page. The first page starts at the newest.

        Raises:
            NotFoundError: Unknown subscription.
            ValidationError: limit out of range.
        """
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ValidationError("limit", f"Must be between 1 and {MAX_HISTORY_LIMIT}")
        await self.load(subscription_id)

        # One extra row tells us whether another page exists
        rows = await self._store.list_deliveries(subscription_id, before=cursor, limit=limit + 1)
        has_more = len(rows) > limit
        items = rows[:limit]
        return DeliveryPage(
            items=items,
            next_cursor=items[-1].created_at if has_more and items else None,
            has_more=has_more,
        )
