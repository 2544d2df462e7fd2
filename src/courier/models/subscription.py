"""Webhook subscription models.

A subscription is a registered external endpoint plus the events it
listens to and the secret used to sign deliveries to it.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from .base import generate_id, utc_now
from .events import EventType


class WebhookSubscription(BaseModel):
    """Stored webhook subscription.

    This is the internal record and carries the signing secret. It is
    only handed to the delivery executor; every read exposed to callers
    goes through `to_view()`.

    Attributes:
        id: Unique identifier for this subscription.
        name: Human-readable name.
        url: Endpoint that receives POSTed events.
        secret: Shared secret for HMAC-SHA256 signatures.
        events: Catalog events this subscription listens to (non-empty).
        active: Whether deliveries are attempted.
        failure_count: Consecutive permanently-failed deliveries.
        last_triggered_at: When an event last fanned out to this subscription.
        created_at: When the subscription was registered.
        updated_at: When the subscription was last modified.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    name: str = Field(min_length=1, description="Human-readable name")
    url: HttpUrl = Field(description="Endpoint to receive events")
    secret: str = Field(repr=False, description="Shared secret for HMAC-SHA256 signatures")
    events: list[EventType] = Field(min_length=1, description="Subscribed event types")
    active: bool = Field(default=True, description="Whether deliveries are attempted")
    failure_count: int = Field(default=0, ge=0, description="Consecutive permanent failures")
    last_triggered_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this subscription is active and listens to the event."""
        return self.active and event_type in self.events

    def to_view(self, recent_stats: "DeliveryStats | None" = None) -> "SubscriptionView":
        """Public projection without the secret."""
        return SubscriptionView(
            **self.model_dump(exclude={"secret"}),
            recent_stats=recent_stats,
        )


class DeliveryStats(BaseModel):
    """Outcome counts over a subscription's most recent deliveries."""

    total: int = 0
    success: int = 0
    failed: int = 0


class SubscriptionView(BaseModel):
    """Subscription as returned by list/get. Never contains the secret."""

    id: str
    name: str
    url: HttpUrl
    events: list[EventType]
    active: bool
    failure_count: int
    last_triggered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    recent_stats: DeliveryStats | None = None


class SubscriptionCreated(BaseModel):
    """Result of creating a subscription. The only place the secret is shown."""

    id: str
    secret: str


__all__ = [
    "DeliveryStats",
    "SubscriptionCreated",
    "SubscriptionView",
    "WebhookSubscription",
]
