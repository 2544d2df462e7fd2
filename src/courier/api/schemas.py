"""Pydantic schemas for API request/response models.

Subscription reads, the creation result and delivery history pages reuse
the models from `courier.models` directly.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CreateSubscriptionRequest(BaseModel):
    """Request body for registering a webhook subscription.

    URL and event names are validated by the registry so that invalid
    values come back as 400 `validation_error` responses.

    Attributes:
        name: Human-readable name.
        url: http(s) endpoint that receives events.
        events: Catalog event names to subscribe to.
        active: Whether to start delivering immediately.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Human-readable name")
    url: str = Field(description="Endpoint to receive events")
    events: list[str] = Field(description="Subscribed event types")
    active: bool = Field(default=True, description="Start enabled")


class UpdateSubscriptionRequest(BaseModel):
    """Partial update. Omitted fields are left unchanged.

    Setting `active` to true on a disabled subscription resets its
    failure count.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    url: str | None = None
    events: list[str] | None = None
    active: bool | None = None


class EnqueueEventRequest(BaseModel):
    """A domain event to fan out to subscribers."""

    model_config = ConfigDict(extra="forbid")

    event: str = Field(min_length=1, description="Catalog event name, e.g. deal.won")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event data")


class EnqueueEventResponse(BaseModel):
    """Number of deliveries created for the event."""

    delivery_count: int


class WebhookTestResponse(BaseModel):
    """The synthetic delivery queued by a test trigger."""

    delivery_id: str
    event: str
    status: Literal["pending", "success", "failed"]


class RetryFailedResponse(BaseModel):
    """Number of failed deliveries reset to pending."""

    retried: int


class EventTypesResponse(BaseModel):
    """Event catalog: name -> human-readable label."""

    event_types: dict[str, str]


class HealthResponse(BaseModel):
    """Response for health check endpoint.

    Attributes:
        status: Service status (healthy, unhealthy).
        version: API version.
        storage_connected: Whether storage is connected.
    """

    model_config = ConfigDict(extra="forbid")

    status: Literal["healthy", "unhealthy"]
    version: str
    storage_connected: bool
