"""Webhook delivery models.

A delivery is one logical notification of one event to one subscription,
together with its retry history.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utc_now

DeliveryStatus = Literal["pending", "success", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"success", "failed"})

# Maximum HTTP attempts per delivery before it is permanently failed
MAX_ATTEMPTS = 5

# Response bodies are truncated to this many characters before storage
RESPONSE_BODY_LIMIT = 1000


class WebhookDelivery(BaseModel):
    """Record of one event being delivered to one subscription.

    `payload` is a snapshot taken at enqueue time; retries resend the
    snapshot, not the current state of the domain object.

    Attributes:
        id: Unique identifier, also sent as `X-Webhook-Delivery-Id`.
        subscription_id: Owning subscription (deleted with it).
        event: Event name (a catalog event, or "test").
        payload: Immutable snapshot of the event data.
        status: pending until success or failed; both are terminal.
        attempts: HTTP attempts made so far (0..MAX_ATTEMPTS).
        next_retry_at: When the next attempt is due while backing off.
        response_code: Status code of the last response, if any.
        response_body: Last response body, truncated.
        error_message: Last error description.
        created_at: When the delivery was enqueued.
        delivered_at: When the delivery succeeded.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    subscription_id: str = Field(description="Owning subscription")
    event: str = Field(description="Event name")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event data snapshot")
    status: DeliveryStatus = Field(default="pending")
    attempts: int = Field(default=0, ge=0, le=MAX_ATTEMPTS)
    next_retry_at: datetime | None = Field(default=None)
    response_code: int | None = Field(default=None)
    response_body: str | None = Field(default=None, max_length=RESPONSE_BODY_LIMIT)
    error_message: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    delivered_at: datetime | None = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        """Whether the delivery reached success or failed."""
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        """Whether a pending delivery may be attempted at `now`."""
        return self.status == "pending" and (
            self.next_retry_at is None or self.next_retry_at <= now
        )


class DeliveryPage(BaseModel):
    """One page of delivery history, newest first."""

    items: list[WebhookDelivery]
    next_cursor: datetime | None = None
    has_more: bool = False


__all__ = [
    "MAX_ATTEMPTS",
    "RESPONSE_BODY_LIMIT",
    "TERMINAL_STATUSES",
    "DeliveryPage",
    "DeliveryStatus",
    "WebhookDelivery",
]
