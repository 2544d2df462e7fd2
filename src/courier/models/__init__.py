"""Data models for Courier.

Models:
    - WebhookSubscription: Registered endpoint, events and signing secret
    - SubscriptionView: Secret-free projection returned by reads
    - WebhookDelivery: One event to one subscription, with retry history

Event catalog:
    - EventType / EVENT_TYPES / ALL_EVENT_TYPES: closed set of domain events
    - TEST_EVENT: synthetic event used by the manual test trigger
"""

from .base import generate_id, to_epoch_ms, utc_now
from .delivery import (
    MAX_ATTEMPTS,
    RESPONSE_BODY_LIMIT,
    TERMINAL_STATUSES,
    DeliveryPage,
    DeliveryStatus,
    WebhookDelivery,
)
from .events import (
    ALL_EVENT_TYPES,
    EVENT_TYPES,
    TEST_EVENT,
    EventType,
    get_event_types,
    is_catalog_event,
)
from .subscription import (
    DeliveryStats,
    SubscriptionCreated,
    SubscriptionView,
    WebhookSubscription,
)

__all__ = [
    # Helpers
    "generate_id",
    "to_epoch_ms",
    "utc_now",
    # Events
    "ALL_EVENT_TYPES",
    "EVENT_TYPES",
    "EventType",
    "TEST_EVENT",
    "get_event_types",
    "is_catalog_event",
    # Subscriptions
    "DeliveryStats",
    "SubscriptionCreated",
    "SubscriptionView",
    "WebhookSubscription",
    # Deliveries
    "MAX_ATTEMPTS",
    "RESPONSE_BODY_LIMIT",
    "TERMINAL_STATUSES",
    "DeliveryPage",
    "DeliveryStatus",
    "WebhookDelivery",
]
