"""Courier: outbound webhooks for the CRM.

Delivers domain events (contacts, companies, deals, activities,
messages) to external endpoints with at-least-once semantics, signed
payloads and automatic retries.

Quick Start:
    from courier import WebhookService

    async with WebhookService.create() as webhooks:
        # Register an endpoint; the secret is only shown here
        created = await webhooks.create_subscription(
            name="Billing sync",
            url="https://billing.example.com/hooks/crm",
            events=["deal.won", "deal.lost"],
        )

        # Called by the CRM after a deal closes
        await webhooks.enqueue_event("deal.won", {"id": "deal_42", "value": 12000})

Delivery lifecycle:
    - pending: waiting for its first attempt or backing off (1m/5m/30m/2h/12h)
    - success: a 2xx response was received
    - failed: 5 attempts failed, or the subscription was gone or disabled
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    CourierError,
    NotFoundError,
    SchedulingError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    delivery_context,
    get_logger,
    logger,
    unbind_context,
)

# Models
from .models import (
    EVENT_TYPES,
    DeliveryPage,
    DeliveryStats,
    EventType,
    SubscriptionCreated,
    SubscriptionView,
    WebhookDelivery,
    WebhookSubscription,
)

# Engine
from .webhooks import WebhookService, compute_signature, verify_signature

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "CourierError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "SchedulingError",
    "ConfigurationError",
    # Logging
    "configure_logging",
    "get_logger",
    "logger",
    "bind_context",
    "clear_context",
    "delivery_context",
    "unbind_context",
    # Models
    "EVENT_TYPES",
    "EventType",
    "WebhookSubscription",
    "SubscriptionView",
    "SubscriptionCreated",
    "DeliveryStats",
    "WebhookDelivery",
    "DeliveryPage",
    # Engine
    "WebhookService",
    "compute_signature",
    "verify_signature",
]
