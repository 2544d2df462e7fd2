"""Outbound webhook delivery engine.

Notifies external endpoints of domain events with at-least-once
delivery, HMAC-SHA256 signed payloads, a fixed exponential backoff
schedule and automatic suspension of chronically failing subscriptions.

Example:
    ```python
    from courier.webhooks import WebhookService, verify_signature

    async with WebhookService.create() as webhooks:
        await webhooks.enqueue_event("contact.created", {"id": "c1"})

    # Receiver side
    assert verify_signature(raw_body, secret, request.headers["X-Webhook-Signature"])
    ```
"""

from .breaker import FAILURE_THRESHOLD, CircuitBreaker
from .dispatcher import EventDispatcher
from .executor import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    DeliveryExecutor,
    build_envelope,
    serialize_envelope,
)
from .outcome import AttemptOutcome, HttpError, Success, TransportError, classify_response
from .registry import SubscriptionRegistry
from .retry import BACKOFF_SCHEDULE_MS, PROCESS_DELIVERY_JOB, RetryScheduler, backoff_ms
from .service import WebhookService
from .signing import compute_signature, generate_secret, verify_signature
from .sweep import RecoverySweeper

__all__ = [
    # Service
    "WebhookService",
    # Components
    "CircuitBreaker",
    "DeliveryExecutor",
    "EventDispatcher",
    "RecoverySweeper",
    "RetryScheduler",
    "SubscriptionRegistry",
    # Attempt outcomes
    "AttemptOutcome",
    "HttpError",
    "Success",
    "TransportError",
    "classify_response",
    # Retry policy
    "BACKOFF_SCHEDULE_MS",
    "FAILURE_THRESHOLD",
    "PROCESS_DELIVERY_JOB",
    "backoff_ms",
    # Wire format
    "DELIVERY_ID_HEADER",
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "build_envelope",
    "serialize_envelope",
    # Signing
    "compute_signature",
    "generate_secret",
    "verify_signature",
]
