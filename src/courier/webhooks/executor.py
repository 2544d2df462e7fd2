"""Delivery attempt executor.

Performs exactly one HTTP attempt for one delivery per invocation:

1. Load the delivery; anything not pending is a no-op.
2. Load the subscription; missing or disabled fails the delivery
   without consuming an attempt.
3. Build the envelope `{id, event, timestamp, data}` and serialize it once.
4. Sign the serialized bytes with HMAC-SHA256 and POST those same bytes.
5. 2xx marks the delivery successful and resets the subscription's
   failure count; anything else goes to the retry scheduler.

Headers sent with every attempt:

    Content-Type: application/json
    X-Webhook-Signature: sha256=<hex>
    X-Webhook-Event: <event>
    X-Webhook-Timestamp: <epoch ms>
    X-Webhook-Delivery-Id: <delivery id>
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from courier.logging import delivery_context
from courier.models import RESPONSE_BODY_LIMIT, to_epoch_ms, utc_now

from .outcome import AttemptOutcome, HttpError, Success, TransportError, classify_response
from .signing import compute_signature

if TYPE_CHECKING:
    from courier.models import WebhookDelivery, WebhookSubscription
    from courier.scheduling import Clock
    from courier.storage import WebhookStore

    from .breaker import CircuitBreaker
    from .retry import RetryScheduler

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"


def build_envelope(delivery: WebhookDelivery, timestamp_ms: int) -> dict[str, Any]:
    """Envelope POSTed to the receiver."""
    return {
        "id": delivery.id,
        "event": delivery.event,
        "timestamp": timestamp_ms,
        "data": delivery.payload,
    }


def serialize_envelope(envelope: dict[str, Any]) -> bytes:
    """Serialize the envelope to the exact bytes that are signed and sent.

    Non-ASCII text is written as `\\uXXXX` escapes, so any string the
    payload can hold (lone surrogates included) encodes.
    """
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("ascii")


async def read_body_prefix(response: httpx.Response, limit: int = RESPONSE_BODY_LIMIT) -> str:
    """Read just enough of a streamed response to fill `limit` characters.

    The rest of the body is never downloaded.
    """
    # UTF-8 uses at most 4 bytes per character
    max_bytes = limit * 4
    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        buffer.extend(chunk)
        if len(buffer) >= max_bytes:
            break
    encoding = response.charset_encoding or "utf-8"
    try:
        text = bytes(buffer[:max_bytes]).decode(encoding, errors="replace")
    except LookupError:
        text = bytes(buffer[:max_bytes]).decode("utf-8", errors="replace")
    return text[:limit]


def build_headers(
    delivery: WebhookDelivery,
    body: bytes,
    secret: str,
    timestamp_ms: int,
) -> dict[str, str]:
    """Signed request headers for one attempt."""
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: compute_signature(body, secret),
        EVENT_HEADER: delivery.event,
        TIMESTAMP_HEADER: str(timestamp_ms),
        DELIVERY_ID_HEADER: delivery.id,
    }


class DeliveryExecutor:
    """Runs single delivery attempts.

    Example:
        ```python
        executor = DeliveryExecutor(store, retry_scheduler, breaker)
        scheduler.register(PROCESS_DELIVERY_JOB, executor.process_delivery)
        ```
    """

    def __init__(
        self,
        store: WebhookStore,
        retry_scheduler: RetryScheduler,
        breaker: CircuitBreaker,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_concurrent: int = 10,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the executor.

        Args:
            store: Subscription and delivery storage.
            retry_scheduler: Receives every failed attempt.
            breaker: Reset on every successful delivery.
            client: Shared HTTP client. A short-lived client is created per
                attempt when None.
            timeout_seconds: Deadline for one POST, from connect until the
                response body has been read.
            max_concurrent: Maximum attempts in flight at once.
            clock: Source of the current time.
        """
        self._store = store
        self._retry = retry_scheduler
        self._breaker = breaker
        self._client = client
        self._timeout = timeout_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._clock = clock
        self._in_flight: set[str] = set()

    async def process_delivery(self, delivery_id: str) -> AttemptOutcome | None:
        """Run one attempt for a delivery.

        Returns:
            The attempt outcome, or None when no HTTP request was made
            (missing, already terminal, already in flight, or the
            subscription was gone).
        """
        delivery = await self._store.get_delivery(delivery_id)
        if delivery is None:
            logger.warning("Delivery %s not found", delivery_id)
            return None
        if delivery.status != "pending":
            logger.debug("Delivery %s already %s; skipping", delivery_id, delivery.status)
            return None
        if delivery_id in self._in_flight:
            logger.debug("Delivery %s already in flight; skipping", delivery_id)
            return None

        # Claimed before the next await so a concurrent run sees it
        self._in_flight.add(delivery_id)
        try:
            subscription = await self._store.get_subscription(delivery.subscription_id)
            if subscription is None or not subscription.active:
                await self._retry.fail_unreachable(delivery)
                logger.info(
                    "Delivery %s failed: subscription %s not found or disabled",
                    delivery_id,
                    delivery.subscription_id,
                )
                return None

            with delivery_context(delivery_id, subscription.id):
                return await self._attempt(delivery, subscription)
        finally:
            self._in_flight.discard(delivery_id)

    async def _attempt(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
    ) -> AttemptOutcome:
        attempt_number = delivery.attempts + 1
        timestamp_ms = to_epoch_ms(self._clock())
        body = serialize_envelope(build_envelope(delivery, timestamp_ms))
        headers = build_headers(delivery, body, subscription.secret, timestamp_ms)

        async with self._semaphore:
            outcome = await self._send(str(subscription.url), body, headers)

        if isinstance(outcome, Success):
            await self._record_success(delivery, attempt_number, outcome)
        else:
            await self._retry.handle_failure(delivery, attempt_number, outcome)
        return outcome

    async def _send(self, url: str, body: bytes, headers: dict[str, str]) -> AttemptOutcome:
        # httpx timeouts apply per connect/read; this caps the whole exchange
        try:
            async with asyncio.timeout(self._timeout):
                if self._client is not None:
                    return await self._post(self._client, url, body, headers)
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    return await self._post(client, url, body, headers)
        except (TimeoutError, httpx.TimeoutException):
            return TransportError(message=f"Request timed out after {self._timeout:g}s")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return TransportError(message=str(e) or type(e).__name__)

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: bytes,
        headers: dict[str, str],
    ) -> Success | HttpError:
        async with client.stream(
            "POST", url, content=body, headers=headers, timeout=self._timeout
        ) as response:
            text = await read_body_prefix(response)
        return classify_response(response.status_code, text)

    async def _record_success(
        self,
        delivery: WebhookDelivery,
        attempt_number: int,
        outcome: Success,
    ) -> None:
        delivered_at = self._clock()

        def succeed(current: WebhookDelivery) -> dict[str, Any] | None:
            if current.status != "pending" or current.attempts != attempt_number - 1:
                return None
            return {
                "status": "success",
                "attempts": attempt_number,
                "delivered_at": delivered_at,
                "next_retry_at": None,
                "response_code": outcome.status_code,
                "response_body": outcome.body,
                "error_message": None,
            }

        updated = await self._store.modify_delivery(delivery.id, succeed)
        if updated is None:
            logger.debug("Delivery %s already advanced; dropping success", delivery.id)
            return

        await self._breaker.record_success(delivery.subscription_id)
        logger.info(
            "Delivered %s %s on attempt %d (status %d)",
            delivery.event,
            delivery.id,
            attempt_number,
            outcome.status_code,
        )


__all__ = [
    "DELIVERY_ID_HEADER",
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "DeliveryExecutor",
    "build_envelope",
    "build_headers",
    "read_body_prefix",
    "serialize_envelope",
]
