"""FastAPI router for Courier API endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from courier import __version__
from courier.logging import get_logger
from courier.models import DeliveryPage, SubscriptionCreated, SubscriptionView
from courier.webhooks import WebhookService

from .schemas import (
    CreateSubscriptionRequest,
    EnqueueEventRequest,
    EnqueueEventResponse,
    EventTypesResponse,
    HealthResponse,
    RetryFailedResponse,
    UpdateSubscriptionRequest,
    WebhookTestResponse,
)

logger = get_logger(__name__)

router = APIRouter()

# Service instance (set by app lifespan)
_service: WebhookService | None = None


def set_service(service: WebhookService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> WebhookService:
    """Dependency to get the WebhookService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[WebhookService, Depends(get_service)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    if _service is not None:
        return HealthResponse(status="healthy", version=__version__, storage_connected=True)
    return HealthResponse(status="unhealthy", version=__version__, storage_connected=False)


@router.get("/webhooks/event-types", response_model=EventTypesResponse, tags=["webhooks"])
async def get_event_types(service: ServiceDep) -> EventTypesResponse:
    """List the events a subscription can listen to."""
    return EventTypesResponse(event_types=service.get_event_types())


@router.get("/webhooks", response_model=list[SubscriptionView], tags=["webhooks"])
async def list_subscriptions(
    service: ServiceDep,
    active: bool | None = None,
) -> list[SubscriptionView]:
    """List subscriptions, newest first, with stats over their last 10 deliveries.

    Secrets are never included.
    """
    return await service.list_subscriptions(active=active)


@router.post(
    "/webhooks",
    response_model=SubscriptionCreated,
    status_code=status.HTTP_201_CREATED,
    tags=["webhooks"],
)
async def create_subscription(
    request: CreateSubscriptionRequest,
    service: ServiceDep,
) -> SubscriptionCreated:
    """Register a webhook subscription.

    The response is the only place the signing secret is returned.

    Raises:
        ValidationError: 400 for a bad URL, empty name, or empty/unknown events.
    """
    created = await service.create_subscription(
        name=request.name,
        url=request.url,
        events=request.events,
        active=request.active,
    )
    logger.info("Subscription created", subscription_id=created.id)
    return created


@router.get("/webhooks/{subscription_id}", response_model=SubscriptionView, tags=["webhooks"])
async def get_subscription(subscription_id: str, service: ServiceDep) -> SubscriptionView:
    """Get one subscription (without its secret)."""
    return await service.get_subscription(subscription_id)


@router.patch("/webhooks/{subscription_id}", response_model=SubscriptionView, tags=["webhooks"])
async def update_subscription(
    subscription_id: str,
    request: UpdateSubscriptionRequest,
    service: ServiceDep,
) -> SubscriptionView:
    """Partially update a subscription.

    Reactivating a disabled subscription resets its failure count.
    """
    return await service.update_subscription(
        subscription_id,
        name=request.name,
        url=request.url,
        events=request.events,
        active=request.active,
    )


@router.delete(
    "/webhooks/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["webhooks"],
)
async def delete_subscription(subscription_id: str, service: ServiceDep) -> None:
    """Delete a subscription and its entire delivery history."""
    await service.delete_subscription(subscription_id)
    logger.info("Subscription deleted", subscription_id=subscription_id)


@router.post(
    "/webhooks/{subscription_id}/secret",
    response_model=SubscriptionCreated,
    tags=["webhooks"],
)
async def regenerate_secret(subscription_id: str, service: ServiceDep) -> SubscriptionCreated:
    """Replace the signing secret. The previous secret stops verifying immediately."""
    rotated = await service.regenerate_secret(subscription_id)
    logger.info("Secret regenerated", subscription_id=subscription_id)
    return rotated


@router.post(
    "/webhooks/{subscription_id}/test",
    response_model=WebhookTestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["webhooks"],
)
async def test_webhook(subscription_id: str, service: ServiceDep) -> WebhookTestResponse:
    """Queue a synthetic "test" delivery to check reachability and signing."""
    delivery = await service.test_webhook(subscription_id)
    return WebhookTestResponse(delivery_id=delivery.id, event=delivery.event, status=delivery.status)


@router.post(
    "/webhooks/{subscription_id}/retry-failed",
    response_model=RetryFailedResponse,
    tags=["webhooks"],
)
async def retry_failed_deliveries(subscription_id: str, service: ServiceDep) -> RetryFailedResponse:
    """Reset every failed delivery of the subscription and attempt it again."""
    retried = await service.retry_failed_deliveries(subscription_id)
    return RetryFailedResponse(retried=retried)


@router.get(
    "/webhooks/{subscription_id}/deliveries",
    response_model=DeliveryPage,
    tags=["webhooks"],
)
async def get_delivery_history(
    subscription_id: str,
    service: ServiceDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    cursor: datetime | None = None,
) -> DeliveryPage:
    """Page through delivery history, newest first.

    Pass the previous page's `next_cursor` as `cursor` to continue.
    """
    return await service.get_delivery_history(subscription_id, limit=limit, cursor=cursor)


@router.post(
    "/events",
    response_model=EnqueueEventResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["events"],
)
async def enqueue_event(request: EnqueueEventRequest, service: ServiceDep) -> EnqueueEventResponse:
    """Fan a domain event out to every active subscription listening to it.

    Returns as soon as deliveries are recorded; attempts happen in the
    background.
    """
    count = await service.enqueue_event(request.event, request.payload)
    return EnqueueEventResponse(delivery_count=count)
