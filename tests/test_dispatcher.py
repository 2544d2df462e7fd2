"""Tests for event fan-out."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from courier.exceptions import NotFoundError, SchedulingError
from courier.models import WebhookSubscription
from courier.storage import InMemoryWebhookStore
from courier.webhooks.dispatcher import EventDispatcher


def make_subscription(events, active=True, name="Sub"):
    return WebhookSubscription(
        name=name,
        url="https://example.com/hook",
        secret="whsec_" + "b" * 32,
        events=events,
        active=active,
    )


@pytest.fixture
def retry():
    retry = MagicMock()
    retry.schedule_attempt = AsyncMock()
    return retry


@pytest.fixture
def dispatcher(store, retry, clock):
    return EventDispatcher(store, retry, clock=clock)


class TestEnqueueEvent:
    """Tests for enqueue_event."""

    async def test_one_delivery_per_matching_subscription(self, dispatcher, store, retry):
        match_a = make_subscription(["contact.created"])
        match_b = make_subscription(["contact.created", "deal.won"])
        other = make_subscription(["deal.won"])
        for sub in (match_a, match_b, other):
            await store.insert_subscription(sub)

        count = await dispatcher.enqueue_event("contact.created", {"id": "c1"})

        assert count == 2
        for sub in (match_a, match_b):
            [delivery] = await store.list_deliveries(sub.id)
            assert delivery.status == "pending"
            assert delivery.attempts == 0
            assert delivery.next_retry_at is None
        assert await store.list_deliveries(other.id) == []
        assert retry.schedule_attempt.await_count == 2

    async def test_no_match_is_not_an_error(self, dispatcher, store, retry):
        await store.insert_subscription(make_subscription(["deal.won"]))

        assert await dispatcher.enqueue_event("deal.lost", {}) == 0
        retry.schedule_attempt.assert_not_awaited()

    async def test_inactive_subscriptions_skipped(self, dispatcher, store):
        sub = make_subscription(["deal.won"], active=False)
        await store.insert_subscription(sub)

        assert await dispatcher.enqueue_event("deal.won", {}) == 0
        assert await store.list_deliveries(sub.id) == []

    async def test_unknown_event_creates_nothing(self, dispatcher, store):
        await store.insert_subscription(make_subscription(["deal.won"]))
        assert await dispatcher.enqueue_event("deal.exploded", {}) == 0

    async def test_touches_last_triggered_at(self, dispatcher, store, clock):
        matched = make_subscription(["deal.won"])
        skipped = make_subscription(["deal.lost"])
        await store.insert_subscription(matched)
        await store.insert_subscription(skipped)

        await dispatcher.enqueue_event("deal.won", {})

        assert (await store.get_subscription(matched.id)).last_triggered_at == clock.now
        assert (await store.get_subscription(skipped.id)).last_triggered_at is None

    async def test_rows_exist_before_scheduling(self, dispatcher, store, retry):
        """Every delivery is persisted before the first job is scheduled."""
        for _ in range(3):
            await store.insert_subscription(make_subscription(["deal.won"]))
        seen_at_schedule: list[int] = []

        async def record(delivery_id, delay_ms=0):
            pending = await store.list_pending_deliveries(due_before=dispatcher._clock())
            seen_at_schedule.append(len(pending))

        retry.schedule_attempt.side_effect = record

        await dispatcher.enqueue_event("deal.won", {})

        assert seen_at_schedule == [3, 3, 3]

    async def test_scheduling_failure_leaves_pending(self, dispatcher, store, retry):
        """A scheduler outage does not reach the producer; rows stay pending."""
        sub = make_subscription(["deal.won"])
        await store.insert_subscription(sub)
        retry.schedule_attempt.side_effect = SchedulingError("scheduler down")

        count = await dispatcher.enqueue_event("deal.won", {"id": "d1"})

        assert count == 1
        [delivery] = await store.list_deliveries(sub.id)
        assert delivery.status == "pending"

    async def test_payload_is_copied(self, dispatcher, store):
        sub = make_subscription(["deal.won"])
        await store.insert_subscription(sub)
        payload = {"deal": {"stage": "won"}}

        await dispatcher.enqueue_event("deal.won", payload)
        payload["deal"]["stage"] = "lost"

        [delivery] = await store.list_deliveries(sub.id)
        assert delivery.payload == {"deal": {"stage": "won"}}


class TestCreateDelivery:
    """Tests for the single-delivery helper used by the test trigger."""

    async def test_touch_false_leaves_subscription(self, dispatcher, store):
        sub = make_subscription(["deal.won"])
        await store.insert_subscription(sub)

        delivery = await dispatcher.create_delivery(sub, "test", {"type": "test"}, touch=False)

        assert delivery.event == "test"
        assert (await store.get_subscription(sub.id)).last_triggered_at is None


class SuspendingStore(InMemoryWebhookStore):
    """In-memory store whose reads and writes yield to the event loop, like a network store."""

    async def list_subscriptions(self, active=None):
        await asyncio.sleep(0.01)
        return await super().list_subscriptions(active=active)

    async def insert_delivery(self, delivery):
        await asyncio.sleep(0.01)
        return await super().insert_delivery(delivery)


class TestDeleteDuringFanOut:
    """A subscription deleted mid fan-out never ends up with orphan deliveries."""

    async def test_deleted_after_listing(self, store, retry, clock):
        sub = make_subscription(["deal.won"])
        kept = make_subscription(["deal.won"])
        await store.insert_subscription(sub)
        await store.insert_subscription(kept)
        list_subscriptions = store.list_subscriptions

        async def list_then_delete(active=None):
            listed = await list_subscriptions(active=active)
            await store.delete_subscription(sub.id)
            return listed

        store.list_subscriptions = list_then_delete
        dispatcher = EventDispatcher(store, retry, clock=clock)

        count = await dispatcher.enqueue_event("deal.won", {"id": "d1"})

        assert count == 1
        assert await store.list_deliveries(sub.id) == []
        assert len(await store.list_deliveries(kept.id)) == 1
        assert retry.schedule_attempt.await_count == 1

    @pytest.mark.parametrize("delete_after", [0.005, 0.015, 0.025])
    async def test_concurrent_delete(self, retry, clock, delete_after):
        store = SuspendingStore()
        sub = make_subscription(["deal.won"])
        await store.insert_subscription(sub)
        dispatcher = EventDispatcher(store, retry, clock=clock)

        async def delete_later():
            await asyncio.sleep(delete_after)
            await store.delete_subscription(sub.id)

        await asyncio.gather(dispatcher.enqueue_event("deal.won", {"id": "d1"}), delete_later())

        assert await store.get_subscription(sub.id) is None
        assert await store.list_deliveries(sub.id) == []

    async def test_test_webhook_on_deleted_subscription(self, service, store, subscription):
        get_subscription = store.get_subscription
        deleted = False

        async def get_then_delete(subscription_id):
            nonlocal deleted
            found = await get_subscription(subscription_id)
            if not deleted:
                deleted = True
                await store.delete_subscription(subscription_id)
            return found

        store.get_subscription = get_then_delete

        with pytest.raises(NotFoundError):
            await service.test_webhook(subscription.id)
        assert await store.list_deliveries(subscription.id) == []
