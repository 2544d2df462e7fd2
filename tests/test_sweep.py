"""Tests for the recovery sweep."""

import asyncio
from datetime import timedelta

import pytest

from courier.models import WebhookDelivery
from courier.webhooks import PROCESS_DELIVERY_JOB


@pytest.fixture
async def orphan(service, store, subscription, clock):
    """A pending delivery with no scheduled job, due well past the grace period."""
    delivery = WebhookDelivery(
        subscription_id=subscription.id,
        event="contact.created",
        payload={"id": "c1"},
        created_at=clock.now - timedelta(minutes=10),
    )
    await store.insert_delivery(delivery)
    return delivery


class TestSweep:
    """Tests for RecoverySweeper.sweep()."""

    async def test_reschedules_orphan(self, service, scheduler, orphan):
        assert await service.sweep() == 1
        assert scheduler.is_scheduled(PROCESS_DELIVERY_JOB, {"delivery_id": orphan.id})

    async def test_recovered_delivery_is_delivered(self, service, store, scheduler, receiver, orphan):
        await service.sweep()
        await scheduler.run_due()

        delivered = await store.get_delivery(orphan.id)
        assert delivered.status == "success"
        assert receiver.last_envelope["id"] == orphan.id

    async def test_already_scheduled_is_skipped(self, service, orphan):
        assert await service.sweep() == 1
        assert await service.sweep() == 0

    async def test_within_grace_is_skipped(self, service, store, subscription, clock):
        fresh = WebhookDelivery(
            subscription_id=subscription.id,
            event="contact.created",
            created_at=clock.now - timedelta(seconds=30),
        )
        await store.insert_delivery(fresh)

        assert await service.sweep() == 0

    async def test_backing_off_is_skipped(self, service, store, subscription, clock):
        """A delivery waiting on its backoff is not due yet."""
        waiting = WebhookDelivery(
            subscription_id=subscription.id,
            event="contact.created",
            attempts=1,
            created_at=clock.now - timedelta(hours=1),
            next_retry_at=clock.now + timedelta(minutes=4),
        )
        await store.insert_delivery(waiting)

        assert await service.sweep() == 0

    async def test_lost_backoff_timer_is_recovered(self, service, store, subscription, clock):
        """A retry whose timer died with the process is picked up after the grace period."""
        lost = WebhookDelivery(
            subscription_id=subscription.id,
            event="contact.created",
            attempts=2,
            created_at=clock.now - timedelta(hours=1),
            next_retry_at=clock.now - timedelta(minutes=5),
        )
        await store.insert_delivery(lost)

        assert await service.sweep() == 1

    async def test_terminal_deliveries_ignored(self, service, store, subscription, clock):
        for status in ("success", "failed"):
            await store.insert_delivery(
                WebhookDelivery(
                    subscription_id=subscription.id,
                    event="contact.created",
                    status=status,
                    created_at=clock.now - timedelta(hours=1),
                )
            )

        assert await service.sweep() == 0

    async def test_duplicate_schedule_attempts_once(self, service, store, scheduler, receiver, orphan):
        """A sweep racing the original job still produces a single attempt."""
        await service.retry.schedule_attempt(orphan.id)
        await service.retry.schedule_attempt(orphan.id)

        assert await scheduler.run_due() == 2
        assert len(receiver.requests) == 1
        assert (await store.get_delivery(orphan.id)).attempts == 1


class TestSweepLoop:
    """Tests for the background loop."""

    async def test_start_and_stop(self, service):
        sweeper = service.sweeper
        sweeper._interval = 0.01

        sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.03)
        await sweeper.stop()

        assert not sweeper.running

    async def test_loop_survives_errors(self, service, monkeypatch):
        calls = 0

        async def failing_sweep() -> int:
            nonlocal calls
            calls += 1
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(service.sweeper, "sweep", failing_sweep)
        service.sweeper._interval = 0.005

        service.sweeper.start()
        for _ in range(100):
            if calls >= 2:
                break
            await asyncio.sleep(0.005)
        await service.sweeper.stop()

        assert calls >= 2
