"""Tests for storage backends.

Both backends run the same contract tests. The Qdrant store uses
qdrant-client's local in-memory mode.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse

from courier.config import Settings
from courier.exceptions import StorageError
from courier.models import WebhookDelivery, WebhookSubscription
from courier.storage import InMemoryWebhookStore, QdrantWebhookStore, WebhookStore, create_store
from courier.storage.retry import is_transient, qdrant_retry


def make_subscription(**overrides):
    fields = {
        "name": "CRM",
        "url": "https://example.com/hook",
        "secret": "whsec_" + "c" * 32,
        "events": ["deal.won"],
    }
    fields.update(overrides)
    return WebhookSubscription(**fields)


def make_delivery(subscription_id, **overrides):
    return WebhookDelivery(subscription_id=subscription_id, event="deal.won", **overrides)


@pytest.fixture(params=["memory", "qdrant"])
async def backend(request):
    if request.param == "memory":
        store = InMemoryWebhookStore()
    else:
        store = QdrantWebhookStore(prefix="test")
        store._client = AsyncQdrantClient(location=":memory:")
    await store.initialize()
    yield store
    await store.close()


class TestProtocol:
    def test_backends_satisfy_protocol(self):
        assert isinstance(InMemoryWebhookStore(), WebhookStore)
        assert isinstance(QdrantWebhookStore(), WebhookStore)

    def test_create_store(self):
        assert isinstance(create_store(Settings(storage_backend="memory")), InMemoryWebhookStore)
        assert isinstance(create_store(Settings(storage_backend="qdrant")), QdrantWebhookStore)


class TestSubscriptions:
    """Subscription CRUD on every backend."""

    async def test_insert_and_get(self, backend):
        sub = make_subscription()
        await backend.insert_subscription(sub)

        loaded = await backend.get_subscription(sub.id)

        assert loaded == sub

    async def test_get_missing(self, backend):
        assert await backend.get_subscription("whk_missing") is None

    async def test_list_newest_first_with_filter(self, backend, clock):
        old = make_subscription(created_at=clock.now - timedelta(days=1))
        new = make_subscription(created_at=clock.now)
        off = make_subscription(active=False, created_at=clock.now - timedelta(hours=1))
        for sub in (old, new, off):
            await backend.insert_subscription(sub)

        assert [s.id for s in await backend.list_subscriptions()] == [new.id, off.id, old.id]
        assert [s.id for s in await backend.list_subscriptions(active=True)] == [new.id, old.id]
        assert [s.id for s in await backend.list_subscriptions(active=False)] == [off.id]

    async def test_modify_applies_changes(self, backend):
        sub = make_subscription()
        await backend.insert_subscription(sub)

        updated = await backend.modify_subscription(
            sub.id, lambda s: {"failure_count": s.failure_count + 1}
        )

        assert updated.failure_count == 1
        assert (await backend.get_subscription(sub.id)).failure_count == 1

    async def test_modify_none_aborts(self, backend):
        sub = make_subscription()
        await backend.insert_subscription(sub)

        assert await backend.modify_subscription(sub.id, lambda s: None) is None
        assert await backend.get_subscription(sub.id) == sub

    async def test_modify_missing(self, backend):
        assert await backend.modify_subscription("whk_missing", lambda s: {"active": False}) is None

    async def test_modify_is_atomic(self, backend):
        sub = make_subscription()
        await backend.insert_subscription(sub)

        await asyncio.gather(
            *(
                backend.modify_subscription(sub.id, lambda s: {"failure_count": s.failure_count + 1})
                for _ in range(20)
            )
        )

        assert (await backend.get_subscription(sub.id)).failure_count == 20

    async def test_modify_rejects_invalid_values(self, backend):
        sub = make_subscription()
        await backend.insert_subscription(sub)

        with pytest.raises(ValueError):
            await backend.modify_subscription(sub.id, lambda s: {"events": []})
        assert (await backend.get_subscription(sub.id)).events == ["deal.won"]

    async def test_delete_cascades(self, backend):
        sub = make_subscription()
        other = make_subscription()
        await backend.insert_subscription(sub)
        await backend.insert_subscription(other)
        for _ in range(3):
            await backend.insert_delivery(make_delivery(sub.id))
        kept = make_delivery(other.id)
        await backend.insert_delivery(kept)

        assert await backend.delete_subscription(sub.id) is True

        assert await backend.get_subscription(sub.id) is None
        assert await backend.list_deliveries(sub.id) == []
        assert await backend.get_delivery(kept.id) is not None

    async def test_delete_missing(self, backend):
        assert await backend.delete_subscription("whk_missing") is False


class TestDeliveries:
    """Delivery storage on every backend."""

    async def test_insert_and_get(self, backend):
        delivery = make_delivery("whk_1", payload={"nested": {"a": [1, 2]}})
        await backend.insert_delivery(delivery)

        assert await backend.get_delivery(delivery.id) == delivery

    async def test_modify_guard(self, backend):
        delivery = make_delivery("whk_1")
        await backend.insert_delivery(delivery)

        def only_if_pending(d):
            return {"status": "success"} if d.status == "pending" else None

        assert (await backend.modify_delivery(delivery.id, only_if_pending)).status == "success"
        assert await backend.modify_delivery(delivery.id, only_if_pending) is None

    async def test_list_filters_and_orders(self, backend, clock):
        ds = [
            make_delivery("whk_1", created_at=clock.now - timedelta(minutes=i), status=status)
            for i, status in enumerate(["pending", "failed", "success", "failed"])
        ]
        for d in ds:
            await backend.insert_delivery(d)
        await backend.insert_delivery(make_delivery("whk_2"))

        assert [d.id for d in await backend.list_deliveries("whk_1")] == [d.id for d in ds]
        assert [d.id for d in await backend.list_deliveries("whk_1", status="failed")] == [
            ds[1].id,
            ds[3].id,
        ]
        assert [d.id for d in await backend.list_deliveries("whk_1", limit=2)] == [
            ds[0].id,
            ds[1].id,
        ]
        before = await backend.list_deliveries("whk_1", before=ds[1].created_at)
        assert [d.id for d in before] == [ds[2].id, ds[3].id]

    async def test_list_pending_due(self, backend, clock):
        now = clock.now
        due_new = make_delivery("whk_1", created_at=now - timedelta(minutes=1))
        due_retry = make_delivery(
            "whk_1",
            created_at=now - timedelta(hours=1),
            attempts=1,
            next_retry_at=now - timedelta(minutes=2),
        )
        backing_off = make_delivery(
            "whk_1",
            created_at=now - timedelta(hours=1),
            attempts=1,
            next_retry_at=now + timedelta(minutes=2),
        )
        done = make_delivery("whk_1", status="success", created_at=now - timedelta(hours=2))
        for d in (due_new, due_retry, backing_off, done):
            await backend.insert_delivery(d)

        pending = await backend.list_pending_deliveries(now)

        assert [d.id for d in pending] == [due_retry.id, due_new.id]
        assert len(await backend.list_pending_deliveries(now, limit=1)) == 1

    async def test_delete_for_subscription_counts(self, backend):
        for _ in range(4):
            await backend.insert_delivery(make_delivery("whk_1"))

        assert await backend.delete_deliveries_for_subscription("whk_1") == 4
        assert await backend.delete_deliveries_for_subscription("whk_1") == 0

    async def test_owned_insert_requires_subscription(self, backend):
        sub = make_subscription()
        await backend.insert_subscription(sub)
        owned = make_delivery(sub.id)
        stray = make_delivery("whk_missing")

        assert await backend.insert_owned_delivery(owned) == owned.id
        assert await backend.insert_owned_delivery(stray) is None

        assert await backend.get_delivery(owned.id) is not None
        assert await backend.get_delivery(stray.id) is None

    async def test_owned_insert_racing_delete_leaves_no_orphans(self, backend):
        """Whichever runs first, a delete never leaves a delivery behind."""
        subs = [make_subscription() for _ in range(5)]
        for sub in subs:
            await backend.insert_subscription(sub)

        await asyncio.gather(
            *(backend.insert_owned_delivery(make_delivery(sub.id)) for sub in subs),
            *(backend.delete_subscription(sub.id) for sub in subs),
        )

        for sub in subs:
            assert await backend.list_deliveries(sub.id) == []


class TestInMemoryIsolation:
    """The in-memory store never shares mutable state with callers."""

    async def test_returned_records_are_copies(self):
        store = InMemoryWebhookStore()
        delivery = make_delivery("whk_1", payload={"items": [1]})
        await store.insert_delivery(delivery)

        loaded = await store.get_delivery(delivery.id)
        loaded.payload["items"].append(2)
        delivery.payload["items"].append(3)

        assert (await store.get_delivery(delivery.id)).payload == {"items": [1]}

    async def test_mutator_cannot_write_through(self):
        store = InMemoryWebhookStore()
        sub = make_subscription()
        await store.insert_subscription(sub)

        def sneaky(s):
            s.events.append("deal.lost")
            return None

        await store.modify_subscription(sub.id, sneaky)

        assert (await store.get_subscription(sub.id)).events == ["deal.won"]


class TestQdrantStore:
    """Qdrant-specific behaviour."""

    async def test_requires_initialize(self):
        store = QdrantWebhookStore()
        with pytest.raises(StorageError, match="not initialized"):
            await store.get_subscription("whk_1")

    async def test_collections_are_prefixed(self):
        store = QdrantWebhookStore(prefix="tenant")
        store._client = AsyncQdrantClient(location=":memory:")
        await store.initialize()

        names = {c.name for c in (await store.client.get_collections()).collections}
        await store.close()

        assert names == {"tenant_webhook_subscriptions", "tenant_webhook_deliveries"}

    async def test_initialize_is_idempotent(self):
        store = QdrantWebhookStore(prefix="again")
        store._client = AsyncQdrantClient(location=":memory:")
        await store.initialize()
        await store.initialize()
        await store.close()

    def test_point_ids_are_deterministic_uuids(self):
        a = QdrantWebhookStore._point_id("whk_abc")
        assert a == QdrantWebhookStore._point_id("whk_abc")
        assert a != QdrantWebhookStore._point_id("whk_abd")
        assert [len(part) for part in a.split("-")] == [8, 4, 4, 4, 12]


class TestQdrantRetryPolicy:
    """Which Qdrant errors are retried."""

    @pytest.mark.parametrize("status_code", [500, 502, 503])
    def test_server_errors_are_transient(self, status_code):
        exc = UnexpectedResponse(status_code, "Server Error", b"", httpx.Headers())
        assert is_transient(exc)

    @pytest.mark.parametrize("status_code", [400, 404, 409])
    def test_client_errors_are_not_retried(self, status_code):
        exc = UnexpectedResponse(status_code, "Client Error", b"", httpx.Headers())
        assert not is_transient(exc)

    def test_network_errors_are_transient(self):
        assert is_transient(httpx.ConnectError("refused"))
        assert is_transient(httpx.ReadTimeout("slow"))

    def test_other_errors_are_not_retried(self):
        assert not is_transient(ValueError("bad payload"))

    async def test_client_error_raises_without_retry(self):
        calls = 0

        @qdrant_retry
        async def rejected():
            nonlocal calls
            calls += 1
            raise UnexpectedResponse(404, "Not Found", b"", httpx.Headers())

        with pytest.raises(UnexpectedResponse):
            await rejected()
        assert calls == 1
