"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add tests directory to path so utils can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from utils import FakeClock, Receiver  # noqa: E402

from courier.config import Settings  # noqa: E402
from courier.scheduling import PollingScheduler  # noqa: E402
from courier.storage import InMemoryWebhookStore  # noqa: E402
from courier.webhooks import WebhookService  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryWebhookStore:
    return InMemoryWebhookStore()


@pytest.fixture
def scheduler(clock: FakeClock) -> PollingScheduler:
    return PollingScheduler(clock=clock)


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
def courier_settings() -> Settings:
    return Settings(env="test", storage_backend="memory", scheduler_backend="polling")


@pytest.fixture
async def service(store, scheduler, receiver, clock, courier_settings):
    """WebhookService on the in-memory store, a polling scheduler and a mock receiver."""
    client = receiver.client()
    webhooks = WebhookService(
        store=store,
        scheduler=scheduler,
        settings=courier_settings,
        client=client,
        clock=clock,
    )
    await webhooks.initialize()
    yield webhooks
    await webhooks.close()
    await client.aclose()


@pytest.fixture
async def subscription(service):
    """An active subscription to contact.created and deal.won."""
    return await service.create_subscription(
        name="CRM sync",
        url="https://hooks.example.com/crm",
        events=["contact.created", "deal.won"],
    )
