"""
Fixtures partagées: horloge contrôlable, store en mémoire, services câblés.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from journey_crm.models import OperatorCreate
from journey_crm.services import (
    JourneyStateMachine,
    MessagePolicy,
    MetricsAggregator,
    OperatorRegistry,
    RecordingEventBus,
    RecyclingEngine,
)
from journey_crm.store import InMemoryStore


class FrozenClock:
    """Horloge figée, avancée à la main par les tests"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def event_bus():
    return RecordingEventBus()


@pytest.fixture
def registry(store, clock):
    return OperatorRegistry(store, clock=clock)


@pytest.fixture
def state_machine(store, event_bus, clock):
    return JourneyStateMachine(store, event_bus=event_bus, clock=clock)


@pytest.fixture
def metrics(store, clock):
    return MetricsAggregator(store, clock=clock)


@pytest.fixture
def engine(store, clock, metrics):
    return RecyclingEngine(store, clock=clock, metrics=metrics)


@pytest.fixture
def policy(state_machine, event_bus, clock):
    return MessagePolicy(state_machine, event_bus=event_bus, clock=clock)


@pytest_asyncio.fixture
async def operator_a(registry):
    return await registry.create_operator(OperatorCreate(name="Operator A", slug="operator-a"))


@pytest_asyncio.fixture
async def operator_b(registry):
    return await registry.create_operator(OperatorCreate(name="Operator B", slug="operator-b"))
