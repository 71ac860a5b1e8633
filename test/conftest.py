"""
Shared fixtures: in-memory store and queue, a guard for the "manufacturer" organization,
an engine wired to both and one seeded order at Design Proposal.
"""
from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio

from stageflow.authz import AuthorizationGuard
from stageflow.engine import StageTransitionEngine
from stageflow.models import ActorContext
from stageflow.queue import InMemoryEventQueue, OutboxRelay
from stageflow.store import InMemoryAuditTrailStore

MANUFACTURER_ORG = "manufacturer"
CLIENT_ORG = "acme-apparel"
SHIP_DATE = date(2025, 3, 1)


class StepClock:
    """Deterministic clock: every call returns one second later than the previous one."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def staff() -> ActorContext:
    return ActorContext(actor_id="staff-1", role="Staff", organization_id=MANUFACTURER_ORG)


@pytest.fixture
def client_user() -> ActorContext:
    return ActorContext(actor_id="client-1", role="Admin", organization_id=CLIENT_ORG)


@pytest.fixture
def other_client() -> ActorContext:
    return ActorContext(actor_id="client-9", role="Admin", organization_id="other-org")


@pytest.fixture
def guard() -> AuthorizationGuard:
    return AuthorizationGuard(MANUFACTURER_ORG)


@pytest.fixture
def store() -> InMemoryAuditTrailStore:
    return InMemoryAuditTrailStore()


@pytest.fixture
def queue() -> InMemoryEventQueue:
    return InMemoryEventQueue(partitions=4)


@pytest.fixture
def relay(store, queue) -> OutboxRelay:
    return OutboxRelay(store, queue)


@pytest.fixture
def engine(store, guard, relay) -> StageTransitionEngine:
    return StageTransitionEngine(store, guard, relay, clock=StepClock())


@pytest_asyncio.fixture
async def order(engine, staff):
    return await engine.create_order(
        staff,
        organization_id=CLIENT_ORG,
        ship_date=SHIP_DATE,
        order_id="ord-1",
        order_number="PO-1001",
    )
