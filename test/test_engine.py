"""
Engine scenarios against the in-memory store: transitions, ship-date revisions,
authorization, concurrent writers and ambiguous append timeouts.
"""
import asyncio
from datetime import date, datetime, timezone

import pytest

from stageflow.engine import StageTransitionEngine
from stageflow.errors import (
    Conflict,
    ConflictError,
    Forbidden,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    NoOpTransition,
    OrderNotFound,
)
from stageflow.models import ActorContext, OrderStatus, StageTransitionRequest, make_event_id
from stageflow.queue import InMemoryEventQueue, OutboxRelay
from stageflow.stages import Stage
from stageflow.store import InMemoryAuditTrailStore

from conftest import CLIENT_ORG, SHIP_DATE, StepClock


async def _history(store, order_id="ord-1"):
    return [r async for r in store.history(order_id)]


async def _create(engine, actor, order_id):
    return await engine.create_order(actor, organization_id=CLIENT_ORG, ship_date=SHIP_DATE, order_id=order_id)


# ----------------------------------------------------------------------
# Forward, backward, same-stage
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_forward_transition_writes_one_record_and_one_event(engine, store, queue, staff, order):
    event = await engine.transition("ord-1", StageTransitionRequest(Stage.PRODUCTION_PLANNING), staff)

    assert event.previous_stage is Stage.DESIGN_PROPOSAL
    assert event.new_stage is Stage.PRODUCTION_PLANNING
    assert not event.ship_date_changed
    current = await store.get_order("ord-1")
    assert current.current_stage is Stage.PRODUCTION_PLANNING
    assert current.version == 1
    history = await _history(store)
    assert len(history) == 2
    assert history[-1].stage is Stage.PRODUCTION_PLANNING
    assert history[-1].previous_stage is Stage.DESIGN_PROPOSAL
    assert history[-1].actor_id == "staff-1"
    assert queue.pushed == [event]
    assert await store.pending_events() == []


@pytest.mark.asyncio
async def test_create_order_writes_initial_record(store, order):
    assert order.current_stage is Stage.DESIGN_PROPOSAL
    assert order.original_ship_date == order.current_ship_date == SHIP_DATE
    history = await _history(store)
    assert len(history) == 1
    assert history[0].notes == "Order created"
    assert history[0].new_ship_date == SHIP_DATE


@pytest.mark.asyncio
async def test_backward_without_correction_is_rejected(engine, store, queue, staff, order):
    await engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)

    with pytest.raises(InvalidTransition) as exc_info:
        await engine.transition("ord-1", StageTransitionRequest(Stage.MEASUREMENTS), staff)

    assert exc_info.value.current_stage == "Cutting"
    assert (await store.get_order("ord-1")).current_stage is Stage.CUTTING
    assert len(await _history(store)) == 2
    assert len(queue.pushed) == 1


@pytest.mark.asyncio
async def test_backward_correction_is_recorded_as_correction(engine, store, staff, order):
    await engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)

    outcome = await engine.apply_transition(
        "ord-1",
        StageTransitionRequest(Stage.MEASUREMENTS, notes="Entered Cutting by mistake", is_correction=True),
        staff,
    )

    assert outcome.record.is_correction
    assert outcome.event.is_correction
    assert outcome.event.previous_stage is Stage.CUTTING
    assert outcome.order.current_stage is Stage.MEASUREMENTS
    assert outcome.order.version == 2


@pytest.mark.asyncio
async def test_same_stage_without_changes_is_noop(engine, store, queue, staff, order):
    with pytest.raises(NoOpTransition):
        await engine.transition("ord-1", StageTransitionRequest(Stage.DESIGN_PROPOSAL), staff)

    # A "revision" to the date the order already has changes nothing either
    with pytest.raises(NoOpTransition):
        await engine.transition(
            "ord-1",
            StageTransitionRequest(Stage.DESIGN_PROPOSAL, new_ship_date=SHIP_DATE),
            staff,
        )
    assert len(await _history(store)) == 1
    assert queue.pushed == []


@pytest.mark.asyncio
async def test_same_stage_note_is_an_amendment(engine, store, staff, order):
    event = await engine.transition(
        "ord-1", StageTransitionRequest(Stage.DESIGN_PROPOSAL, notes="Client sent new sketches"), staff
    )
    assert not event.stage_changed
    history = await _history(store)
    assert history[-1].notes == "Client sent new sketches"
    assert history[-1].previous_stage is Stage.DESIGN_PROPOSAL


@pytest.mark.asyncio
async def test_forward_jump_skips_stages(engine, store, staff, order):
    await engine.transition("ord-1", StageTransitionRequest(Stage.FINAL_INSPECTION), staff)
    assert (await store.get_order("ord-1")).current_stage is Stage.FINAL_INSPECTION


# ----------------------------------------------------------------------
# Ship dates
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_ship_date_revision_keeps_original(engine, store, queue, staff, order):
    revised = date(2025, 3, 15)

    event = await engine.transition(
        "ord-1",
        StageTransitionRequest(Stage.CUTTING, new_ship_date=revised, reason="Fabric delay"),
        staff,
    )

    assert event.ship_date_changed
    assert event.previous_ship_date == SHIP_DATE
    assert event.new_ship_date == revised
    assert event.reason == "Fabric delay"
    current = await store.get_order("ord-1")
    assert current.original_ship_date == SHIP_DATE
    assert current.current_ship_date == revised
    record = (await _history(store))[-1]
    assert record.previous_ship_date == SHIP_DATE
    assert record.new_ship_date == revised
    assert record.change_reason == "Fabric delay"
    message = queue.pushed[0].to_message()
    assert message["shipDateChanged"] is True
    assert message["previousShipDate"] == "2025-03-01"
    assert message["newShipDate"] == "2025-03-15"


@pytest.mark.asyncio
async def test_ship_date_revision_requires_reason(engine, store, staff, order):
    with pytest.raises(InvalidRequest):
        await engine.transition(
            "ord-1", StageTransitionRequest(Stage.CUTTING, new_ship_date=date(2025, 4, 1)), staff
        )
    assert (await store.get_order("ord-1")).current_ship_date == SHIP_DATE


@pytest.mark.asyncio
async def test_ship_date_only_change_in_same_stage(engine, store, staff, order):
    event = await engine.transition(
        "ord-1",
        StageTransitionRequest(Stage.DESIGN_PROPOSAL, new_ship_date=date(2025, 2, 20), reason="Rush order"),
        staff,
    )
    assert event.ship_date_changed
    assert not event.stage_changed


# ----------------------------------------------------------------------
# Authorization and order state
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_client_cannot_transition(engine, store, queue, client_user, order):
    with pytest.raises(Forbidden):
        await engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), client_user)
    assert len(await _history(store)) == 1
    assert queue.pushed == []


@pytest.mark.asyncio
async def test_unknown_order(engine, staff):
    with pytest.raises(OrderNotFound):
        await engine.transition("nope", StageTransitionRequest(Stage.CUTTING), staff)


@pytest.mark.asyncio
async def test_terminal_stage_completes_order(engine, store, staff, order):
    outcome = await engine.apply_transition("ord-1", StageTransitionRequest(Stage.DELIVERY), staff)

    assert outcome.order.status is OrderStatus.COMPLETED
    assert outcome.event.order_status is OrderStatus.COMPLETED
    with pytest.raises(InvalidState):
        await engine.transition(
            "ord-1", StageTransitionRequest(Stage.SHIP_ORDER, is_correction=True), staff
        )


@pytest.mark.asyncio
async def test_create_order_rules(engine, staff, client_user, order):
    with pytest.raises(Forbidden):
        await _create(engine, client_user, "ord-2")
    with pytest.raises(InvalidRequest):
        await engine.create_order(staff, organization_id="manufacturer", ship_date=SHIP_DATE)
    with pytest.raises(InvalidRequest):
        await _create(engine, staff, "ord-1")


# ----------------------------------------------------------------------
# Cancel and bulk
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_cancel_order(engine, store, queue, staff, order):
    with pytest.raises(InvalidRequest):
        await engine.cancel_order("ord-1", staff, "  ")

    event = await engine.cancel_order("ord-1", staff, "Client withdrew")

    assert event.order_status is OrderStatus.CANCELLED
    assert event.reason == "Client withdrew"
    current = await store.get_order("ord-1")
    assert current.status is OrderStatus.CANCELLED
    assert current.current_stage is Stage.DESIGN_PROPOSAL
    assert (await _history(store))[-1].notes == "Order cancelled"
    assert queue.pushed == [event]
    with pytest.raises(InvalidState):
        await engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)


@pytest.mark.asyncio
async def test_client_cannot_cancel(engine, client_user, order):
    with pytest.raises(Forbidden):
        await engine.cancel_order("ord-1", client_user, "no longer needed")


@pytest.mark.asyncio
async def test_bulk_transition_reports_each_order(engine, staff, order):
    await _create(engine, staff, "ord-2")
    await _create(engine, staff, "ord-3")
    await engine.transition("ord-3", StageTransitionRequest(Stage.SEWING), staff)

    result = await engine.bulk_transition(
        ["ord-1", "ord-2", "ord-3", "missing", "ord-1"], StageTransitionRequest(Stage.CUTTING), staff
    )

    assert [o.order.id for o in result.successful] == ["ord-1", "ord-2"]
    assert {f.order_id: f.error for f in result.failed} == {
        "ord-3": "invalid_transition",
        "missing": "order_not_found",
    }


@pytest.mark.asyncio
async def test_bulk_transition_needs_orders(engine, staff):
    with pytest.raises(InvalidRequest):
        await engine.bulk_transition([], StageTransitionRequest(Stage.CUTTING), staff)


# ----------------------------------------------------------------------
# History and event ids
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_history_strictly_ordered_with_frozen_clock(guard):
    store = InMemoryAuditTrailStore()
    frozen = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
    engine = StageTransitionEngine(store, guard, clock=lambda: frozen)
    staff = ActorContext("staff-1", "Staff", "manufacturer")
    await _create(engine, staff, "ord-1")
    for stage in (Stage.PROOF_APPROVAL, Stage.MEASUREMENTS, Stage.CUTTING):
        await engine.transition("ord-1", StageTransitionRequest(stage), staff)

    times = [r.entered_at for r in await _history(store)]
    assert len(times) == 4
    assert all(a < b for a, b in zip(times, times[1:]))


@pytest.mark.asyncio
async def test_event_id_is_derived_from_committed_transition(engine, store, staff, order):
    outcome = await engine.apply_transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)

    assert outcome.event.timestamp == outcome.record.entered_at
    assert outcome.event.event_id == make_event_id("ord-1", Stage.CUTTING, outcome.record.entered_at)


@pytest.mark.asyncio
async def test_reads_are_scoped_to_organization(engine, staff, client_user, other_client, order):
    await engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)

    assert (await engine.get_current_state("ord-1", client_user)).current_stage is Stage.CUTTING
    assert [r.stage for r in await engine.get_history("ord-1", client_user)] == [
        Stage.DESIGN_PROPOSAL,
        Stage.CUTTING,
    ]
    with pytest.raises(OrderNotFound):
        await engine.get_current_state("ord-1", other_client)
    with pytest.raises(OrderNotFound):
        await engine.get_history("ord-1", other_client)


# ----------------------------------------------------------------------
# Listing
# ----------------------------------------------------------------------
async def _seed_listing(engine, staff):
    await _create(engine, staff, "ord-2")
    await engine.create_order(staff, organization_id="other-org", ship_date=SHIP_DATE, order_id="ord-3")


@pytest.mark.asyncio
async def test_client_lists_only_own_organization(engine, staff, client_user, other_client, order):
    await _seed_listing(engine, staff)

    page = await engine.list_orders(client_user)
    assert [o.id for o in page.orders] == ["ord-2", "ord-1"]
    assert page.total == 2

    # A client cannot widen the scope by naming another organization
    page = await engine.list_orders(client_user, organization_id="other-org")
    assert [o.id for o in page.orders] == ["ord-2", "ord-1"]

    page = await engine.list_orders(other_client)
    assert [o.id for o in page.orders] == ["ord-3"]


@pytest.mark.asyncio
async def test_manufacturer_lists_all_organizations(engine, staff, order):
    await _seed_listing(engine, staff)

    page = await engine.list_orders(staff)
    assert [o.id for o in page.orders] == ["ord-3", "ord-2", "ord-1"]
    assert page.total == 3

    page = await engine.list_orders(staff, organization_id=CLIENT_ORG)
    assert [o.id for o in page.orders] == ["ord-2", "ord-1"]


@pytest.mark.asyncio
async def test_list_orders_filters_by_stage_and_status(engine, staff, order):
    await _seed_listing(engine, staff)
    await engine.transition("ord-2", StageTransitionRequest(Stage.CUTTING), staff)
    await engine.cancel_order("ord-1", staff, "client withdrew")

    page = await engine.list_orders(staff, stage=Stage.CUTTING)
    assert [o.id for o in page.orders] == ["ord-2"]
    assert page.orders[0].current_stage is Stage.CUTTING

    page = await engine.list_orders(staff, status=OrderStatus.CANCELLED)
    assert [o.id for o in page.orders] == ["ord-1"]

    page = await engine.list_orders(staff, status=OrderStatus.ACTIVE, stage=Stage.DESIGN_PROPOSAL)
    assert [o.id for o in page.orders] == ["ord-3"]


@pytest.mark.asyncio
async def test_list_orders_pages(engine, staff, order):
    await _seed_listing(engine, staff)

    first = await engine.list_orders(staff, limit=2)
    second = await engine.list_orders(staff, limit=2, offset=2)

    assert [o.id for o in first.orders] == ["ord-3", "ord-2"]
    assert [o.id for o in second.orders] == ["ord-1"]
    assert first.total == second.total == 3
    assert second.to_dict()["offset"] == 2


@pytest.mark.asyncio
async def test_list_orders_rejects_bad_paging(engine, staff):
    for kwargs in ({"limit": 0}, {"limit": 101}, {"offset": -1}):
        with pytest.raises(InvalidRequest):
            await engine.list_orders(staff, **kwargs)

# ----------------------------------------------------------------------
# Publishing
# ----------------------------------------------------------------------
class BrokenQueue(InMemoryEventQueue):
    async def push(self, event):
        raise ConnectionError("queue unavailable")


@pytest.mark.asyncio
async def test_publish_failure_leaves_event_in_outbox(store, guard, staff):
    engine = StageTransitionEngine(store, guard, OutboxRelay(store, BrokenQueue()), clock=StepClock())
    await _create(engine, staff, "ord-1")

    event = await engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)

    assert await store.pending_events() == [event]
    working = InMemoryEventQueue()
    assert await OutboxRelay(store, working).flush() == 1
    assert working.pushed == [event]
    assert await store.pending_events() == []


# ----------------------------------------------------------------------
# Concurrency
# ----------------------------------------------------------------------
class BarrierStore(InMemoryAuditTrailStore):
    """Holds the first `readers` reads until all of them happened, so they see the same version."""

    def __init__(self, readers: int = 2):
        super().__init__()
        self._waiting = readers
        self._ready = asyncio.Event()
        self.conflicts = 0

    async def get_order(self, order_id):
        order = await super().get_order(order_id)
        if self._waiting > 0:
            self._waiting -= 1
            if self._waiting == 0:
                self._ready.set()
            await self._ready.wait()
        return order

    async def append(self, commit):
        try:
            return await super().append(commit)
        except ConflictError:
            self.conflicts += 1
            raise


@pytest.mark.asyncio
async def test_concurrent_transitions_both_commit_once(guard, staff):
    store = BarrierStore()
    engine = StageTransitionEngine(store, guard, clock=StepClock())
    await _create(engine, staff, "ord-1")

    await asyncio.gather(
        engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING, notes="first"), staff),
        engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING, notes="second"), staff),
    )

    assert store.conflicts == 1
    history = await _history(store)
    assert len(history) == 3
    assert sorted(r.notes for r in history[1:]) == ["first", "second"]
    assert history[1].entered_at < history[2].entered_at
    assert (await store.get_order("ord-1")).version == 2


class SewingFirstStore(BarrierStore):
    """Holds back the Cutting commit made against version 0 so the Sewing commit lands first."""

    async def append(self, commit):
        if commit.record.stage is Stage.CUTTING and commit.expected_version == 0:
            await asyncio.sleep(0.05)
        return await super().append(commit)


@pytest.mark.asyncio
async def test_concurrent_conflicting_targets_revalidate_on_retry(guard, staff):
    store = SewingFirstStore()
    engine = StageTransitionEngine(store, guard, clock=StepClock())
    await _create(engine, staff, "ord-1")

    sewing, cutting = await asyncio.gather(
        engine.transition("ord-1", StageTransitionRequest(Stage.SEWING), staff),
        engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff),
        return_exceptions=True,
    )

    assert sewing.new_stage is Stage.SEWING
    # The retry re-reads Sewing, from which Cutting is a backward move
    assert isinstance(cutting, InvalidTransition)
    assert store.conflicts == 1
    history = await _history(store)
    assert [r.stage for r in history] == [Stage.DESIGN_PROPOSAL, Stage.SEWING]
    order = await store.get_order("ord-1")
    assert order.current_stage is Stage.SEWING
    assert order.version == 1


class AlwaysConflictingStore(InMemoryAuditTrailStore):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def append(self, commit):
        self.attempts += 1
        raise ConflictError(commit.order.id, commit.expected_version)


@pytest.mark.asyncio
async def test_persistent_conflict_gives_up(guard, staff):
    store = AlwaysConflictingStore()
    engine = StageTransitionEngine(store, guard, max_retries=3, clock=StepClock())
    await _create(engine, staff, "ord-1")

    with pytest.raises(Conflict):
        await engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)

    assert store.attempts == 3
    assert len(await _history(store)) == 1


# ----------------------------------------------------------------------
# Ambiguous append timeouts
# ----------------------------------------------------------------------
class SlowAckStore(InMemoryAuditTrailStore):
    """The first append commits, then acknowledges later than the engine waits."""

    def __init__(self):
        super().__init__()
        self.appends = 0

    async def append(self, commit):
        self.appends += 1
        record = await super().append(commit)
        if self.appends == 1:
            await asyncio.sleep(1)
        return record


class SlowCommitStore(InMemoryAuditTrailStore):
    """The first append stalls before writing anything."""

    def __init__(self):
        super().__init__()
        self.appends = 0

    async def append(self, commit):
        self.appends += 1
        if self.appends == 1:
            await asyncio.sleep(1)
        return await super().append(commit)


@pytest.mark.asyncio
async def test_timed_out_append_that_committed_is_not_repeated(guard, staff):
    store = SlowAckStore()
    queue = InMemoryEventQueue()
    engine = StageTransitionEngine(
        store, guard, OutboxRelay(store, queue), append_timeout=0.05, clock=StepClock()
    )
    await _create(engine, staff, "ord-1")

    outcome = await engine.apply_transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)

    assert store.appends == 1
    history = await _history(store)
    assert len(history) == 2
    assert history[-1] == outcome.record
    assert outcome.order.version == 1
    assert queue.pushed == [outcome.event]


@pytest.mark.asyncio
async def test_timed_out_append_that_did_not_commit_is_retried(guard, staff):
    store = SlowCommitStore()
    engine = StageTransitionEngine(store, guard, append_timeout=0.05, clock=StepClock())
    await _create(engine, staff, "ord-1")

    await engine.transition("ord-1", StageTransitionRequest(Stage.CUTTING), staff)

    assert store.appends == 2
    assert len(await _history(store)) == 2
    assert (await store.get_order("ord-1")).current_stage is Stage.CUTTING
