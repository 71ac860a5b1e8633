"""
Stage transition engine.
Each request is validated against the stage catalog and the order's current row only (never its history),
then the order update, its audit record and the outbound event commit in one store transaction.
Version conflicts are retried with a fresh read; an append timeout is resolved by looking the
record up again instead of writing it twice.
"""
import asyncio
import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from stageflow.authz import AuthorizationGuard
from stageflow.errors import (
    Conflict,
    ConflictError,
    Forbidden,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    NoOpTransition,
    OrderNotFound,
    WorkflowError,
)
from stageflow.metrics import transition_conflicts_total, transitions_committed_total, transitions_rejected_total
from stageflow.models import (
    ActorContext,
    BulkTransitionFailure,
    BulkTransitionResult,
    Order,
    OrderPage,
    OrderStatus,
    StageHistoryRecord,
    StageTransitionRequest,
    TransitionCommit,
    TransitionEvent,
    TransitionOutcome,
    make_event_id,
    utcnow,
)
from stageflow.queue import OutboxRelay
from stageflow.stages import INITIAL_STAGE, Stage, TransitionKind, classify_transition, is_terminal
from stageflow.store import AuditTrailStore

logger = logging.getLogger(__name__)

# History must be strictly ordered by time, even when two commits land within one clock tick
_TICK = timedelta(microseconds=1)

PlanFn = Callable[[Order, str], TransitionCommit]

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class StageTransitionEngine:
    def __init__(
        self,
        store: AuditTrailStore,
        guard: AuthorizationGuard,
        relay: Optional[OutboxRelay] = None,
        *,
        max_retries: int = 3,
        append_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._guard = guard
        self._relay = relay
        self._max_retries = max_retries
        self._append_timeout = append_timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------
    async def transition(self, order_id: str, request: StageTransitionRequest, actor: ActorContext) -> TransitionEvent:
        outcome = await self.apply_transition(order_id, request, actor)
        return outcome.event

    async def apply_transition(
        self, order_id: str, request: StageTransitionRequest, actor: ActorContext
    ) -> TransitionOutcome:
        """Like transition(), but also returns the committed order snapshot and audit record."""
        outcome = await self._run(
            order_id,
            actor,
            lambda order, record_id: self._plan_transition(order, request, actor, record_id),
        )
        logger.info(
            "Order %s: %s -> %s by actor=%s%s",
            order_id,
            outcome.event.previous_stage.value,
            outcome.event.new_stage.value,
            actor.actor_id,
            " (correction)" if outcome.record.is_correction else "",
        )
        return outcome

    async def cancel_order(self, order_id: str, actor: ActorContext, reason: str) -> TransitionEvent:
        if not reason or not reason.strip():
            raise InvalidRequest("A reason is required to cancel an order", order_id=order_id)
        outcome = await self._run(
            order_id,
            actor,
            lambda order, record_id: self._plan_cancel(order, actor, reason.strip(), record_id),
        )
        logger.info("Order %s cancelled by actor=%s: %s", order_id, actor.actor_id, reason)
        return outcome.event

    async def bulk_transition(
        self, order_ids: Iterable[str], request: StageTransitionRequest, actor: ActorContext
    ) -> BulkTransitionResult:
        """Apply one request to many orders; a failing order never stops the rest."""
        ids = list(dict.fromkeys(order_ids))
        if not ids:
            raise InvalidRequest("At least one order ID is required")
        result = BulkTransitionResult()
        for order_id in ids:
            try:
                result.successful.append(await self.apply_transition(order_id, request, actor))
            except WorkflowError as e:
                result.failed.append(BulkTransitionFailure(order_id=order_id, error=e.code, message=e.message))
        logger.info(
            "Bulk transition to %s by actor=%s: %d succeeded, %d failed",
            request.target_stage.value, actor.actor_id, len(result.successful), len(result.failed),
        )
        return result

    async def create_order(
        self,
        actor: ActorContext,
        *,
        organization_id: str,
        ship_date: date,
        order_id: Optional[str] = None,
        order_number: str = "",
        description: str = "",
        initial_stage: Stage = INITIAL_STAGE,
        notes: Optional[str] = None,
    ) -> Order:
        if not self._guard.is_manufacturer(actor):
            transitions_rejected_total.labels(error=Forbidden.code).inc()
            raise Forbidden("Only the manufacturer may create orders")
        if organization_id == self._guard.manufacturer_organization_id:
            raise InvalidRequest("Orders belong to a client organization")
        now = self._clock()
        order = Order(
            id=order_id or str(uuid.uuid4()),
            organization_id=organization_id,
            current_stage=initial_stage,
            original_ship_date=ship_date,
            current_ship_date=ship_date,
            order_number=order_number,
            description=description,
            created_at=now,
            updated_at=now,
        )
        record = StageHistoryRecord(
            id=str(uuid.uuid4()),
            order_id=order.id,
            stage=initial_stage,
            entered_at=now,
            actor_id=actor.actor_id,
            notes=notes or "Order created",
            new_ship_date=ship_date,
        )
        created = await self._store.insert_order(order, record)
        logger.info("Order %s created for org=%s at stage %s", created.id, organization_id, initial_stage.value)
        return created

    async def _run(self, order_id: str, actor: ActorContext, plan: PlanFn) -> TransitionOutcome:
        try:
            outcome = await self._commit_with_retry(order_id, actor, plan)
        except WorkflowError as e:
            transitions_rejected_total.labels(error=e.code).inc()
            logger.warning("Rejected request on order_id=%s by actor=%s: %s (%s)", order_id, actor.actor_id, e.code, e)
            raise
        transitions_committed_total.labels(stage=outcome.event.new_stage.value).inc()
        # Committed: from here on nothing may fail the caller
        await self._publish(order_id)
        return outcome

    async def _commit_with_retry(self, order_id: str, actor: ActorContext, plan: PlanFn) -> TransitionOutcome:
        # One record id for the whole operation, so an ambiguous append can be looked up later
        record_id = str(uuid.uuid4())
        timed_out: list[TransitionCommit] = []
        for attempt in range(1, self._max_retries + 1):
            if timed_out:
                outcome = await self._resolve_ambiguous(record_id, timed_out)
                if outcome is not None:
                    return outcome
            order = await self._load_for_transition(order_id, actor)
            commit = plan(order, record_id)
            try:
                record = await asyncio.wait_for(self._store.append(commit), timeout=self._append_timeout)
            except ConflictError:
                transition_conflicts_total.inc()
                logger.warning(
                    "Version conflict on order_id=%s (attempt %d/%d), re-reading",
                    order_id, attempt, self._max_retries,
                )
                continue
            except asyncio.TimeoutError:
                timed_out.append(commit)
                logger.warning(
                    "Append timed out on order_id=%s (attempt %d/%d); outcome unknown, re-reading",
                    order_id, attempt, self._max_retries,
                )
                continue
            return self._outcome(commit, record)
        if timed_out:
            outcome = await self._resolve_ambiguous(record_id, timed_out)
            if outcome is not None:
                return outcome
        raise Conflict(
            f"Order {order_id} was modified concurrently; gave up after {self._max_retries} attempts",
            order_id=order_id,
        )

    async def _resolve_ambiguous(
        self, record_id: str, timed_out: list[TransitionCommit]
    ) -> Optional[TransitionOutcome]:
        """Find which timed-out append (if any) actually committed."""
        record = await self._store.get_record(record_id)
        if record is None:
            return None
        for commit in timed_out:
            if commit.record.entered_at == record.entered_at:
                logger.info("Append for order_id=%s had committed before its timeout", commit.order.id)
                return self._outcome(commit, record)
        return None

    async def _load_for_transition(self, order_id: str, actor: ActorContext) -> Order:
        order = await self._store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        if order.is_closed:
            raise InvalidState(f"Order {order_id} is {order.status.value}", order_id=order_id)
        self._guard.require_transition(actor, order)
        return order

    def _plan_transition(
        self, order: Order, request: StageTransitionRequest, actor: ActorContext, record_id: str
    ) -> TransitionCommit:
        target = request.target_stage
        kind = classify_transition(order.current_stage, target)
        revised = request.new_ship_date
        if revised is not None and revised == order.current_ship_date:
            revised = None

        if kind is TransitionKind.SAME and revised is None and not (request.notes or request.reason):
            raise NoOpTransition(
                f"Order {order.id} is already at {target.value}; nothing to amend",
                order_id=order.id,
            )
        if kind is TransitionKind.BACKWARD and not request.is_correction:
            raise InvalidTransition(
                f"Invalid stage transition from {order.current_stage.value} to {target.value}",
                order_id=order.id,
                current_stage=order.current_stage.value,
            )
        if revised is not None and not (request.reason and request.reason.strip()):
            raise InvalidRequest("A reason is required when changing the ship date", order_id=order.id)

        committed_at = self._commit_time(order)
        updated = order.copy()
        updated.current_stage = target
        if revised is not None:
            updated.current_ship_date = revised
        updated.status = OrderStatus.COMPLETED if is_terminal(target) else OrderStatus.ACTIVE
        updated.updated_at = committed_at
        record = StageHistoryRecord(
            id=record_id,
            order_id=order.id,
            stage=target,
            previous_stage=order.current_stage,
            entered_at=committed_at,
            actor_id=actor.actor_id,
            notes=request.notes,
            previous_ship_date=order.current_ship_date if revised is not None else None,
            new_ship_date=revised,
            change_reason=request.reason,
            is_correction=kind is TransitionKind.BACKWARD,
        )
        return TransitionCommit(updated, order.version, record, self._make_event(updated, record))

    def _plan_cancel(self, order: Order, actor: ActorContext, reason: str, record_id: str) -> TransitionCommit:
        committed_at = self._commit_time(order)
        updated = order.copy()
        updated.status = OrderStatus.CANCELLED
        updated.updated_at = committed_at
        record = StageHistoryRecord(
            id=record_id,
            order_id=order.id,
            stage=order.current_stage,
            previous_stage=order.current_stage,
            entered_at=committed_at,
            actor_id=actor.actor_id,
            notes="Order cancelled",
            change_reason=reason,
        )
        return TransitionCommit(updated, order.version, record, self._make_event(updated, record))

    def _commit_time(self, order: Order) -> datetime:
        return max(self._clock(), order.updated_at + _TICK)

    @staticmethod
    def _make_event(order: Order, record: StageHistoryRecord) -> TransitionEvent:
        return TransitionEvent(
            event_id=make_event_id(order.id, record.stage, record.entered_at),
            order_id=order.id,
            organization_id=order.organization_id,
            previous_stage=record.previous_stage or record.stage,
            new_stage=record.stage,
            timestamp=record.entered_at,
            previous_ship_date=record.previous_ship_date,
            new_ship_date=record.new_ship_date,
            is_correction=record.is_correction,
            reason=record.change_reason,
            order_status=order.status,
        )

    @staticmethod
    def _outcome(commit: TransitionCommit, record: StageHistoryRecord) -> TransitionOutcome:
        order = commit.order.copy()
        order.version = commit.expected_version + 1
        return TransitionOutcome(order=order, record=record, event=commit.event)

    async def _publish(self, order_id: str) -> None:
        if self._relay is None:
            return
        try:
            await self._relay.flush(order_id)
        except Exception:
            logger.exception("Publishing events for order_id=%s failed; left in outbox for the relay", order_id)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------
    async def get_current_state(self, order_id: str, actor: ActorContext) -> Order:
        order = await self._store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        self._guard.require_read(actor, order)
        return order

    async def list_orders(
        self,
        actor: ActorContext,
        *,
        status: Optional[OrderStatus] = None,
        stage: Optional[Stage] = None,
        organization_id: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> OrderPage:
        """
        Orders visible to the actor, newest first. Client actors are always scoped to
        their own organization; only the manufacturer may filter by organization_id.
        """
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidRequest(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise InvalidRequest("offset must not be negative")
        if not self._guard.is_manufacturer(actor):
            organization_id = actor.organization_id
        orders, total = await self._store.list_orders(organization_id, status, stage, limit, offset)
        return OrderPage(orders=orders, total=total, limit=limit, offset=offset)

    async def get_history(self, order_id: str, actor: ActorContext) -> list[StageHistoryRecord]:
        await self.get_current_state(order_id, actor)
        return [record async for record in self._store.history(order_id)]
