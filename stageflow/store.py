"""
Audit trail store contract plus an in-memory implementation.
The store owns orders, their append-only stage history and the transition outbox.
History records have no update or delete path.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import AsyncIterator, Dict, List, Optional, Tuple

from stageflow.errors import ConflictError, InvalidRequest
from stageflow.models import Order, OrderStatus, StageHistoryRecord, TransitionCommit, TransitionEvent
from stageflow.stages import Stage


class AuditTrailStore(ABC):
    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def list_orders(
        self,
        organization_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        stage: Optional[Stage] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        """Matching orders newest first, sliced by limit/offset, plus the unsliced match count."""

    @abstractmethod
    async def insert_order(self, order: Order, record: StageHistoryRecord) -> Order:
        """Create the order together with the record of its initial stage."""

    @abstractmethod
    async def append(self, commit: TransitionCommit) -> StageHistoryRecord:
        """
        In one transaction: update the order if its version still equals
        commit.expected_version, append commit.record, enqueue commit.event in the outbox.
        Raises ConflictError when the version moved on.
        """

    @abstractmethod
    async def get_record(self, record_id: str) -> Optional[StageHistoryRecord]:
        ...

    @abstractmethod
    def history(self, order_id: str) -> AsyncIterator[StageHistoryRecord]:
        """Records for one order, oldest first. Each call starts a fresh iteration."""

    @abstractmethod
    async def pending_events(self, order_id: Optional[str] = None, limit: int = 100) -> List[TransitionEvent]:
        """Unpublished outbox events in commit order."""

    @abstractmethod
    async def mark_published(self, event_id: str) -> None:
        ...


class InMemoryAuditTrailStore(AuditTrailStore):
    """Dictionary-backed store for tests and single-process runs."""

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._records: Dict[str, List[StageHistoryRecord]] = {}
        self._records_by_id: Dict[str, StageHistoryRecord] = {}
        self._outbox: "OrderedDict[str, TransitionEvent]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.copy() if order is not None else None

    async def list_orders(
        self,
        organization_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        stage: Optional[Stage] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        matches = [
            o for o in self._orders.values()
            if (organization_id is None or o.organization_id == organization_id)
            and (status is None or o.status is status)
            and (stage is None or o.current_stage is stage)
        ]
        # Ties on created_at: latest inserted first
        matches.reverse()
        matches.sort(key=lambda o: o.created_at, reverse=True)
        return [o.copy() for o in matches[offset:offset + limit]], len(matches)

    async def insert_order(self, order: Order, record: StageHistoryRecord) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise InvalidRequest(f"Order {order.id} already exists", order_id=order.id)
            self._orders[order.id] = order.copy()
            self._add_record(record)
        return order.copy()

    async def append(self, commit: TransitionCommit) -> StageHistoryRecord:
        async with self._lock:
            current = self._orders.get(commit.order.id)
            if current is None or current.version != commit.expected_version:
                raise ConflictError(commit.order.id, commit.expected_version)
            updated = commit.order.copy()
            updated.version = commit.expected_version + 1
            self._orders[updated.id] = updated
            self._add_record(commit.record)
            self._outbox[commit.event.event_id] = commit.event
        return commit.record

    def _add_record(self, record: StageHistoryRecord) -> None:
        self._records.setdefault(record.order_id, []).append(record)
        self._records_by_id[record.id] = record

    async def get_record(self, record_id: str) -> Optional[StageHistoryRecord]:
        return self._records_by_id.get(record_id)

    async def history(self, order_id: str) -> AsyncIterator[StageHistoryRecord]:
        for record in tuple(self._records.get(order_id, ())):
            yield record

    async def pending_events(self, order_id: Optional[str] = None, limit: int = 100) -> List[TransitionEvent]:
        events = [e for e in self._outbox.values() if order_id is None or e.order_id == order_id]
        return events[:limit]

    async def mark_published(self, event_id: str) -> None:
        self._outbox.pop(event_id, None)
