"""Core data structures: orders, audit records, transition requests and events."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from stageflow.stages import Stage, parse_stage


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class OrderStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class DeliveryStatus(str, Enum):
    DELIVERED = "Delivered"
    DUPLICATE = "Duplicate"
    SKIPPED = "Skipped"
    FAILED = "DeliveryFailed"


class ClaimState(str, Enum):
    """Delivery-ledger state of one (event id, channel) pair."""

    NEW = "new"
    PENDING = "pending"
    DELIVERED = "delivered"


@dataclass(frozen=True, slots=True)
class ActorContext:
    """Who is asking: passed explicitly into every engine call."""

    actor_id: str
    role: str
    organization_id: str


@dataclass(slots=True)
class Order:
    """A custom-manufacturing order moving through the stage catalog."""

    id: str
    organization_id: str
    current_stage: Stage
    original_ship_date: date
    current_ship_date: date
    status: OrderStatus = OrderStatus.ACTIVE
    version: int = 0
    order_number: str = ""
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_closed(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    def copy(self) -> Order:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "order_number": self.order_number,
            "description": self.description,
            "current_stage": self.current_stage.value,
            "original_ship_date": _iso(self.original_ship_date),
            "current_ship_date": _iso(self.current_ship_date),
            "status": self.status.value,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True, slots=True)
class StageHistoryRecord:
    """One immutable audit entry. Never updated or deleted once committed."""

    id: str
    order_id: str
    stage: Stage
    entered_at: datetime
    actor_id: str
    previous_stage: Optional[Stage] = None
    notes: Optional[str] = None
    previous_ship_date: Optional[date] = None
    new_ship_date: Optional[date] = None
    change_reason: Optional[str] = None
    is_correction: bool = False

    @property
    def ship_date_changed(self) -> bool:
        return self.new_ship_date is not None and self.new_ship_date != self.previous_ship_date

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "stage": self.stage.value,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "entered_at": _iso(self.entered_at),
            "actor_id": self.actor_id,
            "notes": self.notes,
            "previous_ship_date": _iso(self.previous_ship_date),
            "new_ship_date": _iso(self.new_ship_date),
            "change_reason": self.change_reason,
            "is_correction": self.is_correction,
        }


@dataclass(frozen=True, slots=True)
class StageTransitionRequest:
    target_stage: Stage
    new_ship_date: Optional[date] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    is_correction: bool = False


def make_event_id(order_id: str, stage: Stage, committed_at: datetime) -> str:
    """Deterministic id: the same committed transition always hashes to the same event id."""
    raw = f"{order_id}|{stage.value}|{committed_at.isoformat()}"
    return hashlib.sha256(raw.encode()).hexdigest()


@dataclass(frozen=True, slots=True)
class TransitionEvent:
    event_id: str
    order_id: str
    organization_id: str
    previous_stage: Stage
    new_stage: Stage
    timestamp: datetime
    previous_ship_date: Optional[date] = None
    new_ship_date: Optional[date] = None
    is_correction: bool = False
    reason: Optional[str] = None
    order_status: OrderStatus = OrderStatus.ACTIVE

    @property
    def ship_date_changed(self) -> bool:
        return self.new_ship_date is not None and self.new_ship_date != self.previous_ship_date

    @property
    def stage_changed(self) -> bool:
        return self.previous_stage is not self.new_stage

    def to_message(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "eventId": self.event_id,
            "orderId": self.order_id,
            "organizationId": self.organization_id,
            "previousStage": self.previous_stage.value,
            "newStage": self.new_stage.value,
            "shipDateChanged": self.ship_date_changed,
            "timestamp": self.timestamp.isoformat(),
            "isCorrection": self.is_correction,
            "orderStatus": self.order_status.value,
        }
        if self.ship_date_changed:
            body["previousShipDate"] = _iso(self.previous_ship_date)
            body["newShipDate"] = _iso(self.new_ship_date)
        if self.reason:
            body["reason"] = self.reason
        return body

    @classmethod
    def from_message(cls, body: dict[str, Any]) -> TransitionEvent:
        return cls(
            event_id=body["eventId"],
            order_id=body["orderId"],
            organization_id=body["organizationId"],
            previous_stage=parse_stage(body["previousStage"]),
            new_stage=parse_stage(body["newStage"]),
            timestamp=datetime.fromisoformat(body["timestamp"]),
            previous_ship_date=_parse_date(body.get("previousShipDate")),
            new_ship_date=_parse_date(body.get("newShipDate")),
            is_correction=bool(body.get("isCorrection", False)),
            reason=body.get("reason"),
            order_status=OrderStatus(body.get("orderStatus", OrderStatus.ACTIVE.value)),
        )


@dataclass(frozen=True, slots=True)
class TransitionCommit:
    """Everything a store must write in one transaction."""

    order: Order
    expected_version: int
    record: StageHistoryRecord
    event: TransitionEvent


@dataclass(frozen=True, slots=True)
class TransitionOutcome:
    order: Order
    record: StageHistoryRecord
    event: TransitionEvent


@dataclass(slots=True)
class BulkTransitionFailure:
    order_id: str
    error: str
    message: str


@dataclass(slots=True)
class BulkTransitionResult:
    successful: list[TransitionOutcome] = field(default_factory=list)
    failed: list[BulkTransitionFailure] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    event_id: str
    channel: str
    status: DeliveryStatus
    attempts: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not DeliveryStatus.FAILED


@dataclass(slots=True)
class OrderPage:
    """One page of an order listing, newest first."""

    orders: list[Order]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "orders": [o.to_dict() for o in self.orders],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }
