from datetime import date

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from stageflow.engine import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, StageTransitionEngine
from stageflow.errors import InvalidRequest
from stageflow.models import ActorContext, OrderStatus, StageTransitionRequest
from stageflow.stages import INITIAL_STAGE, Stage, parse_stage

router = APIRouter(prefix="/orders", tags=["orders"])


def get_engine(request: Request) -> StageTransitionEngine:
    return request.app.state.engine


def get_actor(
    x_actor_id: str = Header(..., description="Authenticated user id"),
    x_actor_role: str = Header(..., description="Authenticated user role"),
    x_organization_id: str = Header(..., description="Organization the user belongs to"),
) -> ActorContext:
    """Actor context as resolved by the identity layer in front of this service."""
    return ActorContext(actor_id=x_actor_id, role=x_actor_role, organization_id=x_organization_id)


class TransitionBody(BaseModel):
    target_stage: Stage = Field(..., description="Stage value or display name, e.g. 'ProductionPlanning'")
    new_ship_date: date | None = Field(default=None, description="Revised ship date, if it changes")
    reason: str | None = Field(default=None, max_length=500, description="Change reason; required with a new ship date")
    notes: str | None = Field(default=None, max_length=1000)
    is_correction: bool = Field(default=False, description="Must be set to move an order backward")

    @field_validator("target_stage", mode="before")
    @classmethod
    def _parse_stage(cls, value):
        return parse_stage(value)

    def to_request(self) -> StageTransitionRequest:
        return StageTransitionRequest(
            target_stage=self.target_stage,
            new_ship_date=self.new_ship_date,
            reason=self.reason,
            notes=self.notes,
            is_correction=self.is_correction,
        )


class BulkTransitionBody(TransitionBody):
    order_ids: list[str] = Field(..., description="Orders to move; each succeeds or fails on its own")


class CreateOrderBody(BaseModel):
    organization_id: str = Field(..., description="Client organization that owns the order")
    ship_date: date = Field(..., description="Promised ship date; kept as the original ship date")
    order_id: str | None = None
    order_number: str = Field(default="", max_length=50)
    description: str = Field(default="", max_length=500)
    initial_stage: Stage = INITIAL_STAGE
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("initial_stage", mode="before")
    @classmethod
    def _parse_stage(cls, value):
        return parse_stage(value)


class CancelBody(BaseModel):
    reason: str = Field(..., max_length=500)


@router.post("")
async def create_order(
    body: CreateOrderBody,
    actor: ActorContext = Depends(get_actor),
    engine: StageTransitionEngine = Depends(get_engine),
) -> JSONResponse:
    order = await engine.create_order(
        actor,
        organization_id=body.organization_id,
        ship_date=body.ship_date,
        order_id=body.order_id,
        order_number=body.order_number,
        description=body.description,
        initial_stage=body.initial_stage,
        notes=body.notes,
    )
    return JSONResponse(status_code=201, content=order.to_dict())


@router.get("")
async def list_orders(
    status: OrderStatus | None = Query(default=None, description="Active, Completed or Cancelled"),
    stage: str | None = Query(default=None, description="Stage value or display name"),
    organization_id: str | None = Query(default=None, description="Manufacturer only; clients always see their own"),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    actor: ActorContext = Depends(get_actor),
    engine: StageTransitionEngine = Depends(get_engine),
) -> JSONResponse:
    try:
        stage_filter = parse_stage(stage) if stage else None
    except ValueError as e:
        raise InvalidRequest(str(e)) from None
    page = await engine.list_orders(
        actor, status=status, stage=stage_filter, organization_id=organization_id, limit=limit, offset=offset,
    )
    return JSONResponse(status_code=200, content=page.to_dict())


@router.post("/bulk-transition")
async def bulk_transition(
    body: BulkTransitionBody,
    actor: ActorContext = Depends(get_actor),
    engine: StageTransitionEngine = Depends(get_engine),
) -> JSONResponse:
    """Same transition for many orders. Always 200; per-order failures are listed, not raised."""
    result = await engine.bulk_transition(body.order_ids, body.to_request(), actor)
    return JSONResponse(
        status_code=200,
        content={
            "successful": [o.order.id for o in result.successful],
            "failed": [{"order_id": f.order_id, "error": f.error, "message": f.message} for f in result.failed],
        },
    )


@router.post("/{order_id}/transition")
async def transition_order(
    order_id: str,
    body: TransitionBody,
    actor: ActorContext = Depends(get_actor),
    engine: StageTransitionEngine = Depends(get_engine),
) -> JSONResponse:
    """
    Move an order to another stage and/or revise its ship date.
    Returns the committed order snapshot and the audit record written for it.
    """
    outcome = await engine.apply_transition(order_id, body.to_request(), actor)
    return JSONResponse(
        status_code=200,
        content={
            "order": outcome.order.to_dict(),
            "record": outcome.record.to_dict(),
            "event_id": outcome.event.event_id,
        },
    )


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancelBody,
    actor: ActorContext = Depends(get_actor),
    engine: StageTransitionEngine = Depends(get_engine),
) -> JSONResponse:
    event = await engine.cancel_order(order_id, actor, body.reason)
    return JSONResponse(status_code=200, content={"status": "cancelled", "event_id": event.event_id})


@router.get("/{order_id}")
async def get_current_state(
    order_id: str,
    actor: ActorContext = Depends(get_actor),
    engine: StageTransitionEngine = Depends(get_engine),
) -> JSONResponse:
    order = await engine.get_current_state(order_id, actor)
    return JSONResponse(status_code=200, content=order.to_dict())


@router.get("/{order_id}/history")
async def get_history(
    order_id: str,
    actor: ActorContext = Depends(get_actor),
    engine: StageTransitionEngine = Depends(get_engine),
) -> JSONResponse:
    records = await engine.get_history(order_id, actor)
    return JSONResponse(
        status_code=200,
        content={"order_id": order_id, "records": [r.to_dict() for r in records]},
    )
