from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from stageflow.errors import Forbidden
from stageflow.models import ActorContext
from stageflow.routes.orders import get_actor

router = APIRouter(prefix="/admin", tags=["admin"])


def require_manufacturer(request: Request, actor: ActorContext = Depends(get_actor)) -> ActorContext:
    if not request.app.state.guard.is_manufacturer(actor):
        raise Forbidden("Admin operations are limited to manufacturer staff")
    return actor


@router.post("/dlq/replay")
async def dlq_replay(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    actor: ActorContext = Depends(require_manufacturer),
) -> JSONResponse:
    """
    Re-drive failed deliveries: each DLQ entry's event goes back onto the main queue.
    Channels that already delivered it are skipped by the delivery ledger.
    Returns number of messages replayed.
    """
    replayed = await request.app.state.queue.replay_dead_letters(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )


@router.post("/outbox/flush")
async def outbox_flush(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    actor: ActorContext = Depends(require_manufacturer),
) -> JSONResponse:
    """Publish committed events still waiting in the outbox."""
    published = await request.app.state.relay.flush(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "published": published},
    )
