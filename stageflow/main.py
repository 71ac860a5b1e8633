import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from stageflow.authz import AuthorizationGuard
from stageflow.config import settings
from stageflow.db import PostgresAuditTrailStore, close_pool, get_pool, init_schema
from stageflow.engine import StageTransitionEngine
from stageflow.errors import (
    Conflict,
    Forbidden,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    NoOpTransition,
    OrderNotFound,
    WorkflowError,
)
from stageflow.metrics import get_metrics_bytes, get_metrics_content_type, queue_messages_waiting, sqs_queue_messages_in_flight
from stageflow.queue import OutboxRelay, RedisEventQueue, SqsEventQueue
from stageflow.redis_client import close_redis, get_redis
from stageflow.routes import admin, orders
from stageflow.sqs_client import get_queue_depth

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    OrderNotFound: 404,
    Forbidden: 403,
    InvalidState: 409,
    Conflict: 409,
    NoOpTransition: 400,
    InvalidTransition: 400,
    InvalidRequest: 400,
}


def status_code_for(exc: WorkflowError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "engine", None) is not None:
        # Components injected by create_app(); nothing to connect
        yield
        return
    pool = await get_pool()
    await init_schema(pool)
    if settings.sqs_queue_url:
        queue = SqsEventQueue()
    else:
        queue = RedisEventQueue(await get_redis(), settings.queue_partitions)
    store = PostgresAuditTrailStore(pool)
    guard = AuthorizationGuard(settings.manufacturer_organization_id)
    relay = OutboxRelay(store, queue)
    app.state.guard = guard
    app.state.queue = queue
    app.state.relay = relay
    app.state.engine = StageTransitionEngine(
        store,
        guard,
        relay,
        max_retries=settings.transition_max_retries,
        append_timeout=settings.store_append_timeout_seconds,
    )
    logger.info("API ready. Queue backend=%s", "SQS" if settings.sqs_queue_url else "Redis")
    yield
    await close_redis()
    await close_pool()


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"error": exc.code, "message": exc.message},
    )


def create_app(
    engine: StageTransitionEngine | None = None,
    *,
    guard: AuthorizationGuard | None = None,
    relay: OutboxRelay | None = None,
    queue=None,
) -> FastAPI:
    app = FastAPI(title="Stage Workflow Engine", lifespan=lifespan)
    if engine is not None:
        app.state.engine = engine
        app.state.guard = guard
        app.state.relay = relay
        app.state.queue = queue
    app.add_exception_handler(WorkflowError, workflow_error_handler)
    app.include_router(orders.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        """Prometheus scrape endpoint: transitions, outbox publishing, queue depth."""
        try:
            if settings.sqs_queue_url:
                waiting, in_flight = await get_queue_depth()
                queue_messages_waiting.set(waiting)
                sqs_queue_messages_in_flight.set(in_flight)
            elif hasattr(request.app.state.queue, "depth"):
                queue_messages_waiting.set(await request.app.state.queue.depth())
        except Exception:
            logger.warning("Could not read queue depth for /metrics", exc_info=True)
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()
