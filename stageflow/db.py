"""
Async Postgres: orders (current state + version), stage_history (append-only audit trail),
transition_outbox (events committed with their transition, published later) and
organization_contacts (notification recipients).
Each transition is one transaction: conditional order update on version, history insert, outbox insert.
"""
import json
import uuid
from typing import AsyncIterator, List, Optional, Tuple

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from stageflow.config import settings
from stageflow.errors import ConflictError, InvalidRequest
from stageflow.models import Order, OrderStatus, StageHistoryRecord, TransitionCommit, TransitionEvent
from stageflow.stages import Stage
from stageflow.store import AuditTrailStore

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(255) PRIMARY KEY,
                organization_id VARCHAR(255) NOT NULL,
                order_number VARCHAR(50) NOT NULL DEFAULT '',
                description VARCHAR(500) NOT NULL DEFAULT '',
                current_stage VARCHAR(50) NOT NULL,
                current_ship_date DATE NOT NULL,
                original_ship_date DATE NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'Active',
                version INT NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_organization_id
            ON orders(organization_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS stage_history (
                id UUID PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL REFERENCES orders(id),
                stage VARCHAR(50) NOT NULL,
                previous_stage VARCHAR(50),
                entered_at TIMESTAMPTZ NOT NULL,
                actor_id VARCHAR(200) NOT NULL,
                notes VARCHAR(1000),
                previous_ship_date DATE,
                new_ship_date DATE,
                change_reason VARCHAR(500),
                is_correction BOOLEAN NOT NULL DEFAULT FALSE
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_stage_history_order_entered
            ON stage_history(order_id, entered_at);
        """)
        await conn.execute("""
            CREATE OR REPLACE FUNCTION stage_history_append_only() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'stage_history is append-only';
            END;
            $$ LANGUAGE plpgsql;
        """)
        await conn.execute("DROP TRIGGER IF EXISTS stage_history_no_mutation ON stage_history;")
        await conn.execute("""
            CREATE TRIGGER stage_history_no_mutation
            BEFORE UPDATE OR DELETE ON stage_history
            FOR EACH ROW EXECUTE FUNCTION stage_history_append_only();
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS transition_outbox (
                seq BIGSERIAL PRIMARY KEY,
                event_id VARCHAR(64) NOT NULL UNIQUE,
                order_id VARCHAR(255) NOT NULL,
                payload JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                published_at TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_transition_outbox_pending
            ON transition_outbox(order_id, seq) WHERE published_at IS NULL;
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS organization_contacts (
                organization_id VARCHAR(255) PRIMARY KEY,
                name VARCHAR(200) NOT NULL DEFAULT '',
                email VARCHAR(320),
                phone VARCHAR(20),
                email_enabled BOOLEAN NOT NULL DEFAULT TRUE,
                sms_enabled BOOLEAN NOT NULL DEFAULT FALSE
            );
        """)


def _row_to_order(row: asyncpg.Record) -> Order:
    return Order(
        id=row["id"],
        organization_id=row["organization_id"],
        order_number=row["order_number"],
        description=row["description"],
        current_stage=Stage(row["current_stage"]),
        current_ship_date=row["current_ship_date"],
        original_ship_date=row["original_ship_date"],
        status=OrderStatus(row["status"]),
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_record(row: asyncpg.Record) -> StageHistoryRecord:
    return StageHistoryRecord(
        id=str(row["id"]),
        order_id=row["order_id"],
        stage=Stage(row["stage"]),
        previous_stage=Stage(row["previous_stage"]) if row["previous_stage"] else None,
        entered_at=row["entered_at"],
        actor_id=row["actor_id"],
        notes=row["notes"],
        previous_ship_date=row["previous_ship_date"],
        new_ship_date=row["new_ship_date"],
        change_reason=row["change_reason"],
        is_correction=row["is_correction"],
    )


async def _insert_record(conn: asyncpg.Connection, record: StageHistoryRecord) -> None:
    await conn.execute(
        """
        INSERT INTO stage_history (id, order_id, stage, previous_stage, entered_at, actor_id, notes,
                                   previous_ship_date, new_ship_date, change_reason, is_correction)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11);
        """,
        uuid.UUID(record.id),
        record.order_id,
        record.stage.value,
        record.previous_stage.value if record.previous_stage else None,
        record.entered_at,
        record.actor_id,
        record.notes,
        record.previous_ship_date,
        record.new_ship_date,
        record.change_reason,
        record.is_correction,
    )


class PostgresAuditTrailStore(AuditTrailStore):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        return _row_to_order(row) if row is not None else None

    async def list_orders(
        self,
        organization_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        stage: Optional[Stage] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        conditions: List[str] = []
        args: list = []
        for column, value in (
            ("organization_id", organization_id),
            ("status", status.value if status else None),
            ("current_stage", stage.value if stage else None),
        ):
            if value is not None:
                args.append(value)
                conditions.append(f"{column} = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        async with self._pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM orders {where};", *args)
            rows = await conn.fetch(
                f"""
                SELECT * FROM orders {where}
                ORDER BY created_at DESC, id
                LIMIT ${len(args) + 1} OFFSET ${len(args) + 2};
                """,
                *args,
                limit,
                offset,
            )
        return [_row_to_order(r) for r in rows], total

    async def insert_order(self, order: Order, record: StageHistoryRecord) -> Order:
        async with self._pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO orders (id, organization_id, order_number, description, current_stage,
                                            current_ship_date, original_ship_date, status, version,
                                            created_at, updated_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11);
                        """,
                        order.id,
                        order.organization_id,
                        order.order_number,
                        order.description,
                        order.current_stage.value,
                        order.current_ship_date,
                        order.original_ship_date,
                        order.status.value,
                        order.version,
                        order.created_at,
                        order.updated_at,
                    )
                    await _insert_record(conn, record)
            except UniqueViolationError:
                raise InvalidRequest(f"Order {order.id} already exists", order_id=order.id)
        return order

    async def append(self, commit: TransitionCommit) -> StageHistoryRecord:
        order = commit.order
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                status = await conn.execute(
                    """
                    UPDATE orders
                    SET current_stage = $1, current_ship_date = $2, status = $3,
                        version = version + 1, updated_at = $4
                    WHERE id = $5 AND version = $6;
                    """,
                    order.current_stage.value,
                    order.current_ship_date,
                    order.status.value,
                    order.updated_at,
                    order.id,
                    commit.expected_version,
                )
                if status.split()[-1] == "0":
                    raise ConflictError(order.id, commit.expected_version)
                await _insert_record(conn, commit.record)
                await conn.execute(
                    """
                    INSERT INTO transition_outbox (event_id, order_id, payload)
                    VALUES ($1, $2, $3::jsonb);
                    """,
                    commit.event.event_id,
                    order.id,
                    json.dumps(commit.event.to_message()),
                )
        return commit.record

    async def get_record(self, record_id: str) -> Optional[StageHistoryRecord]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM stage_history WHERE id = $1;", uuid.UUID(record_id))
        return _row_to_record(row) if row is not None else None

    async def history(self, order_id: str) -> AsyncIterator[StageHistoryRecord]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                async for row in conn.cursor(
                    "SELECT * FROM stage_history WHERE order_id = $1 ORDER BY entered_at, id;",
                    order_id,
                ):
                    yield _row_to_record(row)

    async def pending_events(self, order_id: Optional[str] = None, limit: int = 100) -> List[TransitionEvent]:
        async with self._pool.acquire() as conn:
            if order_id is None:
                rows = await conn.fetch(
                    "SELECT payload FROM transition_outbox WHERE published_at IS NULL ORDER BY seq LIMIT $1;",
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT payload FROM transition_outbox
                    WHERE published_at IS NULL AND order_id = $1
                    ORDER BY seq LIMIT $2;
                    """,
                    order_id,
                    limit,
                )
        return [TransitionEvent.from_message(json.loads(r["payload"])) for r in rows]

    async def mark_published(self, event_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE transition_outbox SET published_at = NOW() WHERE event_id = $1 AND published_at IS NULL;",
                event_id,
            )


async def fetch_organization_contact(pool: asyncpg.Pool, organization_id: str) -> asyncpg.Record | None:
    async with pool.acquire() as conn:
        return await conn.fetchrow(
            "SELECT * FROM organization_contacts WHERE organization_id = $1;",
            organization_id,
        )
