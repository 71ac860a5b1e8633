"""
Outbound transition events. Backend: Redis lists sharded by order id or AWS SQS FIFO when SQS_QUEUE_URL is set.
- Redis: one consumer per partition, so events of one order are dispatched in commit order.
  BLMOVE into a processing list keeps an in-flight event until it is acked.
- SQS: FIFO queue, MessageGroupId = order id, MessageDeduplicationId = event id.
The outbox relay moves committed events from the store onto the queue.
"""
import asyncio
import json
import logging
import time
import zlib
from dataclasses import dataclass

import redis.asyncio as redis

from stageflow.metrics import events_dead_lettered_total, events_published_total
from stageflow.models import TransitionEvent
from stageflow.sqs_client import replay_dlq_to_main, send_message, send_message_to_dlq
from stageflow.store import AuditTrailStore

logger = logging.getLogger(__name__)

TRANSITION_QUEUE_KEY = "queue:transition_events"
TRANSITION_DLQ_KEY = "queue:transition_events:dlq"


def partition_for(order_id: str, partitions: int) -> int:
    return zlib.crc32(order_id.encode()) % partitions


def partition_key(partition: int) -> str:
    return f"{TRANSITION_QUEUE_KEY}:{partition}"


def processing_key(partition: int) -> str:
    return f"{TRANSITION_QUEUE_KEY}:{partition}:processing"


def make_dead_letter(event: TransitionEvent, channel: str, error: str | None, attempts: int) -> dict:
    return {
        "event": event.to_message(),
        "channel": channel,
        "attempts": attempts,
        "last_error": error,
        "failed_at": time.time(),
    }


@dataclass(frozen=True)
class QueuedEvent:
    event: TransitionEvent
    partition: int
    receipt: str


class RedisEventQueue:
    def __init__(self, r: redis.Redis, partitions: int):
        self._redis = r
        self.partitions = partitions

    async def push(self, event: TransitionEvent) -> None:
        p = partition_for(event.order_id, self.partitions)
        await self._redis.lpush(partition_key(p), json.dumps(event.to_message()))

    async def pop(self, partition: int, timeout: float) -> QueuedEvent | None:
        raw = await self._redis.blmove(
            partition_key(partition), processing_key(partition), timeout, src="RIGHT", dest="LEFT",
        )
        if raw is None:
            return None
        return QueuedEvent(TransitionEvent.from_message(json.loads(raw)), partition, raw)

    async def ack(self, item: QueuedEvent) -> None:
        await self._redis.lrem(processing_key(item.partition), 1, item.receipt)

    async def recover(self, partition: int) -> int:
        """Return events left in the processing list by a crashed worker to the head of the queue."""
        moved = 0
        while await self._redis.lmove(processing_key(partition), partition_key(partition), "LEFT", "RIGHT"):
            moved += 1
        if moved:
            logger.warning("Recovered %d in-flight event(s) on partition %d", moved, partition)
        return moved

    async def push_dead_letter(self, body: dict) -> None:
        await self._redis.lpush(TRANSITION_DLQ_KEY, json.dumps(body))
        events_dead_lettered_total.inc()

    async def replay_dead_letters(self, limit: int = 100) -> int:
        replayed = 0
        while replayed < limit:
            raw = await self._redis.rpop(TRANSITION_DLQ_KEY)
            if raw is None:
                break
            replayed += 1
            try:
                event = TransitionEvent.from_message(json.loads(raw)["event"])
            except (json.JSONDecodeError, KeyError, ValueError):
                logger.warning("Dropping malformed dead letter: %s", raw[:200])
                continue
            await self.push(event)
        return replayed

    async def depth(self) -> int:
        total = 0
        for p in range(self.partitions):
            total += await self._redis.llen(partition_key(p))
        return total


class SqsEventQueue:
    async def push(self, event: TransitionEvent) -> None:
        await send_message(event.to_message(), group_id=event.order_id, deduplication_id=event.event_id)

    async def push_dead_letter(self, body: dict) -> None:
        await send_message_to_dlq(body, group_id=body["event"]["orderId"])
        events_dead_lettered_total.inc()

    async def replay_dead_letters(self, limit: int = 100) -> int:
        return await replay_dlq_to_main(limit=limit)


class InMemoryEventQueue:
    """
    Partitioned asyncio queues with the same interface as RedisEventQueue, for tests and
    single-process runs. Nothing survives a restart, so recover() has nothing to return.
    """

    def __init__(self, partitions: int = 1):
        self.partitions = partitions
        self._queues = [asyncio.Queue() for _ in range(partitions)]
        self.dead_letters: list[dict] = []
        self.pushed: list[TransitionEvent] = []

    async def push(self, event: TransitionEvent) -> None:
        self.pushed.append(event)
        await self._queues[partition_for(event.order_id, self.partitions)].put(event)

    async def pop(self, partition: int, timeout: float) -> QueuedEvent | None:
        try:
            event = await asyncio.wait_for(self._queues[partition].get(), timeout)
        except asyncio.TimeoutError:
            return None
        return QueuedEvent(event, partition, event.event_id)

    async def ack(self, item: QueuedEvent) -> None:
        self._queues[item.partition].task_done()

    async def recover(self, partition: int) -> int:
        return 0

    async def push_dead_letter(self, body: dict) -> None:
        self.dead_letters.append(body)
        events_dead_lettered_total.inc()

    async def replay_dead_letters(self, limit: int = 100) -> int:
        batch, self.dead_letters = self.dead_letters[:limit], self.dead_letters[limit:]
        for body in batch:
            await self.push(TransitionEvent.from_message(body["event"]))
        return len(batch)

    async def depth(self) -> int:
        return sum(q.qsize() for q in self._queues)


class OutboxRelay:
    """Publishes unpublished outbox events in commit order; stops at the first push failure."""

    def __init__(self, store: AuditTrailStore, queue):
        self._store = store
        self._queue = queue

    async def flush(self, order_id: str | None = None, limit: int = 100) -> int:
        published = 0
        for event in await self._store.pending_events(order_id, limit):
            await self._queue.push(event)
            await self._store.mark_published(event.event_id)
            events_published_total.inc()
            published += 1
        if published:
            logger.info("Published %d transition event(s)%s", published, f" for order_id={order_id}" if order_id else "")
        return published


async def run_outbox_relay(relay: OutboxRelay, shutdown_event: asyncio.Event, interval: float) -> None:
    """Background sweep for events whose immediate publish failed."""
    while not shutdown_event.is_set():
        try:
            await relay.flush()
        except Exception:
            logger.exception("Outbox relay sweep failed; retrying in %.1fs", interval)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
