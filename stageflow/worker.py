"""
Dispatch worker: pull transition events from Redis partitions or AWS SQS FIFO and deliver notifications.
- Redis: one consumer task per assigned partition, so each order's events go out in commit order.
  Events are acked only after dispatch; a crashed worker's in-flight event is recovered on start.
- SQS: messages of one MessageGroupId (order id) are processed sequentially.
- Outbox relay sweep republishes events whose immediate publish failed.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m stageflow.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
from itertools import groupby

from stageflow.channels import EmailChannel, NotificationChannel, PostgresContactDirectory, SmsChannel
from stageflow.config import settings
from stageflow.db import PostgresAuditTrailStore, close_pool, get_pool, init_schema
from stageflow.dispatcher import NotificationDispatcher
from stageflow.metrics import queue_messages_waiting
from stageflow.models import TransitionEvent
from stageflow.queue import OutboxRelay, RedisEventQueue, SqsEventQueue, run_outbox_relay
from stageflow.redis_client import RedisDeliveryLedger, close_redis, get_redis
from stageflow.sqs_client import change_message_visibility, delete_message, receive_messages

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

POP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def build_channels(directory) -> list[NotificationChannel]:
    channels: list[NotificationChannel] = []
    if settings.email_api_key:
        channels.append(EmailChannel(
            directory,
            api_url=settings.email_api_url,
            api_key=settings.email_api_key,
            sender=settings.email_from,
            timeout=settings.notification_timeout_seconds,
        ))
    if settings.sms_account_sid and settings.sms_auth_token and settings.sms_from_number:
        channels.append(SmsChannel(
            directory,
            api_base=settings.sms_api_base,
            account_sid=settings.sms_account_sid,
            auth_token=settings.sms_auth_token,
            from_number=settings.sms_from_number,
            timeout=settings.notification_timeout_seconds,
        ))
    if not channels:
        logger.warning("No notification channel configured; events will be consumed without sending")
    return channels


def build_dispatcher(channels, ledger, dead_letters) -> NotificationDispatcher:
    return NotificationDispatcher(
        channels,
        ledger,
        dead_letters=dead_letters,
        max_attempts=settings.dispatch_max_attempts,
        backoff_base=settings.dispatch_backoff_base_seconds,
        backoff_max=settings.dispatch_backoff_max_seconds,
    )


def assigned_partitions(partitions: int, worker_index: int, worker_count: int) -> list[int]:
    return [p for p in range(partitions) if p % worker_count == worker_index]


def summarize(results) -> str:
    return ", ".join(f"{r.channel}={r.status.value}" for r in results) or "no channels"


async def consume_partition(
    queue,
    partition: int,
    dispatcher: NotificationDispatcher,
    sem: asyncio.Semaphore,
    shutdown_event: asyncio.Event,
    pop_timeout: float = POP_TIMEOUT,
) -> None:
    """Dispatch one partition's events strictly one after another."""
    try:
        await queue.recover(partition)
    except Exception:
        logger.exception("Recover failed on partition %d; in-flight events wait for the next start", partition)
    while not shutdown_event.is_set():
        try:
            item = await queue.pop(partition, pop_timeout)
        except Exception:
            logger.exception("Pop failed on partition %d, retrying in 1s", partition)
            await asyncio.sleep(1)
            continue
        if item is None:
            continue
        async with sem:
            results = await dispatcher.dispatch(item.event)
        logger.info(
            "Dispatched event_id=%s order_id=%s %s -> %s: %s",
            item.event.event_id, item.event.order_id,
            item.event.previous_stage.value, item.event.new_stage.value, summarize(results),
        )
        try:
            await queue.ack(item)
        except Exception:
            # Unacked events are recovered on restart; the delivery ledger skips what was already sent
            logger.exception("Ack failed for event_id=%s on partition %d", item.event.event_id, partition)


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    r = await get_redis()
    queue = RedisEventQueue(r, settings.queue_partitions)
    ledger = RedisDeliveryLedger(r, settings.delivery_claim_ttl_seconds, settings.delivery_dedup_ttl_seconds)
    dispatcher = build_dispatcher(build_channels(PostgresContactDirectory(pool)), ledger, queue)
    relay = OutboxRelay(PostgresAuditTrailStore(pool), queue)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    partitions = assigned_partitions(settings.queue_partitions, settings.worker_index, settings.worker_count)
    logger.info(
        "Schema ready. Backend=Redis. Partitions %s of %d (concurrency=%d, channels=%s) ...",
        partitions, settings.queue_partitions, settings.worker_concurrency, dispatcher.channel_names,
    )
    tasks: set[asyncio.Task] = {
        asyncio.create_task(consume_partition(queue, p, dispatcher, sem, shutdown_event)) for p in partitions
    }
    tasks.add(asyncio.create_task(run_outbox_relay(relay, shutdown_event, settings.outbox_relay_interval_seconds)))
    try:
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=POP_TIMEOUT)
            except asyncio.TimeoutError:
                queue_messages_waiting.set(await queue.depth())
    finally:
        await _drain(tasks)
        await close_redis()
        await close_pool()
        logger.info("Worker stopped.")


async def process_sqs_group(messages: list[dict], dispatcher: NotificationDispatcher, sem: asyncio.Semaphore) -> None:
    """Messages of one order, in queue order. Stop at the first unexpected failure to keep that order."""
    for msg in messages:
        receipt = msg.get("ReceiptHandle") or ""
        receive_count = int((msg.get("Attributes") or {}).get("ApproximateReceiveCount", 1))
        try:
            event = TransitionEvent.from_message(json.loads(msg.get("Body") or "{}"))
        except (json.JSONDecodeError, KeyError, ValueError):
            logger.warning("Malformed transition event from SQS, deleting")
            await asyncio.to_thread(delete_message, receipt)
            continue
        try:
            async with sem:
                results = await dispatcher.dispatch(event)
            logger.info("Dispatched event_id=%s order_id=%s: %s", event.event_id, event.order_id, summarize(results))
            await asyncio.to_thread(delete_message, receipt)
        except Exception as e:
            logger.exception("Failed to process event_id=%s (receive #%d): %s", event.event_id, receive_count, e)
            # Don't delete: message reappears after the visibility timeout, later messages of the group wait for it
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt, backoff)
            return


def _group_id(msg: dict) -> str:
    return (msg.get("Attributes") or {}).get("MessageGroupId", "")


async def run_worker_sqs(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    r = await get_redis()
    queue = SqsEventQueue()
    ledger = RedisDeliveryLedger(r, settings.delivery_claim_ttl_seconds, settings.delivery_dedup_ttl_seconds)
    dispatcher = build_dispatcher(build_channels(PostgresContactDirectory(pool)), ledger, queue)
    relay = OutboxRelay(PostgresAuditTrailStore(pool), queue)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Backend=SQS. Queue=%s (concurrency=%d, channels=%s) ...",
        settings.sqs_queue_url, settings.worker_concurrency, dispatcher.channel_names,
    )
    relay_task = asyncio.create_task(run_outbox_relay(relay, shutdown_event, settings.outbox_relay_interval_seconds))
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            # groupby keeps arrival order inside each group; sort is stable
            for _, group in groupby(sorted(messages, key=_group_id), key=_group_id):
                t = asyncio.create_task(process_sqs_group(list(group), dispatcher, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
            # Same group must not be processed by two batches at once
            if tasks:
                await asyncio.wait(set(tasks))
    finally:
        tasks.add(relay_task)
        await _drain(tasks)
        await close_redis()
        await close_pool()
        logger.info("Worker stopped.")


async def run_worker(shutdown_event: asyncio.Event) -> None:
    if settings.sqs_queue_url:
        await run_worker_sqs(shutdown_event)
    else:
        await run_worker_redis(shutdown_event)


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
