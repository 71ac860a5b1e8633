"""
AWS SQS helpers for the FIFO transition queue. Used when SQS_QUEUE_URL is set.
MessageGroupId = order id keeps each order's events in commit order.
"""
import asyncio
import json
from typing import Any

import boto3

from stageflow.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(body: dict, group_id: str, deduplication_id: str) -> None:
    """Publish one transition event to the FIFO queue; boto3 runs in a worker thread."""
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=settings.sqs_queue_url,
        MessageBody=json.dumps(body),
        MessageGroupId=group_id,
        MessageDeduplicationId=deduplication_id,
    )


async def send_message_to_dlq(body: dict, group_id: str) -> None:
    """Park a failed channel delivery on the DLQ. No-op without sqs_dlq_url."""
    if not settings.sqs_dlq_url:
        return
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=settings.sqs_dlq_url,
        MessageBody=json.dumps(body),
        MessageGroupId=group_id,
        MessageDeduplicationId=f"{body['event']['eventId']}:{body['channel']}",
    )


def receive_messages(max_number: int = 10, wait_seconds: int = 5) -> list[dict]:
    """Blocking receive of transition events, called from a worker thread. Returns raw SQS messages."""
    client = _get_client()
    resp = client.receive_message(
        QueueUrl=settings.sqs_queue_url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
        AttributeNames=["ApproximateReceiveCount", "MessageGroupId"],
    )
    return resp.get("Messages") or []


def delete_message(receipt_handle: str) -> None:
    """Remove a transition event once it was dispatched or found malformed."""
    client = _get_client()
    client.delete_message(
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
    )


def change_message_visibility(receipt_handle: str, visibility_timeout: int) -> None:
    """Hide an event whose dispatch failed, so its redelivery waits out the backoff."""
    client = _get_client()
    client.change_message_visibility(
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=visibility_timeout,
    )


async def get_queue_depth() -> tuple[int, int]:
    """(waiting, in flight) transition events on the FIFO queue, for the queue depth gauge."""
    if not settings.sqs_queue_url:
        return 0, 0
    client = _get_client()

    def _get():
        r = client.get_queue_attributes(
            QueueUrl=settings.sqs_queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attrs = r.get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )

    return await asyncio.to_thread(_get)


def receive_messages_from_dlq(max_number: int = 10, wait_seconds: int = 0) -> list[dict]:
    """Failed deliveries parked on the DLQ; each body is a make_dead_letter() dict."""
    if not settings.sqs_dlq_url:
        return []
    client = _get_client()
    resp = client.receive_message(
        QueueUrl=settings.sqs_dlq_url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
    )
    return resp.get("Messages") or []


def delete_message_from_dlq(receipt_handle: str) -> None:
    """Drop a failed-delivery message after it was replayed or found unreadable."""
    if not settings.sqs_dlq_url:
        return
    client = _get_client()
    client.delete_message(
        QueueUrl=settings.sqs_dlq_url,
        ReceiptHandle=receipt_handle,
    )


async def replay_dlq_to_main(limit: int = 100) -> int:
    """
    Read failed deliveries from DLQ, re-send the event to the main queue, delete from DLQ.
    Channels that already delivered the event skip it on the second pass (delivery ledger).
    Returns number of messages replayed.
    """
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    replayed = 0
    while replayed < limit:
        messages = await asyncio.to_thread(receive_messages_from_dlq, 10, 0)
        if not messages:
            break
        for msg in messages:
            if replayed >= limit:
                break
            body_str = msg.get("Body") or "{}"
            receipt = msg.get("ReceiptHandle") or ""
            try:
                event = json.loads(body_str)["event"]
                order_id = event["orderId"]
                event_id = event["eventId"]
            except (json.JSONDecodeError, KeyError, TypeError):
                await asyncio.to_thread(delete_message_from_dlq, receipt)
                replayed += 1
                continue
            # A fresh dedup id: the original one may still be inside SQS's 5-minute dedup window
            await send_message(event, group_id=order_id, deduplication_id=f"{event_id}:replay:{receipt[-16:]}")
            await asyncio.to_thread(delete_message_from_dlq, receipt)
            replayed += 1
    return replayed
