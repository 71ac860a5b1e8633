"""
Prometheus metrics: transitions (API), event publishing (outbox), notification delivery (worker), queue depth.
"""
from prometheus_client import Counter, Gauge, generate_latest

# Engine: committed and rejected transitions
transitions_committed_total = Counter(
    "transitions_committed_total",
    "Total stage transitions committed",
    ["stage"],
)
transitions_rejected_total = Counter(
    "transitions_rejected_total",
    "Total transition requests rejected, by error code",
    ["error"],
)
transition_conflicts_total = Counter(
    "transition_conflicts_total",
    "Total optimistic-concurrency conflicts hit while committing a transition",
)

# Outbox -> queue
events_published_total = Counter(
    "events_published_total",
    "Total transition events pushed from the outbox to the queue",
)
events_dead_lettered_total = Counter(
    "events_dead_lettered_total",
    "Total failed deliveries moved to the DLQ",
)

# Worker: per-channel delivery outcomes
notifications_delivered_total = Counter(
    "notifications_delivered_total",
    "Total notifications delivered",
    ["channel"],
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total notifications that exhausted their retries",
    ["channel"],
)
notifications_duplicate_total = Counter(
    "notifications_duplicate_total",
    "Total re-delivered events skipped because the channel already sent them",
    ["channel"],
)

# Queue depth (Redis partitions or SQS) - backpressure / consumer lag
queue_messages_waiting = Gauge(
    "queue_messages_waiting",
    "Approximate number of transition events waiting in the queue",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
