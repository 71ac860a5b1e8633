"""
Notification dispatcher: delivers one transition event to every configured channel.
- Channels run concurrently and fail independently.
- Each (event id, channel) is claimed in the delivery ledger first, so a re-delivered event
  never sends twice on a channel that already sent it.
- Failures retry with exponential backoff; an exhausted channel is reported as DeliveryFailed,
  logged and pushed to the DLQ. dispatch() itself never raises.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Sequence

from stageflow.channels import NotificationChannel
from stageflow.errors import DeliveryFailed
from stageflow.metrics import (
    notifications_delivered_total,
    notifications_duplicate_total,
    notifications_failed_total,
)
from stageflow.models import ClaimState, DeliveryResult, DeliveryStatus, TransitionEvent
from stageflow.queue import make_dead_letter

logger = logging.getLogger(__name__)


class InMemoryDeliveryLedger:
    """
    Process-local ledger for tests and single-process runs. A PENDING claim never expires here:
    if the process dies mid-send the claim dies with it. Use RedisDeliveryLedger across workers.
    """

    def __init__(self) -> None:
        self._states: Dict[tuple[str, str], ClaimState] = {}

    async def claim(self, event_id: str, channel: str) -> ClaimState:
        key = (event_id, channel)
        state = self._states.get(key)
        if state is None:
            self._states[key] = ClaimState.PENDING
            return ClaimState.NEW
        return state

    async def mark_delivered(self, event_id: str, channel: str) -> None:
        self._states[(event_id, channel)] = ClaimState.DELIVERED

    async def release(self, event_id: str, channel: str) -> None:
        self._states.pop((event_id, channel), None)


class NotificationDispatcher:
    def __init__(
        self,
        channels: Sequence[NotificationChannel],
        ledger,
        *,
        dead_letters=None,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._channels = list(channels)
        self._ledger = ledger
        self._dead_letters = dead_letters
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._sleep = sleep

    @property
    def channel_names(self) -> list[str]:
        return [c.name for c in self._channels]

    async def dispatch(self, event: TransitionEvent) -> list[DeliveryResult]:
        results = await asyncio.gather(*(self._deliver(channel, event) for channel in self._channels))
        return list(results)

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after the given 0-based failed attempt."""
        return min(self._backoff_max, self._backoff_base * (2 ** attempt))

    async def _deliver(self, channel: NotificationChannel, event: TransitionEvent) -> DeliveryResult:
        last_error: Optional[str] = None
        attempt = 0
        while attempt < self._max_attempts:
            attempt += 1
            try:
                state = await self._ledger.claim(event.event_id, channel.name)
                if state is ClaimState.DELIVERED:
                    notifications_duplicate_total.labels(channel=channel.name).inc()
                    logger.info("Duplicate event_id=%s on %s (already delivered), skipped", event.event_id, channel.name)
                    return DeliveryResult(event.event_id, channel.name, DeliveryStatus.DUPLICATE, attempt - 1)
                if state is ClaimState.PENDING:
                    last_error = "delivery claimed by another worker"
                else:
                    return await self._send(channel, event, attempt)
            except DeliveryFailed as e:
                last_error = str(e)
                logger.warning(
                    "Delivery of event_id=%s via %s failed (attempt %d/%d): %s",
                    event.event_id, channel.name, attempt, self._max_attempts, e,
                )
                if not e.retryable:
                    break
            except Exception as e:
                last_error = f"{e.__class__.__name__}: {e}"
                logger.exception(
                    "Unexpected error delivering event_id=%s via %s (attempt %d/%d)",
                    event.event_id, channel.name, attempt, self._max_attempts,
                )
            if attempt < self._max_attempts:
                await self._sleep(self.backoff_seconds(attempt - 1))
        return await self._fail(channel, event, attempt, last_error)

    async def _send(self, channel: NotificationChannel, event: TransitionEvent, attempt: int) -> DeliveryResult:
        try:
            status = await channel.send(event)
        except BaseException:
            # Free the claim so the next attempt (or a re-drive) may send again
            await self._ledger.release(event.event_id, channel.name)
            raise
        await self._ledger.mark_delivered(event.event_id, channel.name)
        if status is DeliveryStatus.DELIVERED:
            notifications_delivered_total.labels(channel=channel.name).inc()
            logger.info("Delivered event_id=%s via %s (attempt %d)", event.event_id, channel.name, attempt)
        return DeliveryResult(event.event_id, channel.name, status, attempt)

    async def _fail(
        self, channel: NotificationChannel, event: TransitionEvent, attempts: int, error: Optional[str]
    ) -> DeliveryResult:
        notifications_failed_total.labels(channel=channel.name).inc()
        logger.error(
            "DeliveryFailed: event_id=%s order_id=%s channel=%s after %d attempt(s): %s",
            event.event_id, event.order_id, channel.name, attempts, error,
        )
        if self._dead_letters is not None:
            try:
                await self._dead_letters.push_dead_letter(make_dead_letter(event, channel.name, error, attempts))
            except Exception:
                logger.exception("Could not move event_id=%s (%s) to DLQ", event.event_id, channel.name)
        return DeliveryResult(event.event_id, channel.name, DeliveryStatus.FAILED, attempts, error)
