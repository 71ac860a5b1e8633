import redis.asyncio as redis
from stageflow.config import settings
from stageflow.models import ClaimState

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def delivery_key(event_id: str, channel: str) -> str:
    return f"delivery:{event_id}:{channel}"


class RedisDeliveryLedger:
    """
    Per-channel dedup of transition events, keyed by the deterministic event id.
    SET NX claims the (event, channel) pair before sending; the claim expires after claim_ttl
    so a crashed worker's claim frees up, a delivered marker lives for dedup_ttl.
    """

    def __init__(self, r: redis.Redis, claim_ttl: int, dedup_ttl: int):
        self._redis = r
        self._claim_ttl = claim_ttl
        self._dedup_ttl = dedup_ttl

    async def claim(self, event_id: str, channel: str) -> ClaimState:
        key = delivery_key(event_id, channel)
        was_set = await self._redis.set(key, ClaimState.PENDING.value, nx=True, ex=self._claim_ttl)
        if was_set:
            return ClaimState.NEW
        state = await self._redis.get(key)
        if state == ClaimState.DELIVERED.value:
            return ClaimState.DELIVERED
        return ClaimState.PENDING

    async def mark_delivered(self, event_id: str, channel: str) -> None:
        await self._redis.set(delivery_key(event_id, channel), ClaimState.DELIVERED.value, ex=self._dedup_ttl)

    async def release(self, event_id: str, channel: str) -> None:
        await self._redis.delete(delivery_key(event_id, channel))
