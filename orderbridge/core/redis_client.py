"""
Redis client for orderbridge

Provides cross-instance coordination when more than one process may poll the
same stream: a per-stream single-writer lock and webhook redelivery
suppression. Everything degrades to single-instance behaviour when REDIS_URL
is not configured.
"""
import logging
import uuid
from typing import Optional

import redis.asyncio as redis

from orderbridge.core.config import settings

logger = logging.getLogger(__name__)

# Global Redis client (initialized lazily)
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get Redis client, initializing if needed.

    Returns None if REDIS_URL not configured or unreachable.
    """
    global _redis_client

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}. Running without cross-instance locks.")
            _redis_client = None

    return _redis_client


async def close_redis():
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


# ----- Stream single-writer lock -----

STREAM_LOCK_PREFIX = "orderbridge:stream-lock:"

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class StreamLock:
    """
    SET NX EX lock guarding one stream's read-process-commit cycle.

    acquire() returns True when this instance may proceed. Without Redis it
    always returns True; the checkpoint store's compare-and-swap still
    rejects a stale writer.
    """

    def __init__(self, stream_id: str, ttl_seconds: Optional[int] = None, client: Optional[redis.Redis] = None):
        self.stream_id = stream_id
        self.key = f"{STREAM_LOCK_PREFIX}{stream_id}"
        self.ttl_seconds = ttl_seconds or settings.CHECKPOINT_LOCK_TTL_SECONDS
        self.token = uuid.uuid4().hex
        self._client = client
        self._held = False

    async def _get_client(self) -> Optional[redis.Redis]:
        if self._client is not None:
            return self._client
        return await get_redis()

    async def acquire(self) -> bool:
        client = await self._get_client()
        if client is None:
            self._held = True
            return True

        acquired = await client.set(self.key, self.token, nx=True, ex=self.ttl_seconds)
        self._held = bool(acquired)
        if not self._held:
            logger.warning(f"[CHECKPOINT] Stream {self.stream_id} is locked by another instance")
        return self._held

    async def release(self) -> None:
        if not self._held:
            return
        self._held = False
        client = await self._get_client()
        if client is None:
            return
        try:
            await client.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        except redis.RedisError as e:
            # Lock expires on its own after ttl_seconds
            logger.warning(f"[CHECKPOINT] Failed to release lock for {self.stream_id}: {e}")


# ----- Webhook Idempotency -----

WEBHOOK_KEY_PREFIX = "orderbridge:webhook:"
WEBHOOK_TTL_HOURS = 24


async def is_webhook_processed(event_key: str) -> bool:
    """Check if a webhook delivery was already handled.

    Falls back to False if Redis unavailable (allows processing; the
    tracking push is itself idempotent).
    """
    client = await get_redis()
    if not client:
        return False

    try:
        return await client.exists(f"{WEBHOOK_KEY_PREFIX}{event_key}") > 0
    except redis.RedisError as e:
        logger.warning(f"Redis check failed for webhook {event_key}: {e}")
        return False


async def mark_webhook_processed(event_key: str, ttl_hours: int = WEBHOOK_TTL_HOURS) -> bool:
    """Mark a webhook delivery as handled with TTL."""
    client = await get_redis()
    if not client:
        return False

    try:
        await client.setex(f"{WEBHOOK_KEY_PREFIX}{event_key}", ttl_hours * 3600, "1")
        return True
    except redis.RedisError as e:
        logger.warning(f"Redis mark failed for webhook {event_key}: {e}")
        return False
