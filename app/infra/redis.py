"""
Redis Connection Management

Redis connection singleton plus the advisory slot lock used while booking.
Features graceful degradation: when Redis is unavailable, locks fall back to
in-process asyncio locks, which only protect a single-instance deployment.
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from app.config import settings

logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "counsel:v1:"

# Delete the key only if we still own it
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisClient:
    """
    Manages Redis connection as a singleton.

    Features:
    - Connection pooling
    - Automatic retries
    - Timeouts
    - Graceful failure handling
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            retry = Retry(ExponentialBackoff(), retries=3)

            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=retry,
            )

            await cls._client.ping()
            cls._connected = True
            logger.info("Redis connection established successfully")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None
        except Exception as e:
            logger.error(f"Unexpected error connecting to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False


async def get_redis() -> Optional[Redis]:
    """
    Provide the Redis client, or None if Redis is unavailable.

    Usage:
        redis_client = await get_redis()
        if redis_client is None:
            # Handle degraded mode
            pass
    """
    return await RedisClient.get_client()


class SlotLockStore:
    """
    Short-lived advisory lock around the check-then-create booking sequence.

    Key: counsel:v1:slotlock:{counselor_id}:{YYYY-MM-DD}:{HH:MM}

    The lock is non-blocking: a second request for the same slot does not
    wait, it is told the slot is taken. Redis locks expire after
    ``slot_lock_ttl_seconds`` so a crashed holder cannot wedge a slot.
    """

    LOCK_PREFIX = f"{APP_PREFIX}slotlock:"

    # Shared across instances so every request in this process sees the same locks
    _local_locks: dict[str, asyncio.Lock] = {}

    def __init__(
        self,
        redis_client: Optional[Redis],
        ttl_seconds: Optional[int] = None,
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.slot_lock_ttl_seconds

    @classmethod
    def slot_key(cls, counselor_id: int, booking_date: str, start_hhmm: str) -> str:
        """Generate lock key with namespace."""
        return f"{cls.LOCK_PREFIX}{counselor_id}:{booking_date}:{start_hhmm}"

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        """
        Try to take the lock for ``key``.

        Yields True if the lock is held for the duration of the block,
        False if another request already holds it.
        """
        if self.redis is None:
            async with self._hold_local(key) as acquired:
                yield acquired
            return

        token = secrets.token_hex(16)
        try:
            acquired = bool(
                await self.redis.set(key, token, nx=True, px=self.ttl_seconds * 1000)
            )
        except RedisError as e:
            logger.warning(f"Slot lock via Redis failed for {key}: {e} - using local lock")
            async with self._hold_local(key) as local_acquired:
                yield local_acquired
            return

        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.redis.eval(RELEASE_SCRIPT, 1, key, token)
                except RedisError as e:
                    # Expires on its own after the TTL
                    logger.warning(f"Failed to release slot lock {key}: {e}")

    @asynccontextmanager
    async def _hold_local(self, key: str) -> AsyncIterator[bool]:
        lock = self._local_locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            yield False
            return

        async with lock:
            try:
                yield True
            finally:
                self._local_locks.pop(key, None)


async def get_slot_lock_store() -> SlotLockStore:
    """
    Get SlotLockStore instance.

    Returns a store even if Redis is unavailable (local lock fallback).
    """
    client = await get_redis()
    return SlotLockStore(client)


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return False
