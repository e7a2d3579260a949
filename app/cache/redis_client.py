"""
Redis client for the meeting webhook pipeline.

Holds the job queue, the idempotency/in-flight registry and the meeting
metadata cache, so every worker process sees the same state.
"""

from __future__ import annotations

import logging
import json
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.core.config import settings

logger = logging.getLogger(__name__)

# Global connection pool
_pool: Optional[ConnectionPool] = None
_client: Optional[redis.Redis] = None


async def get_redis_pool() -> ConnectionPool:
    """Get or create the Redis connection pool."""
    global _pool

    if _pool is None:
        _pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
            decode_responses=True,
        )

    return _pool


async def get_redis_client() -> redis.Redis:
    """Get the Redis client instance."""
    global _client

    if _client is None:
        pool = await get_redis_pool()
        _client = redis.Redis(connection_pool=pool)

    return _client


async def init_redis() -> None:
    """
    Initialize Redis connection and verify connectivity.
    Called on application startup.
    """
    logger.info("Initializing Redis connection...")

    try:
        client = await get_redis_client()
        await client.ping()
        logger.info("✅ Redis connection established successfully")
    except Exception as e:
        logger.error(f"❌ Failed to connect to Redis: {e}")
        raise


async def close_redis() -> None:
    """
    Close Redis connections gracefully.
    Called on application shutdown.
    """
    global _client, _pool

    logger.info("Closing Redis connections...")

    if _client is not None:
        await _client.aclose()
        _client = None

    if _pool is not None:
        await _pool.disconnect()
        _pool = None

    logger.info("✅ Redis connections closed")


async def check_health() -> dict:
    """Check Redis health for health endpoint."""
    try:
        client = await get_redis_client()
        info = await client.info("server")
        return {
            "status": "healthy",
            "database": "redis",
            "version": info.get("redis_version"),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "database": "redis",
            "error": str(e),
        }


class RedisCache:
    """
    JSON cache with a key prefix and a default TTL.

    Cache misses and Redis errors both read as None; callers must be able
    to proceed without the cached value.
    """

    def __init__(self, prefix: str = "", default_ttl: int = 3600, client: Optional[redis.Redis] = None):
        """
        Args:
            prefix: Prefix for all keys (e.g., "meeting_meta")
            default_ttl: Default time-to-live in seconds
            client: Explicit client; the shared pool is used when omitted
        """
        self.prefix = prefix
        self.default_ttl = default_ttl
        self._client = client

    def _key(self, key: str) -> str:
        """Build full key with prefix."""
        if self.prefix:
            return f"{self.prefix}:{key}"
        return key

    async def _get_client(self) -> redis.Redis:
        if self._client is not None:
            return self._client
        return await get_redis_client()

    async def get(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_client()
            value = await client.get(self._key(key))

            if value is not None:
                return json.loads(value)
            return None

        except Exception as e:
            logger.warning(f"Redis GET error for {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON serializable)
            ttl: Time-to-live in seconds (uses default if not specified)

        Returns:
            True if successful
        """
        try:
            client = await self._get_client()
            serialized = json.dumps(value, default=str)

            await client.set(
                self._key(key),
                serialized,
                ex=ttl or self.default_ttl,
            )
            return True

        except Exception as e:
            logger.warning(f"Redis SET error for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            result = await client.delete(self._key(key))
            return result > 0

        except Exception as e:
            logger.warning(f"Redis DELETE error for {key}: {e}")
            return False
