"""
Idempotency and in-flight registry kept in Redis.

Completed markers make at-least-once delivery behave as effectively-once
for the retention window. In-flight locks stop two workers from fetching
the same recording artifact at the same time.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Compare-and-delete: a lock that expired and was taken by another worker stays put
RELEASE_INFLIGHT_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

EXTEND_INFLIGHT_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("EXPIRE", KEYS[1], ARGV[2])
end
return 0
"""


class IdempotencyRegistry:

    def __init__(
        self,
        client: redis.Redis,
        queue_name: str,
        completed_ttl: int = 86400,
        inflight_ttl: int = 900,
    ):
        self.client = client
        self.queue_name = queue_name
        self.completed_ttl = completed_ttl
        self.inflight_ttl = inflight_ttl

    def _completed_key(self, idempotency_key: str) -> str:
        return f"idempotency:{self.queue_name}:{idempotency_key}"

    def _inflight_key(self, lock_key: str) -> str:
        return f"inflight:{self.queue_name}:{lock_key}"

    async def is_completed(self, idempotency_key: str) -> bool:
        return await self.client.exists(self._completed_key(idempotency_key)) > 0

    async def mark_completed(self, idempotency_key: str, ttl: Optional[int] = None) -> None:
        await self.client.set(self._completed_key(idempotency_key), "1", ex=ttl or self.completed_ttl)

    async def acquire_inflight(self, lock_key: str, owner: str, ttl: Optional[int] = None) -> bool:
        """SET NX EX; the TTL frees the lock if its owner dies mid-job."""
        acquired = await self.client.set(
            self._inflight_key(lock_key),
            owner,
            nx=True,
            ex=ttl or self.inflight_ttl,
        )
        if not acquired:
            holder = await self.client.get(self._inflight_key(lock_key))
            logger.info(f"{lock_key} already in flight (held by {holder})")
        return bool(acquired)

    async def release_inflight(self, lock_key: str, owner: str) -> bool:
        """Release only a lock this owner still holds."""
        released = await self.client.eval(RELEASE_INFLIGHT_SCRIPT, 1, self._inflight_key(lock_key), owner)
        if not released:
            logger.warning(f"{lock_key} was no longer held by {owner} at release")
        return bool(released)

    async def extend_inflight(self, lock_key: str, owner: str, ttl: Optional[int] = None) -> bool:
        """Reset the TTL of a lock this owner still holds."""
        extended = await self.client.eval(
            EXTEND_INFLIGHT_SCRIPT, 1, self._inflight_key(lock_key), owner, ttl or self.inflight_ttl
        )
        return bool(extended)

    async def is_inflight(self, lock_key: str) -> bool:
        return await self.client.exists(self._inflight_key(lock_key)) > 0
