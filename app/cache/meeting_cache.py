"""
Meeting metadata cache.

The webhook receiver stores what the event told us about a meeting so the
worker handling it later (possibly in another process) can enrich the
meeting row without calling the provider again.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from app.cache.redis_client import RedisCache
from app.core.config import settings
from app.schemas.meeting import MeetingKey

logger = logging.getLogger(__name__)


class MeetingMetadataCache:
    """TTL'd metadata keyed by meeting natural key."""

    def __init__(self, ttl_seconds: Optional[int] = None, client=None):
        self.ttl_seconds = ttl_seconds or settings.MEETING_CACHE_TTL_SECONDS
        self._cache = RedisCache(prefix="meeting_meta", default_ttl=self.ttl_seconds, client=client)

    async def remember(self, key: MeetingKey, metadata: Dict[str, Any]) -> bool:
        """Merge metadata into whatever is cached for the meeting."""
        existing = await self._cache.get(str(key)) or {}
        merged = {**existing, **{k: v for k, v in metadata.items() if v is not None}}
        return await self._cache.set(str(key), merged)

    async def lookup(self, key: MeetingKey) -> Dict[str, Any]:
        cached = await self._cache.get(str(key))
        if cached is None:
            logger.debug(f"No cached metadata for meeting {key}")
            return {}
        return cached

    async def forget(self, key: MeetingKey) -> bool:
        return await self._cache.delete(str(key))
