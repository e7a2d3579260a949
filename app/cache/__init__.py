"""
Redis-backed caches and shared client.
"""

from app.cache.redis_client import (
    init_redis,
    close_redis,
    get_redis_client,
    RedisCache,
)
from app.cache.meeting_cache import MeetingMetadataCache

__all__ = [
    "init_redis",
    "close_redis",
    "get_redis_client",
    "RedisCache",
    "MeetingMetadataCache",
]
