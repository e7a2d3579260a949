"""
FastAPI dependencies and the worker composition root.

Routes depend on get_webhook_service; tests swap it out through
app.dependency_overrides.
"""

from __future__ import annotations

import logging
from typing import Optional

from app.cache.meeting_cache import MeetingMetadataCache
from app.cache.redis_client import get_redis_client
from app.core.config import settings
from app.database.connection import AsyncSessionLocal
from app.integrations.lark_client import LarkClient
from app.integrations.tencent_client import TencentMeetingClient
from app.queue.processors import build_processors
from app.queue.producer import JobQueue
from app.queue.registry import IdempotencyRegistry
from app.queue.worker import QueueWorker
from app.services.meeting_writer import make_writer_scope
from app.services.recording_poller import RecordingAvailabilityPoller
from app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

_job_queue: Optional[JobQueue] = None
_webhook_service: Optional[WebhookService] = None


async def get_job_queue() -> JobQueue:
    """Shared JobQueue on the process-wide Redis client."""
    global _job_queue

    if _job_queue is None:
        client = await get_redis_client()
        registry = IdempotencyRegistry(
            client,
            settings.QUEUE_NAME,
            completed_ttl=settings.QUEUE_IDEMPOTENCY_TTL_SECONDS,
            inflight_ttl=settings.QUEUE_INFLIGHT_TTL_SECONDS,
        )
        _job_queue = JobQueue(
            client,
            registry,
            name=settings.QUEUE_NAME,
            stalled_after=settings.QUEUE_STALLED_AFTER_SECONDS,
        )
    return _job_queue


async def get_meeting_cache() -> MeetingMetadataCache:
    return MeetingMetadataCache(client=await get_redis_client())


async def get_webhook_service() -> WebhookService:
    global _webhook_service

    if _webhook_service is None:
        _webhook_service = WebhookService(
            queue=await get_job_queue(),
            meeting_cache=await get_meeting_cache(),
        )
    return _webhook_service


def reset_dependencies() -> None:
    """Forget cached singletons (after the Redis client is closed)."""
    global _job_queue, _webhook_service
    _job_queue = None
    _webhook_service = None


async def build_worker() -> QueueWorker:
    """Wire the queue worker with its clients, poller and writer."""
    queue = await get_job_queue()

    tencent_client = TencentMeetingClient()
    lark_client = LarkClient()
    if not tencent_client.is_configured():
        logger.warning("Tencent Meeting API credentials not configured, transcript fetches will fail")
    if not lark_client.is_configured():
        logger.warning("Lark app credentials not configured, recording polling will fail")

    processors = build_processors(
        writer_scope=make_writer_scope(AsyncSessionLocal),
        queue=queue,
        tencent_client=tencent_client,
        lark_client=lark_client,
        poller=RecordingAvailabilityPoller(lark_client),
        meeting_cache=await get_meeting_cache(),
    )
    return QueueWorker(queue, processors)
