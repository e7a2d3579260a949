"""
Job type -> processor coroutine.

Processors translate failures into the queue's vocabulary: RetryableJobError
(or any unexpected exception) is retried under the job's policy,
FatalJobError goes straight to the failed set.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncContextManager, Callable, Dict, Optional

from app.cache.meeting_cache import MeetingMetadataCache
from app.core.exceptions import (
    FatalJobError,
    PlatformApiError,
    RecordingStillProcessingError,
    RetryableJobError,
    UnsupportedWebhookEventError,
)
from app.queue.jobs import JobType, QueueJob
from app.queue.producer import JobQueue
from app.schemas.meeting import MeetingKey, Provider, ROOT_SUB_MEETING_ID
from app.services.meeting_writer import MeetingWriter
from app.services.recording_poller import RecordingAvailabilityPoller
from app.webhooks.dispatcher import EventDispatcher, build_dispatcher
from app.webhooks.handlers import HandlerContext
from app.webhooks.parser import build_event

logger = logging.getLogger(__name__)

WriterScope = Callable[[], AsyncContextManager[MeetingWriter]]


def _webhook_event_processor(
    provider: Provider,
    dispatcher: EventDispatcher,
    writer_scope: WriterScope,
    queue: JobQueue,
    poller: Optional[RecordingAvailabilityPoller],
    meeting_cache: Optional[MeetingMetadataCache],
    transcript_delay: Optional[float],
):
    async def process(job: QueueJob) -> None:
        data = job.payload
        event = build_event(provider, data["event_type"], data.get("trace_id"), data.get("payloads") or [])
        context = HandlerContext(
            provider=provider,
            event_type=event.event_type,
            trace_id=event.trace_id,
            writer_scope=writer_scope,
            queue=queue,
            poller=poller,
            meeting_cache=meeting_cache,
            transcript_delay=transcript_delay,
        )
        try:
            result = await dispatcher.dispatch(event.event_type, event.payloads, context)
        except UnsupportedWebhookEventError as e:
            # Known to the parser but no handler: a configuration gap, not a job failure
            logger.error(f"{e.message} (job {job.job_id})")
            return
        result.raise_for_outcome()

    return process


async def _store_transcript(
    writer_scope: WriterScope,
    key: MeetingKey,
    file_object_id: str,
    fetch: Callable[[], Any],
    attempts: int = 0,
) -> None:
    """Fetch and store one transcript; an empty transcript is retried as not yet generated."""
    try:
        content = await fetch()
    except PlatformApiError as e:
        if e.is_transient:
            raise RetryableJobError(e.message, details=e.details) from e
        async with writer_scope() as writer:
            await writer.mark_failed(key, e.message)
        raise FatalJobError(e.message, details=e.details) from e

    if not content or not content.strip():
        raise RecordingStillProcessingError(key.meeting_id, attempts)

    async with writer_scope() as writer:
        await writer.upsert_transcript(key, file_object_id, content)


async def _enrich_tencent_recording(
    client,
    writer_scope: WriterScope,
    key: MeetingKey,
    file_id: str,
    userid: str,
) -> None:
    """
    Store the record file's addresses and the meeting's attendee roster.

    Both are secondary to the transcript: provider errors are logged and
    the fetch carries on.
    """
    url = None
    try:
        detail = await client.get_recording_file_detail(file_id, userid)
        url = detail.get("download_address") or detail.get("view_address")
    except PlatformApiError as e:
        logger.warning(f"Could not load addresses of record file {file_id}: {e.message}")

    participants = []
    sub_meeting_id = None if key.sub_meeting_id == ROOT_SUB_MEETING_ID else key.sub_meeting_id
    try:
        participants = await client.fetch_unique_participants(key.meeting_id, userid, sub_meeting_id)
    except PlatformApiError as e:
        logger.warning(f"Could not load participants of meeting {key}: {e.message}")

    if not url and not participants:
        return
    async with writer_scope() as writer:
        if url:
            await writer.upsert_recording_file(key, file_id, url=url)
        if participants:
            await writer.record_participants(key, participants)


def build_processors(
    writer_scope: WriterScope,
    queue: JobQueue,
    tencent_client=None,
    lark_client=None,
    poller: Optional[RecordingAvailabilityPoller] = None,
    meeting_cache: Optional[MeetingMetadataCache] = None,
    transcript_delay: Optional[float] = None,
) -> Dict[str, Callable]:
    """Wire dispatchers, clients and the writer into the worker's processor table."""

    async def fetch_tencent_transcript(job: QueueJob) -> None:
        data = job.payload
        key = MeetingKey.build(Provider.TENCENT, data["meeting_id"], data.get("sub_meeting_id"))
        file_id = data["record_file_id"]
        userid = data["userid"]
        await _enrich_tencent_recording(tencent_client, writer_scope, key, file_id, userid)
        await _store_transcript(
            writer_scope,
            key,
            file_id,
            lambda: tencent_client.fetch_full_transcript(file_id, userid),
            job.attempts,
        )

    async def fetch_lark_transcript(job: QueueJob) -> None:
        data = job.payload
        key = MeetingKey.build(Provider.LARK, data["meeting_id"])
        token = data["minute_token"]
        await _store_transcript(
            writer_scope,
            key,
            token,
            lambda: lark_client.get_minute_transcript(token),
            job.attempts,
        )

    processors: Dict[str, Callable] = {
        JobType.TENCENT_WEBHOOK_EVENT.value: _webhook_event_processor(
            Provider.TENCENT,
            build_dispatcher(Provider.TENCENT),
            writer_scope,
            queue,
            poller,
            meeting_cache,
            transcript_delay,
        ),
        JobType.LARK_WEBHOOK_EVENT.value: _webhook_event_processor(
            Provider.LARK,
            build_dispatcher(Provider.LARK),
            writer_scope,
            queue,
            poller,
            meeting_cache,
            transcript_delay,
        ),
    }
    if tencent_client is not None:
        processors[JobType.TENCENT_FETCH_TRANSCRIPT.value] = fetch_tencent_transcript
    if lark_client is not None:
        processors[JobType.LARK_FETCH_TRANSCRIPT.value] = fetch_lark_transcript
    return processors
