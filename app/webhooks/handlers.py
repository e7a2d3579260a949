"""
Business handlers, one function per event type.

Each handler receives one validated payload, its index within the event and
a HandlerContext. Database work happens inside ``ctx.writer_scope()``, which
commits per payload; follow-up jobs are enqueued only after that commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, Dict, Optional

from app.cache.meeting_cache import MeetingMetadataCache
from app.core.config import settings
from app.core.exceptions import RecordingPermanentFailureError
from app.queue.jobs import JobType, build_idempotency_key
from app.queue.producer import JobQueue
from app.schemas.meeting import MeetingKey, ProcessingStatus, Provider
from app.schemas.webhook import (
    LarkMeetingEndedPayload,
    MeetingInfo,
    MeetingLifecyclePayload,
    ParticipantPayload,
    RecordingCompletedPayload,
    WebhookEventType as E,
)
from app.services.meeting_writer import MeetingWriter
from app.services.recording_poller import PollOutcome, RecordingAvailabilityPoller
from app.utils.timestamps import to_datetime, to_epoch_ms

logger = logging.getLogger(__name__)

TENCENT_TRANSCRIPT_EVENT = "recording.transcript"
TENCENT_TRANSCRIPT_READY_EVENT = "smart.transcripts"
LARK_TRANSCRIPT_EVENT = "minutes.transcript"


@dataclass
class HandlerContext:
    """Collaborators shared by the handlers of one event."""
    provider: Provider
    event_type: str
    trace_id: str
    writer_scope: Callable[[], AsyncContextManager[MeetingWriter]]
    queue: JobQueue
    poller: Optional[RecordingAvailabilityPoller] = None
    meeting_cache: Optional[MeetingMetadataCache] = None
    transcript_delay: Optional[float] = None

    @property
    def fetch_delay(self) -> float:
        if self.transcript_delay is not None:
            return self.transcript_delay
        return float(settings.TRANSCRIPT_FETCH_DELAY_SECONDS)


def _log_payload(ctx: HandlerContext, index: int, key: MeetingKey) -> None:
    logger.info(f"Processing {ctx.event_type} [{index}] for meeting {key} (trace {ctx.trace_id})")


# =============================================================================
# Tencent Meeting
# =============================================================================

def meeting_info_fields(info: MeetingInfo) -> Dict[str, Any]:
    """Meeting columns carried by every Tencent payload. None means unknown."""
    creator = info.creator
    host = creator if creator is not None else (info.hosts[0] if info.hosts else None)
    return {
        "title": info.subject,
        "meeting_code": info.meeting_code,
        "meeting_type": info.meeting_type,
        "host_user_id": getattr(host, "userid", None),
        "host_name": getattr(host, "user_name", None),
        "scheduled_start_time": to_datetime(info.start_time),
        "scheduled_end_time": to_datetime(info.end_time),
    }


async def handle_meeting_started(payload: MeetingLifecyclePayload, index: int, ctx: HandlerContext) -> None:
    key = payload.meeting_key()
    _log_payload(ctx, index, key)

    fields = meeting_info_fields(payload.meeting_info)
    fields.update({
        "actual_start_time": to_datetime(payload.meeting_info.sub_meeting_start_time or payload.operate_time),
        "recording_status": ProcessingStatus.PENDING,
        "processing_status": ProcessingStatus.PENDING,
    })
    async with ctx.writer_scope() as writer:
        await writer.upsert_meeting(key, fields)


async def handle_meeting_ended(payload: MeetingLifecyclePayload, index: int, ctx: HandlerContext) -> None:
    key = payload.meeting_key()
    _log_payload(ctx, index, key)

    fields = meeting_info_fields(payload.meeting_info)
    fields["actual_end_time"] = to_datetime(payload.meeting_info.sub_meeting_end_time or payload.operate_time)
    if payload.meeting_end_type is not None:
        fields["metadata_"] = {"meeting_end_type": payload.meeting_end_type}

    async with ctx.writer_scope() as writer:
        await writer.upsert_meeting(key, fields)


async def handle_participant_joined(payload: ParticipantPayload, index: int, ctx: HandlerContext) -> None:
    key = payload.meeting_key()
    _log_payload(ctx, index, key)

    fields = meeting_info_fields(payload.meeting_info)
    who = payload.participant()
    participant_id = who.roster_id() if who is not None else None

    async with ctx.writer_scope() as writer:
        if participant_id is None:
            logger.warning(f"Join event without participant identity for meeting {key}")
            await writer.upsert_meeting(key, fields)
            return
        logger.debug(f"{who.user_name or participant_id} joined meeting {key}")
        await writer.record_participant_joined(key, fields, participant_id, who.user_name)


async def handle_participant_left(payload: ParticipantPayload, index: int, ctx: HandlerContext) -> None:
    key = payload.meeting_key()
    _log_payload(ctx, index, key)

    async with ctx.writer_scope() as writer:
        await writer.upsert_meeting(key, meeting_info_fields(payload.meeting_info))


async def _queue_tencent_fetches(
    ctx: HandlerContext,
    key: MeetingKey,
    payload: RecordingCompletedPayload,
    trigger: str,
    delay: float,
) -> None:
    file_ids = [f.record_file_id for f in payload.recording_files]
    userid = payload.meeting_info.creator.userid or settings.TENCENT_OPERATOR_USERID
    for file_id in file_ids:
        await ctx.queue.enqueue(
            JobType.TENCENT_FETCH_TRANSCRIPT.value,
            {
                "meeting_id": key.meeting_id,
                "sub_meeting_id": key.sub_meeting_id,
                "record_file_id": file_id,
                "userid": userid,
            },
            idempotency_key=build_idempotency_key(
                Provider.TENCENT,
                trigger,
                key.meeting_id,
                key.sub_meeting_id,
                file_id,
            ),
            delay=delay,
            lock_key=f"record_file:{file_id}",
        )
    logger.info(f"Queued {len(file_ids)} transcript fetch(es) for meeting {key}")


async def handle_recording_completed(payload: RecordingCompletedPayload, index: int, ctx: HandlerContext) -> None:
    """
    Mark the meeting as recorded, store each record file, then queue one
    transcript fetch per file.
    """
    key = payload.meeting_key()
    _log_payload(ctx, index, key)

    fields = meeting_info_fields(payload.meeting_info)
    fields.update({
        "has_recording": True,
        "recording_status": ProcessingStatus.COMPLETED,
        "processing_status": ProcessingStatus.PROCESSING,
    })

    async with ctx.writer_scope() as writer:
        await writer.upsert_meeting(key, fields)
        for f in payload.recording_files:
            await writer.upsert_recording_file(key, f.record_file_id)

    await _queue_tencent_fetches(ctx, key, payload, TENCENT_TRANSCRIPT_EVENT, ctx.fetch_delay)


async def handle_transcript_ready(payload: RecordingCompletedPayload, index: int, ctx: HandlerContext) -> None:
    """
    Tencent has finished transcribing: fetch right away.

    Runs under its own idempotency key, so it does not wait behind a
    delayed fetch queued by recording.completed; both share the record
    file lock and write the same transcript row.
    """
    key = payload.meeting_key()
    _log_payload(ctx, index, key)

    async with ctx.writer_scope() as writer:
        for f in payload.recording_files:
            await writer.upsert_recording_file(
                key,
                f.record_file_id,
                meeting_fields=meeting_info_fields(payload.meeting_info),
            )

    await _queue_tencent_fetches(ctx, key, payload, TENCENT_TRANSCRIPT_READY_EVENT, 0.0)


# =============================================================================
# Lark
# =============================================================================

def lark_meeting_fields(payload: LarkMeetingEndedPayload, cached: Dict[str, Any]) -> Dict[str, Any]:
    meeting = payload.meeting
    fields = {
        "title": meeting.topic or cached.get("title"),
        "meeting_code": meeting.meeting_no or cached.get("meeting_code"),
        "host_user_id": meeting.host_user_id() or cached.get("host_user_id"),
        "actual_start_time": to_datetime(meeting.start_time or cached.get("start_time")),
        "actual_end_time": to_datetime(meeting.end_time or cached.get("end_time")),
    }
    if payload.event_id:
        fields["metadata_"] = {"lark_event_id": payload.event_id}
    return fields


def lark_cache_entry(payload: LarkMeetingEndedPayload) -> Dict[str, Any]:
    """JSON-safe metadata kept in the meeting cache between receipt and processing."""
    meeting = payload.meeting
    return {
        "title": meeting.topic,
        "meeting_code": meeting.meeting_no,
        "host_user_id": meeting.host_user_id(),
        "start_time": to_epoch_ms(meeting.start_time),
        "end_time": to_epoch_ms(meeting.end_time),
    }


async def handle_lark_meeting_ended(payload: LarkMeetingEndedPayload, index: int, ctx: HandlerContext) -> None:
    """
    Store the meeting, poll for its minute token and queue the transcript
    fetch.

    The fetch is delayed because Lark indexes the transcript some minutes
    after the recording URL appears.
    """
    key = payload.meeting_key()
    _log_payload(ctx, index, key)

    cached = await ctx.meeting_cache.lookup(key) if ctx.meeting_cache else {}
    fields = lark_meeting_fields(payload, cached)
    fields["processing_status"] = ProcessingStatus.PROCESSING

    async with ctx.writer_scope() as writer:
        await writer.upsert_meeting(key, fields)

    if ctx.poller is None:
        raise RecordingPermanentFailureError(key.meeting_id, "no recording poller configured")

    result = await ctx.poller.poll_for_token(key.meeting_id)

    if result.outcome == PollOutcome.ABORTED:
        reason = str(result.error) if result.error else "recording lookup aborted"
        async with ctx.writer_scope() as writer:
            await writer.mark_failed(key, reason)
        raise RecordingPermanentFailureError(key.meeting_id, reason)

    if result.outcome == PollOutcome.NOT_FOUND:
        logger.warning(
            f"Recording for Lark meeting {key.meeting_id} not available after "
            f"{result.attempts} attempts, dropping event"
        )
        return

    async with ctx.writer_scope() as writer:
        await writer.upsert_recording_file(
            key,
            result.token,
            meeting_fields={"has_recording": True, "recording_status": ProcessingStatus.COMPLETED},
            url=result.url,
        )

    await ctx.queue.enqueue(
        JobType.LARK_FETCH_TRANSCRIPT.value,
        {
            "meeting_id": key.meeting_id,
            "minute_token": result.token,
            "url": result.url,
        },
        idempotency_key=build_idempotency_key(
            Provider.LARK,
            LARK_TRANSCRIPT_EVENT,
            key.meeting_id,
            key.sub_meeting_id,
            result.token,
        ),
        delay=ctx.fetch_delay,
        lock_key=f"minute_token:{result.token}",
    )

    if ctx.meeting_cache:
        await ctx.meeting_cache.forget(key)


TENCENT_HANDLERS = {
    E.MEETING_STARTED.value: handle_meeting_started,
    E.MEETING_END.value: handle_meeting_ended,
    E.MEETING_ENDED.value: handle_meeting_ended,
    E.PARTICIPANT_JOINED.value: handle_participant_joined,
    E.PARTICIPANT_JOINED_SHORT.value: handle_participant_joined,
    E.PARTICIPANT_LEFT.value: handle_participant_left,
    E.PARTICIPANT_LEFT_SHORT.value: handle_participant_left,
    E.RECORDING_COMPLETED.value: handle_recording_completed,
    E.TRANSCRIPT_READY.value: handle_transcript_ready,
}

LARK_HANDLERS = {
    E.LARK_MEETING_ENDED.value: handle_lark_meeting_ended,
    E.LARK_MEETING_ALL_ENDED.value: handle_lark_meeting_ended,
}
