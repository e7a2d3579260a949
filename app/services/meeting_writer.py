"""
Idempotent meeting, recording and transcript writer.

Applying the same event twice leaves the store unchanged:
- one row per (platform, meeting_id, sub_meeting_id), created once
- None never overwrites a stored value
- processing_status and recording_status only move forward
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import DownstreamWriteConflictError, InvalidStatusTransitionError
from app.database.models import Meeting, RecordingFile, Transcript
from app.repositories.meeting_repository import MeetingRepository
from app.schemas.meeting import MeetingKey, ProcessingStatus, can_transition

logger = logging.getLogger(__name__)

STATUS_FIELDS = ("processing_status", "recording_status")
PARTICIPANTS_KEY = "participants"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_transition(field: str, current: Optional[ProcessingStatus], requested: ProcessingStatus) -> None:
    """Raise InvalidStatusTransitionError unless current -> requested moves forward."""
    if current is not None and ProcessingStatus(current) == ProcessingStatus(requested):
        return
    if not can_transition(current, requested):
        raise InvalidStatusTransitionError(
            field,
            ProcessingStatus(current).value,
            ProcessingStatus(requested).value,
        )


class MeetingWriter:
    """Merge-only writes on top of the meeting store."""

    def __init__(self, repository: MeetingRepository):
        self.repository = repository

    async def upsert_meeting(self, key: MeetingKey, fields: Dict[str, Any]) -> Meeting:
        """
        Create the meeting for key or merge fields into it.

        A concurrent insert of the same key (unique violation) is retried
        once as a merge; if the row still cannot be found the conflict is
        raised as retryable.
        """
        fields = {k: v for k, v in fields.items() if v is not None}
        meeting = await self.repository.find_by_natural_key(key)

        if meeting is None:
            initial = dict(fields)
            self._fill_duration(None, initial)
            try:
                meeting = await self.repository.insert(key, initial)
                logger.info(f"Created meeting {key}")
                return meeting
            except IntegrityError:
                await self.repository.session.rollback()
                logger.warning(f"Concurrent insert for meeting {key}, merging instead")
                meeting = await self.repository.find_by_natural_key(key)
                if meeting is None:
                    raise DownstreamWriteConflictError(str(key))

        return await self._merge(key, meeting, fields)

    async def _merge(self, key: MeetingKey, meeting: Meeting, fields: Dict[str, Any]) -> Meeting:
        updates: Dict[str, Any] = {}

        for name, value in fields.items():
            if name in STATUS_FIELDS:
                current = getattr(meeting, name)
                try:
                    check_transition(name, current, value)
                except InvalidStatusTransitionError as e:
                    logger.info(f"Ignoring status regression on meeting {key}: {e.message}")
                    continue
                if current is not None and ProcessingStatus(current) == ProcessingStatus(value):
                    continue
            elif name == "has_recording" and not value and meeting.has_recording:
                continue
            elif name == "metadata_":
                merged = dict(meeting.metadata_ or {})
                merged.update(value)
                if merged == (meeting.metadata_ or {}):
                    continue
                value = merged
            elif getattr(meeting, name, None) == value:
                continue
            updates[name] = value

        self._fill_duration(meeting, updates)

        if not updates:
            return meeting

        logger.debug(f"Updating meeting {key}: {sorted(updates)}")
        return await self.repository.apply(meeting, **updates)

    @staticmethod
    def _fill_duration(meeting: Optional[Meeting], updates: Dict[str, Any]) -> None:
        if "duration_seconds" in updates:
            return
        start = updates.get("actual_start_time") or (meeting.actual_start_time if meeting else None)
        end = updates.get("actual_end_time") or (meeting.actual_end_time if meeting else None)
        if start is None or end is None:
            return
        if meeting is not None and meeting.duration_seconds is not None and \
                "actual_start_time" not in updates and "actual_end_time" not in updates:
            return
        seconds = int((_as_utc(end) - _as_utc(start)).total_seconds())
        if seconds >= 0:
            updates["duration_seconds"] = seconds

    async def record_participants(
        self,
        key: MeetingKey,
        participants: Iterable[Tuple[str, Optional[str]]],
        fields: Optional[Dict[str, Any]] = None,
    ) -> Meeting:
        """
        Merge (participant_id, display_name) pairs into the meeting roster.

        The roster lives in metadata["participants"] keyed by participant id
        and participant_count is always its size, so replaying a join or a
        participant list never inflates the count.
        """
        meeting = await self.upsert_meeting(key, fields or {})

        roster = dict((meeting.metadata_ or {}).get(PARTICIPANTS_KEY) or {})
        for participant_id, name in participants:
            if not participant_id:
                continue
            if participant_id not in roster or (name and roster[participant_id] != name):
                roster[participant_id] = name or roster.get(participant_id)

        if roster == (meeting.metadata_ or {}).get(PARTICIPANTS_KEY) and \
                meeting.participant_count == len(roster):
            return meeting

        metadata = dict(meeting.metadata_ or {})
        metadata[PARTICIPANTS_KEY] = roster
        return await self.repository.apply(meeting, metadata_=metadata, participant_count=len(roster))

    async def record_participant_joined(
        self,
        key: MeetingKey,
        fields: Dict[str, Any],
        participant_id: str,
        name: Optional[str] = None,
    ) -> Meeting:
        return await self.record_participants(key, [(participant_id, name)], fields)

    async def upsert_recording_file(
        self,
        key: MeetingKey,
        file_object_id: str,
        meeting_fields: Optional[Dict[str, Any]] = None,
        **file_fields: Any,
    ) -> RecordingFile:
        """Ensure the meeting exists, then append the recording file once."""
        meeting = await self.upsert_meeting(key, meeting_fields or {})
        return await self.repository.append_recording_file(meeting, file_object_id, **file_fields)

    async def upsert_transcript(
        self,
        key: MeetingKey,
        file_object_id: str,
        content: str,
        content_format: str = "text",
    ) -> Transcript:
        """Store the transcript of one recording file and complete the meeting."""
        recording = await self.upsert_recording_file(
            key,
            file_object_id,
            status=ProcessingStatus.COMPLETED,
        )
        transcript = await self.repository.upsert_transcript(recording, content, content_format)
        await self.upsert_meeting(key, {"processing_status": ProcessingStatus.COMPLETED})
        logger.info(f"Stored transcript for {key} file {file_object_id} ({len(content)} chars)")
        return transcript

    async def mark_failed(self, key: MeetingKey, reason: str) -> Meeting:
        return await self.upsert_meeting(
            key,
            {"processing_status": ProcessingStatus.FAILED, "error_message": reason},
        )


def make_writer_scope(session_factory: async_sessionmaker[AsyncSession]):
    """
    Build a context manager that yields a MeetingWriter on its own session.

    The session commits when the block exits cleanly and rolls back otherwise,
    so each payload of a multi-payload event succeeds or fails on its own.
    """

    @asynccontextmanager
    async def writer_scope() -> AsyncIterator[MeetingWriter]:
        async with session_factory() as session:
            try:
                yield MeetingWriter(MeetingRepository(session))
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return writer_scope
