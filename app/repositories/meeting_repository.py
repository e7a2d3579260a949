"""
Meeting store: lookups and upserts by natural key.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Meeting, RecordingFile, Transcript
from app.repositories.base import BaseRepository
from app.schemas.meeting import MeetingKey


class MeetingRepository(BaseRepository[Meeting]):
    """
    Narrow store used by the pipeline.

    Only natural-key reads and upserts; merge rules live in MeetingWriter.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Meeting, session)

    async def find_by_natural_key(self, key: MeetingKey) -> Optional[Meeting]:
        query = select(Meeting).where(
            Meeting.platform == key.platform,
            Meeting.meeting_id == key.meeting_id,
            Meeting.sub_meeting_id == key.sub_meeting_id,
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def insert(self, key: MeetingKey, fields: Dict[str, Any]) -> Meeting:
        """Insert a new meeting row. Raises IntegrityError if the key exists."""
        values = {k: v for k, v in fields.items() if v is not None}
        return await self.create(
            platform=key.platform,
            meeting_id=key.meeting_id,
            sub_meeting_id=key.sub_meeting_id,
            **values,
        )

    async def upsert(self, key: MeetingKey, fields: Dict[str, Any]) -> Meeting:
        """Create the row for key, or set the non-None fields on the existing one."""
        meeting = await self.find_by_natural_key(key)
        if meeting is None:
            return await self.insert(key, fields)
        return await self.apply(meeting, **fields)

    async def find_recording_file(self, meeting: Meeting, file_object_id: str) -> Optional[RecordingFile]:
        query = select(RecordingFile).where(
            RecordingFile.meeting_record_id == meeting.id,
            RecordingFile.file_object_id == file_object_id,
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_recording_files(self, meeting: Meeting) -> List[RecordingFile]:
        query = select(RecordingFile).where(RecordingFile.meeting_record_id == meeting.id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def append_recording_file(
        self,
        meeting: Meeting,
        file_object_id: str,
        **fields: Any,
    ) -> RecordingFile:
        """Add a recording file once; an existing one only gains new non-None fields."""
        existing = await self.find_recording_file(meeting, file_object_id)
        if existing is not None:
            for name, value in fields.items():
                if value is not None:
                    setattr(existing, name, value)
            await self.session.flush()
            return existing

        recording = RecordingFile(
            meeting_record_id=meeting.id,
            file_object_id=file_object_id,
            **{k: v for k, v in fields.items() if v is not None},
        )
        self.session.add(recording)
        await self.session.flush()
        await self.session.refresh(recording)
        return recording

    async def find_transcript(self, recording: RecordingFile) -> Optional[Transcript]:
        query = select(Transcript).where(Transcript.recording_file_id == recording.id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def upsert_transcript(self, recording: RecordingFile, content: str, content_format: str = "text") -> Transcript:
        transcript = await self.find_transcript(recording)
        if transcript is None:
            transcript = Transcript(recording_file_id=recording.id)
            self.session.add(transcript)
        transcript.content = content
        transcript.content_format = content_format
        transcript.character_count = len(content)
        await self.session.flush()
        await self.session.refresh(transcript)
        return transcript
