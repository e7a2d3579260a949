"""
Meeting, recording file and transcript models.

A meeting row is unique on (platform, meeting_id, sub_meeting_id) and is
only ever created once; later events merge into it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database.models.base import Base
from app.schemas.meeting import ProcessingStatus, Provider, ROOT_SUB_MEETING_ID


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Meeting(Base):
    """One conference meeting (or one occurrence of a recurring meeting)."""

    __tablename__ = "meetings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    # Natural key
    platform: Mapped[Provider] = mapped_column(
        SQLEnum(Provider, name="meeting_platform", values_callable=_enum_values),
        nullable=False,
    )
    meeting_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="Provider meeting id")
    sub_meeting_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default=ROOT_SUB_MEETING_ID,
        comment="Occurrence id for recurring meetings",
    )

    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    meeting_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    meeting_type: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    host_user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    host_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    scheduled_start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    participant_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    has_recording: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recording_status: Mapped[ProcessingStatus] = mapped_column(
        SQLEnum(ProcessingStatus, name="recording_status", values_callable=_enum_values),
        default=ProcessingStatus.PENDING,
        nullable=False,
    )
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        SQLEnum(ProcessingStatus, name="processing_status", values_callable=_enum_values),
        default=ProcessingStatus.PENDING,
        nullable=False,
        index=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    metadata_: Mapped[dict] = mapped_column(
        "metadata",
        default=dict,
        nullable=False,
        comment="Raw provider fields not mapped to columns",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("platform", "meeting_id", "sub_meeting_id", name="uq_meetings_natural_key"),
        Index("ix_meetings_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Meeting(platform={self.platform}, meeting_id={self.meeting_id}, "
            f"sub_meeting_id={self.sub_meeting_id}, processing_status={self.processing_status})>"
        )


class RecordingFile(Base):
    """A recording artifact: a Tencent record file or a Lark minute token."""

    __tablename__ = "recording_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    meeting_record_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("meetings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_object_id: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[ProcessingStatus] = mapped_column(
        SQLEnum(ProcessingStatus, name="recording_file_status", values_callable=_enum_values),
        default=ProcessingStatus.PENDING,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("meeting_record_id", "file_object_id", name="uq_recording_files_meeting_file"),
    )

    def __repr__(self) -> str:
        return f"<RecordingFile(file_object_id={self.file_object_id}, status={self.status})>"


class Transcript(Base):
    """Transcript text for one recording file."""

    __tablename__ = "transcripts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    recording_file_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("recording_files.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_format: Mapped[str] = mapped_column(String(16), default="text", nullable=False)
    character_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Transcript(recording_file_id={self.recording_file_id}, chars={self.character_count})>"
