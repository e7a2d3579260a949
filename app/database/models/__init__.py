"""
SQLAlchemy ORM models for the meeting webhook pipeline.

All models are exported from this module for convenient imports.
"""

from app.database.models.base import Base
from app.database.models.meeting import Meeting, RecordingFile, Transcript

__all__ = [
    "Base",
    "Meeting",
    "RecordingFile",
    "Transcript",
]
