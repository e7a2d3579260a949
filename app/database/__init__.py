"""
Database module for the meeting webhook pipeline.

Provides PostgreSQL connection, SQLAlchemy models, and database utilities.
"""

from app.database.connection import (
    async_engine,
    AsyncSessionLocal,
    init_db,
    close_db,
)
from app.database.models import Base, Meeting, RecordingFile, Transcript

__all__ = [
    "async_engine",
    "AsyncSessionLocal",
    "init_db",
    "close_db",
    "Base",
    "Meeting",
    "RecordingFile",
    "Transcript",
]
