"""
Repository layer for database operations.
"""

from app.repositories.base import BaseRepository
from app.repositories.meeting_repository import MeetingRepository

__all__ = [
    "BaseRepository",
    "MeetingRepository",
]
