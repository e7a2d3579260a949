"""
Natural keys and enums shared by the writer, the handlers and the queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

ROOT_SUB_MEETING_ID = "__ROOT__"


class Provider(str, Enum):
    """Conferencing platforms that send webhooks."""
    TENCENT = "tencent"
    LARK = "lark"


class ProcessingStatus(str, Enum):
    """Pipeline status of a meeting or recording."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed forward moves. COMPLETED and FAILED are terminal.
STATUS_TRANSITIONS = {
    ProcessingStatus.PENDING: {ProcessingStatus.PROCESSING, ProcessingStatus.COMPLETED},
    ProcessingStatus.PROCESSING: {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED},
    ProcessingStatus.COMPLETED: set(),
    ProcessingStatus.FAILED: set(),
}


def can_transition(current: Optional[ProcessingStatus], requested: ProcessingStatus) -> bool:
    """True when moving from current to requested is a forward step."""
    if current is None:
        return True
    current = ProcessingStatus(current)
    requested = ProcessingStatus(requested)
    return requested in STATUS_TRANSITIONS[current]


@dataclass(frozen=True)
class MeetingKey:
    """Natural key of a meeting row: (platform, meeting id, sub-meeting id)."""

    platform: Provider
    meeting_id: str
    sub_meeting_id: str = ROOT_SUB_MEETING_ID

    @classmethod
    def build(cls, platform: Provider | str, meeting_id: str, sub_meeting_id: Optional[str] = None) -> "MeetingKey":
        return cls(
            platform=Provider(platform),
            meeting_id=str(meeting_id),
            sub_meeting_id=sub_meeting_id or ROOT_SUB_MEETING_ID,
        )

    def __str__(self) -> str:
        return f"{self.platform.value}:{self.meeting_id}:{self.sub_meeting_id}"
