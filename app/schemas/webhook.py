"""
Schemas for Tencent Meeting and Lark webhook payloads.

Tencent Meeting posts {"data": <ciphertext>}; the plaintext is
{"event": ..., "trace_id": ..., "payload": [...]}, one payload per affected
meeting. Lark posts a schema 2.0 envelope with "header" and "event".
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.meeting import MeetingKey, Provider, ROOT_SUB_MEETING_ID


class WebhookEventType(str, Enum):
    """Event types with a business handler."""
    MEETING_STARTED = "meeting.started"
    MEETING_END = "meeting.end"
    MEETING_ENDED = "meeting.ended"
    PARTICIPANT_JOINED = "meeting.participant-joined"
    PARTICIPANT_LEFT = "meeting.participant-left"
    PARTICIPANT_JOINED_SHORT = "participant.joined"
    PARTICIPANT_LEFT_SHORT = "participant.left"
    RECORDING_COMPLETED = "recording.completed"
    TRANSCRIPT_READY = "smart.transcripts"
    LARK_MEETING_ENDED = "vc.meeting.all_meeting_ended_v1"
    LARK_MEETING_ALL_ENDED = "meeting.all_ended"


# =============================================================================
# Tencent Meeting payloads
# =============================================================================

class _PlatformModel(BaseModel):
    # Providers add fields without notice
    model_config = ConfigDict(extra="allow")


class UserRef(_PlatformModel):
    userid: Optional[str] = None
    uuid: Optional[str] = None
    user_name: Optional[str] = None
    instance_id: Optional[Union[int, str]] = None

    def roster_id(self) -> Optional[str]:
        return self.uuid or self.userid


class Creator(_PlatformModel):
    userid: str
    user_name: str
    uuid: Optional[str] = None


class MeetingInfo(_PlatformModel):
    meeting_id: str
    meeting_code: Optional[str] = None
    subject: Optional[str] = None
    creator: Optional[UserRef] = None
    hosts: Optional[List[UserRef]] = None
    meeting_type: Optional[int] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    sub_meeting_id: Optional[str] = None
    sub_meeting_start_time: Optional[int] = None
    sub_meeting_end_time: Optional[int] = None


class RecordingMeetingInfo(MeetingInfo):
    """meeting_info as required by recording.completed."""
    meeting_code: str
    subject: str
    creator: Creator


class RecordingFileRef(_PlatformModel):
    record_file_id: str


class ParticipantInfo(_PlatformModel):
    userid: str
    user_name: str
    uuid: Optional[str] = None


class TencentPayload(_PlatformModel):
    """Fields common to every Tencent Meeting payload entry."""
    operate_time: Optional[int] = Field(None, description="Epoch milliseconds")
    operator: Optional[UserRef] = None
    meeting_info: MeetingInfo

    def meeting_key(self) -> MeetingKey:
        return MeetingKey.build(
            Provider.TENCENT,
            self.meeting_info.meeting_id,
            self.meeting_info.sub_meeting_id,
        )

    def artifact_id(self) -> Optional[str]:
        return None


class MeetingLifecyclePayload(TencentPayload):
    meeting_end_type: Optional[int] = None


class ParticipantPayload(TencentPayload):
    participant_info: Optional[ParticipantInfo] = None

    def participant(self) -> Optional[UserRef]:
        if self.participant_info is not None:
            info = self.participant_info
            return UserRef(userid=info.userid, uuid=info.uuid, user_name=info.user_name)
        return self.operator

    def artifact_id(self) -> Optional[str]:
        who = self.participant()
        userid = who.userid if who else None
        return f"{userid or 'unknown'}@{self.operate_time or 0}"


class RecordingCompletedPayload(TencentPayload):
    meeting_info: RecordingMeetingInfo
    recording_files: List[RecordingFileRef] = Field(..., min_length=1)

    def artifact_id(self) -> Optional[str]:
        return "+".join(f.record_file_id for f in self.recording_files)


# =============================================================================
# Lark payloads
# =============================================================================

class LarkMeeting(_PlatformModel):
    id: str
    topic: Optional[str] = None
    meeting_no: Optional[str] = None
    start_time: Optional[Union[int, str]] = None
    end_time: Optional[Union[int, str]] = None
    host_user: Optional[Dict[str, Any]] = None
    owner: Optional[Dict[str, Any]] = None

    def host_user_id(self) -> Optional[str]:
        user = self.host_user or self.owner or {}
        ids = user.get("id") or {}
        if isinstance(ids, dict):
            return ids.get("user_id") or ids.get("open_id") or ids.get("union_id")
        return str(ids) if ids else None


class LarkMeetingEndedPayload(_PlatformModel):
    meeting: LarkMeeting
    event_id: Optional[str] = None
    create_time: Optional[Union[int, str]] = None
    app_id: Optional[str] = None

    def meeting_key(self) -> MeetingKey:
        return MeetingKey.build(Provider.LARK, self.meeting.id, ROOT_SUB_MEETING_ID)

    def artifact_id(self) -> Optional[str]:
        return None


class UnknownPayload(_PlatformModel):
    """Payload of an event type outside the catalogue, kept as-is."""

    def meeting_key(self) -> Optional[MeetingKey]:
        info = getattr(self, "meeting_info", None)
        if isinstance(info, dict) and info.get("meeting_id"):
            return MeetingKey.build(Provider.TENCENT, info["meeting_id"], info.get("sub_meeting_id"))
        return None

    def artifact_id(self) -> Optional[str]:
        return None


Payload = Union[
    MeetingLifecyclePayload,
    ParticipantPayload,
    RecordingCompletedPayload,
    LarkMeetingEndedPayload,
    TencentPayload,
    UnknownPayload,
]


# =============================================================================
# Envelopes
# =============================================================================

@dataclass(frozen=True)
class WebhookEnvelope:
    """Inbound webhook as received over HTTP. Never persisted."""
    provider: Provider
    raw_timestamp: str
    nonce: str
    signature: str
    ciphertext: bytes
    received_at: datetime
    event_type: str = ""
    trace_id: str = ""

    def with_event(self, event_type: str, trace_id: str) -> "WebhookEnvelope":
        """Copy stamped with what decryption revealed."""
        return replace(self, event_type=event_type, trace_id=trace_id)

    def describe(self) -> str:
        return (
            f"{self.provider.value} event {self.event_type or '<undecrypted>'} "
            f"(trace {self.trace_id or '-'}, {len(self.ciphertext)} bytes, "
            f"received {self.received_at.isoformat()})"
        )


@dataclass
class DecryptedEvent:
    """Parsed event: a type plus one typed payload per affected meeting."""
    provider: Provider
    event_type: str
    trace_id: str
    payloads: List[Any] = field(default_factory=list)
    known: bool = True

    def to_job_payload(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "event_type": self.event_type,
            "trace_id": self.trace_id,
            "payloads": [p.model_dump(mode="json", exclude_none=True) for p in self.payloads],
        }


# =============================================================================
# HTTP bodies
# =============================================================================

class TencentCallbackBody(BaseModel):
    """POST body sent by Tencent Meeting."""
    data: Optional[str] = None

    model_config = {"extra": "allow"}


class LarkChallengeResponse(BaseModel):
    challenge: str


class LarkAckResponse(BaseModel):
    msg: str = "success"


class WebhookHealthResponse(BaseModel):
    """Response schema for webhook health check."""
    status: str
    providers: Dict[str, bool]
    message: str
