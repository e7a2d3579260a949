"""
Job model, job types, retry policies and idempotency keys.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from app.schemas.meeting import Provider, ROOT_SUB_MEETING_ID

MAX_KEY_LENGTH = 200


class JobType(str, Enum):
    TENCENT_WEBHOOK_EVENT = "tencent.webhook_event"
    LARK_WEBHOOK_EVENT = "lark.webhook_event"
    TENCENT_FETCH_TRANSCRIPT = "tencent.fetch_transcript"
    LARK_FETCH_TRANSCRIPT = "lark.fetch_transcript"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class JobPolicy:
    max_attempts: int
    backoff_type: BackoffType
    backoff_seconds: float

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows the given (1-based) attempt."""
        if self.backoff_type == BackoffType.FIXED:
            return self.backoff_seconds
        return self.backoff_seconds * (2 ** max(attempt - 1, 0))


# Transcript fetches pull large artifacts from provider APIs and get
# more attempts than the webhook notification jobs.
JOB_POLICIES: Dict[JobType, JobPolicy] = {
    JobType.TENCENT_WEBHOOK_EVENT: JobPolicy(3, BackoffType.EXPONENTIAL, 2.0),
    JobType.LARK_WEBHOOK_EVENT: JobPolicy(3, BackoffType.EXPONENTIAL, 5.0),
    JobType.TENCENT_FETCH_TRANSCRIPT: JobPolicy(5, BackoffType.EXPONENTIAL, 10.0),
    JobType.LARK_FETCH_TRANSCRIPT: JobPolicy(5, BackoffType.EXPONENTIAL, 10.0),
}

DEFAULT_POLICY = JobPolicy(3, BackoffType.FIXED, 2.0)


def policy_for(job_type: str) -> JobPolicy:
    try:
        return JOB_POLICIES[JobType(job_type)]
    except ValueError:
        return DEFAULT_POLICY


def build_idempotency_key(
    provider: Provider | str,
    event_type: str,
    meeting_id: Optional[str],
    sub_meeting_id: Optional[str] = None,
    artifact_id: Optional[str] = None,
) -> str:
    """
    Deterministic key for one logical unit of work.

    provider:event_type:meeting_id:sub_meeting_id:artifact, where artifact
    is a record file id or a minute token. Keys longer than 200 characters
    keep a readable prefix and end in a SHA-256 digest.
    """
    provider_value = provider.value if isinstance(provider, Provider) else str(provider)
    key = ":".join([
        provider_value,
        event_type,
        str(meeting_id or "-"),
        str(sub_meeting_id or ROOT_SUB_MEETING_ID),
        str(artifact_id or "-"),
    ])
    if len(key) <= MAX_KEY_LENGTH:
        return key
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{provider_value}:{event_type}:{digest}"


class QueueJob(BaseModel):
    """A unit of queued work. job_id is the idempotency key."""

    job_id: str
    idempotency_key: str
    job_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    backoff_seconds: float = 2.0
    delay: float = 0.0
    next_run_at: float = Field(default_factory=time.time)
    lock_key: Optional[str] = None
    state: JobState = JobState.WAITING
    last_error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)

    @property
    def policy(self) -> JobPolicy:
        return JobPolicy(self.max_attempts, self.backoff_type, self.backoff_seconds)

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "QueueJob":
        return cls.model_validate_json(raw)
