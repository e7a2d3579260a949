"""
Redis-backed job queue with idempotent, at-least-once processing.
"""

from app.queue.jobs import (
    JobPolicy,
    JobState,
    JobType,
    QueueJob,
    build_idempotency_key,
    policy_for,
)
from app.queue.producer import JobQueue
from app.queue.registry import IdempotencyRegistry
from app.queue.worker import JobOutcome, QueueWorker

__all__ = [
    "JobPolicy",
    "JobState",
    "JobType",
    "QueueJob",
    "build_idempotency_key",
    "policy_for",
    "JobQueue",
    "IdempotencyRegistry",
    "JobOutcome",
    "QueueWorker",
]
