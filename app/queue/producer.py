"""
Redis-backed delayed job queue.

Layout (prefix ``queue:<name>``):
- ``job:<job_id>``  job JSON; job_id is the idempotency key
- ``scheduled``     zset of job ids scored by next_run_at
- ``active``        zset of claimed job ids scored by lease deadline
- ``failed``        zset of dead-lettered job ids scored by failure time

Claiming is ZREM-based: only the worker whose ZREM removes the id owns the
job, so several worker processes can poll the same queue.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis

from app.queue.jobs import JobState, QueueJob, policy_for
from app.queue.registry import IdempotencyRegistry

logger = logging.getLogger(__name__)


class JobQueue:

    def __init__(
        self,
        client: redis.Redis,
        registry: IdempotencyRegistry,
        name: str = "meeting-events",
        stalled_after: float = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.registry = registry
        self.name = name
        self.stalled_after = stalled_after
        self._clock = clock
        self._prefix = f"queue:{name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    @property
    def _scheduled_key(self) -> str:
        return f"{self._prefix}:scheduled"

    @property
    def _active_key(self) -> str:
        return f"{self._prefix}:active"

    @property
    def _failed_key(self) -> str:
        return f"{self._prefix}:failed"

    async def _save(self, job: QueueJob) -> None:
        await self.client.set(self._job_key(job.job_id), job.to_json())

    # -----------------------------
    # Producer side
    # -----------------------------

    async def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        idempotency_key: str,
        delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        lock_key: Optional[str] = None,
    ) -> Optional[QueueJob]:
        """
        Add a job unless its key is already done or already queued.

        Returns:
            The new job, the existing job with the same key, or None when
            the key was completed within the retention window.
        """
        if await self.registry.is_completed(idempotency_key):
            logger.info(f"Skipping enqueue of {job_type} {idempotency_key}: already completed")
            return None

        policy = policy_for(job_type)
        now = self._clock()
        delay = max(delay or 0.0, 0.0)
        job = QueueJob(
            job_id=idempotency_key,
            idempotency_key=idempotency_key,
            job_type=job_type,
            payload=payload,
            max_attempts=max_attempts or policy.max_attempts,
            backoff_type=policy.backoff_type,
            backoff_seconds=policy.backoff_seconds,
            delay=delay,
            next_run_at=now + delay,
            lock_key=lock_key,
            state=JobState.DELAYED if delay else JobState.WAITING,
            created_at=now,
        )

        created = await self.client.set(self._job_key(job.job_id), job.to_json(), nx=True)
        if not created:
            existing = await self.get_job(job.job_id)
            logger.info(
                f"Job {job.job_id} already queued"
                f" ({existing.state.value if existing else 'unknown'}), not adding a duplicate"
            )
            return existing

        await self.client.zadd(self._scheduled_key, {job.job_id: job.next_run_at})
        logger.info(f"Enqueued {job_type} job {job.job_id} (delay={delay:.0f}s)")
        return job

    # -----------------------------
    # Consumer side
    # -----------------------------

    async def claim_due(self, limit: int = 1) -> List[QueueJob]:
        """Claim up to limit jobs whose next_run_at has passed."""
        if limit <= 0:
            return []

        now = self._clock()
        ids = await self.client.zrangebyscore(self._scheduled_key, "-inf", now, start=0, num=limit)
        claimed: List[QueueJob] = []

        for job_id in ids:
            if await self.client.zrem(self._scheduled_key, job_id) != 1:
                continue  # taken by another worker
            job = await self.get_job(job_id)
            if job is None:
                logger.warning(f"Scheduled job {job_id} has no body, dropping id")
                continue
            job.attempts += 1
            job.state = JobState.ACTIVE
            await self._save(job)
            await self.client.zadd(self._active_key, {job_id: now + self.stalled_after})
            claimed.append(job)

        return claimed

    async def extend_lease(self, job: QueueJob) -> None:
        """Push a running job's lease deadline out by stalled_after."""
        await self.client.zadd(self._active_key, {job.job_id: self._clock() + self.stalled_after}, xx=True)

    async def complete(self, job: QueueJob) -> None:
        await self.registry.mark_completed(job.idempotency_key)
        await self.client.zrem(self._active_key, job.job_id)
        await self.client.delete(self._job_key(job.job_id))
        logger.info(f"Job {job.job_id} completed after {job.attempts} attempt(s)")

    async def retry(self, job: QueueJob, error: str, delay: float) -> None:
        """Put a failed attempt back on the schedule after delay seconds."""
        job.state = JobState.DELAYED
        job.last_error = error
        job.next_run_at = self._clock() + delay
        await self._save(job)
        await self.client.zrem(self._active_key, job.job_id)
        await self.client.zadd(self._scheduled_key, {job.job_id: job.next_run_at})

    async def defer(self, job: QueueJob, delay: float) -> None:
        """Reschedule without spending an attempt."""
        job.attempts = max(job.attempts - 1, 0)
        job.state = JobState.DELAYED
        job.next_run_at = self._clock() + delay
        await self._save(job)
        await self.client.zrem(self._active_key, job.job_id)
        await self.client.zadd(self._scheduled_key, {job.job_id: job.next_run_at})

    async def fail(self, job: QueueJob, error: str) -> None:
        """Move a job to the failed set for manual inspection."""
        job.state = JobState.FAILED
        job.last_error = error
        await self._save(job)
        await self.client.zrem(self._active_key, job.job_id)
        await self.client.zadd(self._failed_key, {job.job_id: self._clock()})

    async def recover_stalled(self) -> int:
        """Reschedule active jobs whose lease ran out (their worker died)."""
        now = self._clock()
        stalled = await self.client.zrangebyscore(self._active_key, "-inf", now)
        recovered = 0
        for job_id in stalled:
            if await self.client.zrem(self._active_key, job_id) != 1:
                continue
            await self.client.zadd(self._scheduled_key, {job_id: now})
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stalled job(s) in {self.name}")
        return recovered

    # -----------------------------
    # Inspection
    # -----------------------------

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        raw = await self.client.get(self._job_key(job_id))
        if raw is None:
            return None
        return QueueJob.from_json(raw)

    async def failed_jobs(self, limit: int = 50) -> List[QueueJob]:
        ids = await self.client.zrange(self._failed_key, 0, limit - 1)
        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def requeue_failed(self, job_id: str) -> Optional[QueueJob]:
        """Give a dead-lettered job a fresh set of attempts."""
        if await self.client.zrem(self._failed_key, job_id) != 1:
            return None
        job = await self.get_job(job_id)
        if job is None:
            return None
        job.attempts = 0
        job.state = JobState.WAITING
        job.next_run_at = self._clock()
        await self._save(job)
        await self.client.zadd(self._scheduled_key, {job_id: job.next_run_at})
        logger.info(f"Requeued failed job {job_id}")
        return job

    async def stats(self) -> Dict[str, int]:
        return {
            "scheduled": await self.client.zcard(self._scheduled_key),
            "active": await self.client.zcard(self._active_key),
            "failed": await self.client.zcard(self._failed_key),
        }
