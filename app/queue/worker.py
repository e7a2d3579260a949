"""
Queue worker: claims due jobs and runs them through their processors.

Outcomes per job:
- key already completed: no-op success, processor not called
- lock_key in flight elsewhere: rescheduled, attempt not spent
- FatalJobError: failed set immediately
- any other error: retried with backoff until max_attempts, then failed set
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Set

from app.core.config import settings
from app.core.exceptions import FatalJobError, QueueAttemptsExhaustedError
from app.queue.jobs import QueueJob
from app.queue.producer import JobQueue

logger = logging.getLogger(__name__)

Processor = Callable[[QueueJob], Awaitable[None]]


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    RETRYING = "retrying"
    FAILED = "failed"


class QueueWorker:
    """
    Background worker pulling from a JobQueue.

    Runs up to ``concurrency`` jobs at once as asyncio tasks; a long
    recording poll only ties up one of those slots.
    """

    def __init__(
        self,
        queue: JobQueue,
        processors: Dict[str, Processor],
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        lock_retry_delay: Optional[float] = None,
        lease_renew_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.registry = queue.registry
        self.processors = processors
        self.concurrency = concurrency or settings.QUEUE_CONCURRENCY
        self.poll_interval = poll_interval if poll_interval is not None else settings.QUEUE_POLL_INTERVAL_SECONDS
        self.lock_retry_delay = lock_retry_delay if lock_retry_delay is not None else settings.QUEUE_LOCK_RETRY_DELAY_SECONDS
        self.lease_renew_interval = (
            lease_renew_interval if lease_renew_interval is not None else settings.QUEUE_LEASE_RENEW_INTERVAL_SECONDS
        )
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._jobs: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the polling loop."""
        if self._running:
            logger.info("Queue worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Queue worker started on {self.queue.name} (concurrency={self.concurrency})")

    async def stop(self):
        """Stop polling and wait for in-progress jobs."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("Queue worker stopped")

    async def drain(self) -> None:
        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)

    async def _run_loop(self):
        while self._running:
            claimed = 0
            try:
                claimed = await self.run_once()
            except Exception as e:
                logger.error(f"Queue poll failed: {type(e).__name__}: {e}")

            if claimed == 0:
                await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> int:
        """Claim as many due jobs as there are free slots and start them."""
        await self.queue.recover_stalled()

        free = self.concurrency - len(self._jobs)
        if free <= 0:
            return 0

        jobs = await self.queue.claim_due(free)
        for job in jobs:
            task = asyncio.create_task(self._guarded(job))
            self._jobs.add(task)
            task.add_done_callback(self._jobs.discard)
        return len(jobs)

    async def _guarded(self, job: QueueJob) -> None:
        try:
            await self.process(job)
        except Exception as e:
            # Redis failure while recording the outcome; the lease expiry will recover the job
            logger.error(f"Could not record outcome of job {job.job_id}: {e}", exc_info=True)

    async def _keep_lease(self, job: QueueJob, owner: str) -> None:
        """Renew the job lease and its lock while the processor runs."""
        while True:
            await asyncio.sleep(self.lease_renew_interval)
            try:
                await self.queue.extend_lease(job)
                if job.lock_key and not await self.registry.extend_inflight(job.lock_key, owner):
                    logger.warning(f"Job {job.job_id} lost its lock on {job.lock_key}")
            except Exception as e:
                logger.error(f"Could not renew lease of job {job.job_id}: {type(e).__name__}: {e}")

    async def process(self, job: QueueJob) -> JobOutcome:
        processor = self.processors.get(job.job_type)
        if processor is None:
            logger.error(f"No processor registered for job type {job.job_type}")
            await self.queue.fail(job, f"No processor for job type {job.job_type}")
            return JobOutcome.FAILED

        if await self.registry.is_completed(job.idempotency_key):
            logger.info(f"Job {job.job_id} already completed, acknowledging redelivery")
            await self.queue.complete(job)
            return JobOutcome.SKIPPED

        owner = f"{job.job_id}#{job.attempts}"
        if job.lock_key:
            if not await self.registry.acquire_inflight(job.lock_key, owner):
                logger.info(f"Job {job.job_id} waiting for {job.lock_key}, retry in {self.lock_retry_delay:.0f}s")
                await self.queue.defer(job, self.lock_retry_delay)
                return JobOutcome.DEFERRED

        lease = asyncio.create_task(self._keep_lease(job, owner))
        try:
            logger.info(f"Processing {job.job_type} job {job.job_id} (attempt {job.attempts}/{job.max_attempts})")
            await processor(job)
        except FatalJobError as e:
            logger.error(f"Job {job.job_id} failed permanently: {e.message}")
            await self.queue.fail(job, e.message)
            return JobOutcome.FAILED
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            if job.attempts >= job.max_attempts:
                exhausted = QueueAttemptsExhaustedError(job.job_id, job.attempts, error)
                logger.error(exhausted.message)
                await self.queue.fail(job, error)
                return JobOutcome.FAILED
            delay = job.policy.delay_for(job.attempts)
            logger.warning(f"Job {job.job_id} attempt {job.attempts} failed ({error}), retrying in {delay:.0f}s")
            await self.queue.retry(job, error, delay)
            return JobOutcome.RETRYING
        finally:
            lease.cancel()
            try:
                await lease
            except asyncio.CancelledError:
                pass
            if job.lock_key:
                await self.registry.release_inflight(job.lock_key, owner)

        await self.queue.complete(job)
        return JobOutcome.COMPLETED


async def _run_standalone() -> None:
    from app.api.deps import build_worker
    from app.cache.redis_client import close_redis, init_redis
    from app.core.logging import setup_logging

    setup_logging(settings.LOG_LEVEL)
    await init_redis()
    worker = await build_worker()
    await worker.start()
    try:
        await asyncio.Event().wait()
    finally:
        await worker.stop()
        await close_redis()


if __name__ == "__main__":
    asyncio.run(_run_standalone())
