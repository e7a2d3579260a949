"""
Tests for the Redis job queue, job policies, idempotency keys and locks.

Redis is replaced by the in-memory FakeRedis from conftest and time by a
settable clock.
"""

import hashlib

import pytest
from unittest.mock import AsyncMock

from app.queue.jobs import (
    BackoffType,
    JobPolicy,
    JobState,
    JobType,
    MAX_KEY_LENGTH,
    QueueJob,
    build_idempotency_key,
    policy_for,
)
from app.schemas.meeting import Provider, ROOT_SUB_MEETING_ID


class TestBuildIdempotencyKey:
    """Tests for deterministic job keys."""

    def test_full_key(self):
        key = build_idempotency_key(Provider.TENCENT, "recording.completed", "m1", "s1", "file-1")
        assert key == "tencent:recording.completed:m1:s1:file-1"

    def test_defaults(self):
        key = build_idempotency_key("lark", "vc.meeting.all_meeting_ended_v1", "m1")
        assert key == f"lark:vc.meeting.all_meeting_ended_v1:m1:{ROOT_SUB_MEETING_ID}:-"

    def test_same_inputs_same_key(self):
        a = build_idempotency_key(Provider.TENCENT, "meeting.started", "m1", None, None)
        b = build_idempotency_key(Provider.TENCENT, "meeting.started", "m1")
        assert a == b

    def test_long_key_hashed(self):
        long_artifact = "+".join(f"record-file-{i:04d}" for i in range(30))

        key = build_idempotency_key(Provider.TENCENT, "recording.completed", "m1", None, long_artifact)

        assert len(key) <= MAX_KEY_LENGTH
        assert key.startswith("tencent:recording.completed:")
        assert key == build_idempotency_key(Provider.TENCENT, "recording.completed", "m1", None, long_artifact)

    def test_long_key_digest_is_sha256(self):
        long_artifact = "+".join(f"record-file-{i:04d}" for i in range(30))
        full = f"tencent:recording.completed:m1:{ROOT_SUB_MEETING_ID}:{long_artifact}"

        key = build_idempotency_key(Provider.TENCENT, "recording.completed", "m1", None, long_artifact)

        assert key == "tencent:recording.completed:" + hashlib.sha256(full.encode("utf-8")).hexdigest()


class TestJobPolicy:
    """Tests for retry policies."""

    def test_exponential(self):
        policy = JobPolicy(5, BackoffType.EXPONENTIAL, 10.0)
        assert [policy.delay_for(a) for a in (1, 2, 3, 4)] == [10.0, 20.0, 40.0, 80.0]

    def test_fixed(self):
        policy = JobPolicy(3, BackoffType.FIXED, 2.0)
        assert policy.delay_for(1) == policy.delay_for(3) == 2.0

    def test_fetch_jobs_get_more_attempts(self):
        assert policy_for(JobType.TENCENT_FETCH_TRANSCRIPT.value).max_attempts == 5
        assert policy_for(JobType.TENCENT_WEBHOOK_EVENT.value).max_attempts == 3

    def test_unknown_type_uses_default(self):
        assert policy_for("something.else").backoff_type == BackoffType.FIXED


class TestEnqueue:
    """Tests for JobQueue.enqueue."""

    @pytest.mark.asyncio
    async def test_enqueue_stores_job_and_schedules(self, job_queue, fake_redis, clock):
        job = await job_queue.enqueue("tencent.webhook_event", {"a": 1}, idempotency_key="k1")

        assert job.job_id == "k1"
        assert job.state == JobState.WAITING
        assert job.next_run_at == clock.now
        assert job.max_attempts == 3
        assert "queue:test-queue:job:k1" in fake_redis.values
        assert fake_redis.zsets["queue:test-queue:scheduled"]["k1"] == clock.now

    @pytest.mark.asyncio
    async def test_delayed_job(self, job_queue, clock):
        job = await job_queue.enqueue("tencent.fetch_transcript", {}, idempotency_key="k1", delay=300)

        assert job.state == JobState.DELAYED
        assert job.next_run_at == clock.now + 300
        assert await job_queue.claim_due(5) == []

        clock.advance(300)
        claimed = await job_queue.claim_due(5)
        assert [j.job_id for j in claimed] == ["k1"]

    @pytest.mark.asyncio
    async def test_duplicate_key_returns_existing(self, job_queue, fake_redis):
        first = await job_queue.enqueue("tencent.webhook_event", {"n": 1}, idempotency_key="k1")
        second = await job_queue.enqueue("tencent.webhook_event", {"n": 2}, idempotency_key="k1")

        assert second.job_id == first.job_id
        assert second.payload == {"n": 1}
        assert len(fake_redis.zsets["queue:test-queue:scheduled"]) == 1

    @pytest.mark.asyncio
    async def test_completed_key_not_enqueued(self, job_queue, registry):
        await registry.mark_completed("k1")

        assert await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1") is None
        assert await job_queue.get_job("k1") is None

    @pytest.mark.asyncio
    async def test_explicit_max_attempts(self, job_queue):
        job = await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1", max_attempts=7)
        assert job.max_attempts == 7


class TestClaimAndFinish:
    """Tests for claiming, completing, retrying and failing jobs."""

    @pytest.mark.asyncio
    async def test_claim_increments_attempts(self, job_queue, fake_redis, clock):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1")

        [job] = await job_queue.claim_due(1)

        assert job.attempts == 1
        assert job.state == JobState.ACTIVE
        assert "k1" not in fake_redis.zsets["queue:test-queue:scheduled"]
        assert fake_redis.zsets["queue:test-queue:active"]["k1"] == clock.now + 60

    @pytest.mark.asyncio
    async def test_claim_respects_limit_and_order(self, job_queue, clock):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="late", delay=10)
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="early")
        clock.advance(20)

        claimed = await job_queue.claim_due(1)

        assert [j.job_id for j in claimed] == ["early"]
        assert await job_queue.claim_due(0) == []

    @pytest.mark.asyncio
    async def test_complete_marks_key(self, job_queue, registry, fake_redis):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1")
        [job] = await job_queue.claim_due(1)

        await job_queue.complete(job)

        assert await registry.is_completed("k1")
        assert fake_redis.ttls["idempotency:test-queue:k1"] == 86400
        assert await job_queue.get_job("k1") is None
        assert await job_queue.stats() == {"scheduled": 0, "active": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_retry_reschedules_with_delay(self, job_queue, clock):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1")
        [job] = await job_queue.claim_due(1)

        await job_queue.retry(job, "boom", 4.0)

        stored = await job_queue.get_job("k1")
        assert stored.state == JobState.DELAYED
        assert stored.last_error == "boom"
        assert stored.attempts == 1
        assert stored.next_run_at == clock.now + 4.0
        assert await job_queue.claim_due(1) == []

    @pytest.mark.asyncio
    async def test_defer_does_not_spend_attempt(self, job_queue):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1")
        [job] = await job_queue.claim_due(1)

        await job_queue.defer(job, 5.0)

        assert (await job_queue.get_job("k1")).attempts == 0

    @pytest.mark.asyncio
    async def test_fail_and_requeue(self, job_queue):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1")
        [job] = await job_queue.claim_due(1)

        await job_queue.fail(job, "fatal")

        failed = await job_queue.failed_jobs()
        assert [j.job_id for j in failed] == ["k1"]
        assert failed[0].state == JobState.FAILED
        assert failed[0].last_error == "fatal"

        requeued = await job_queue.requeue_failed("k1")
        assert requeued.attempts == 0
        assert (await job_queue.stats())["failed"] == 0
        assert [j.job_id for j in await job_queue.claim_due(1)] == ["k1"]

    @pytest.mark.asyncio
    async def test_requeue_unknown_job(self, job_queue):
        assert await job_queue.requeue_failed("missing") is None

    @pytest.mark.asyncio
    async def test_recover_stalled(self, job_queue, clock):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1")
        await job_queue.claim_due(1)

        assert await job_queue.recover_stalled() == 0
        clock.advance(61)
        assert await job_queue.recover_stalled() == 1

        [job] = await job_queue.claim_due(1)
        assert job.attempts == 2

    @pytest.mark.asyncio
    async def test_extend_lease_keeps_job_active(self, job_queue, clock):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1")
        [job] = await job_queue.claim_due(1)

        clock.advance(50)
        await job_queue.extend_lease(job)
        clock.advance(50)

        assert await job_queue.recover_stalled() == 0
        clock.advance(11)
        assert await job_queue.recover_stalled() == 1

    @pytest.mark.asyncio
    async def test_extend_lease_of_finished_job_is_noop(self, job_queue):
        await job_queue.enqueue("tencent.webhook_event", {}, idempotency_key="k1")
        [job] = await job_queue.claim_due(1)
        await job_queue.complete(job)

        await job_queue.extend_lease(job)

        assert (await job_queue.stats())["active"] == 0

    @pytest.mark.asyncio
    async def test_scheduled_id_without_body_dropped(self, job_queue, fake_redis, clock):
        await fake_redis.zadd("queue:test-queue:scheduled", {"ghost": clock.now})
        assert await job_queue.claim_due(1) == []


class TestQueueJob:
    """Tests for QueueJob serialization."""

    def test_json_round_trip(self):
        job = QueueJob(job_id="k", idempotency_key="k", job_type="t", payload={"x": [1, 2]}, lock_key="l")
        restored = QueueJob.from_json(job.to_json())
        assert restored == job

    def test_attempts_left(self):
        job = QueueJob(job_id="k", idempotency_key="k", job_type="t", attempts=2, max_attempts=3)
        assert job.attempts_left == 1


class TestInflightLocks:
    """Tests for IdempotencyRegistry in-flight locks."""

    @pytest.mark.asyncio
    async def test_owner_releases(self, registry):
        assert await registry.acquire_inflight("record_file:f1", "job-1#1") is True

        assert await registry.release_inflight("record_file:f1", "job-1#1") is True
        assert await registry.is_inflight("record_file:f1") is False

    @pytest.mark.asyncio
    async def test_other_owner_cannot_release(self, registry):
        await registry.acquire_inflight("record_file:f1", "job-2#1")

        assert await registry.release_inflight("record_file:f1", "job-1#1") is False
        assert await registry.is_inflight("record_file:f1") is True

    @pytest.mark.asyncio
    async def test_release_goes_through_one_script_call(self, registry, fake_redis):
        await registry.acquire_inflight("record_file:f1", "job-1#1")
        fake_redis.get = AsyncMock(side_effect=AssertionError("release must not read the lock"))

        assert await registry.release_inflight("record_file:f1", "job-1#1") is True

    @pytest.mark.asyncio
    async def test_extend_resets_ttl_for_owner_only(self, registry, fake_redis):
        await registry.acquire_inflight("record_file:f1", "job-1#1", ttl=30)
        key = "inflight:test-queue:record_file:f1"

        assert await registry.extend_inflight("record_file:f1", "job-2#1") is False
        assert fake_redis.ttls[key] == 30
        assert await registry.extend_inflight("record_file:f1", "job-1#1") is True
        assert fake_redis.ttls[key] == 900
