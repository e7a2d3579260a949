"""
Root pytest configuration for the meeting webhook pipeline tests.

This file registers custom command line options and markers that can be used
across all test directories, plus shared fixtures: an in-memory Redis
stand-in for the queue, a SQLite-backed session factory for the writer and
sample provider payloads.
"""

import base64
import copy
import json
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.cache.meeting_cache import MeetingMetadataCache
from app.database.models import Base
from app.queue.producer import JobQueue
from app.queue.registry import EXTEND_INFLIGHT_SCRIPT, RELEASE_INFLIGHT_SCRIPT, IdempotencyRegistry
from app.services.webhook_service import WebhookService
from app.webhooks.codec import aes_encrypt
from app.webhooks.signature import compute_signature

TEST_TOKEN = "test_token"
TEST_AES_KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode("ascii").rstrip("=")


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires external services like Redis and Postgres)",
    )
    parser.addoption(
        "--performance",
        action="store_true",
        default=False,
        help="Run performance tests",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (require external services)"
    )
    config.addinivalue_line(
        "markers", "performance: marks tests as performance tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration/performance tests unless flags are provided."""
    run_integration = config.getoption("--integration")
    run_performance = config.getoption("--performance")

    skip_integration = pytest.mark.skip(
        reason="Need --integration option to run integration tests"
    )
    skip_performance = pytest.mark.skip(
        reason="Need --performance option to run performance tests"
    )

    for item in items:
        if "integration" in item.keywords and not run_integration:
            item.add_marker(skip_integration)
        if "performance" in item.keywords and not run_performance:
            item.add_marker(skip_performance)


# ============== Redis ==============

class FakeRedis:
    """
    In-memory subset of redis.asyncio.Redis used by the queue and caches.

    Strings and sorted sets only; TTLs are recorded but never expire.
    """

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.ttls: Dict[str, int] = {}

    async def ping(self):
        return True

    async def info(self, section=None):
        return {"redis_version": "7.2.0"}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.values)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            if self.zsets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def zadd(self, key, mapping, xx=False):
        zset = self.zsets.setdefault(key, {})
        if xx:
            mapping = {member: score for member, score in mapping.items() if member in zset}
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        return removed

    def _ordered(self, key):
        return sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    async def zrangebyscore(self, key, min, max, start=None, num=None):
        low, high = float(min), float(max)
        members = [member for member, score in self._ordered(key) if low <= score <= high]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members

    async def zrange(self, key, start, end):
        members = [member for member, _ in self._ordered(key)]
        return members[start:] if end == -1 else members[start:end + 1]

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    async def eval(self, script, numkeys, *keys_and_args):
        """Runs the registry's owner-checked lock scripts; nothing else."""
        (key,), (owner, *rest) = keys_and_args[:numkeys], keys_and_args[numkeys:]
        if self.values.get(key) != owner:
            return 0
        if script == RELEASE_INFLIGHT_SCRIPT:
            return await self.delete(key)
        if script == EXTEND_INFLIGHT_SCRIPT:
            self.ttls[key] = int(rest[0])
            return 1
        raise NotImplementedError(script)


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(fake_redis):
    return IdempotencyRegistry(fake_redis, "test-queue", completed_ttl=86400, inflight_ttl=900)


@pytest.fixture
def job_queue(fake_redis, registry, clock):
    return JobQueue(fake_redis, registry, name="test-queue", stalled_after=60, clock=clock)


# ============== Database ==============

@pytest_asyncio.fixture
async def session_factory():
    """Session factory on a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


# ============== Payloads ==============

MEETING_INFO = {
    "meeting_id": "7350218455384938612",
    "meeting_code": "806146667",
    "subject": "Weekly sync",
    "creator": {"userid": "creator_01", "user_name": "Alice", "uuid": "WM4u3yLu1"},
    "meeting_type": 0,
    "start_time": 1700000000,
    "end_time": 1700003600,
}


@pytest.fixture
def meeting_info() -> Dict[str, Any]:
    return copy.deepcopy(MEETING_INFO)


@pytest.fixture
def recording_completed_body() -> Dict[str, Any]:
    """Decrypted Tencent recording.completed body with one record file."""
    return {
        "event": "recording.completed",
        "trace_id": "trace-recording-1",
        "payload": [
            {
                "operate_time": 1700003700000,
                "operator": {"userid": "creator_01", "user_name": "Alice"},
                "meeting_info": copy.deepcopy(MEETING_INFO),
                "recording_files": [{"record_file_id": "rec-file-001"}],
            }
        ],
    }


@pytest.fixture
def meeting_started_body() -> Dict[str, Any]:
    return {
        "event": "meeting.started",
        "trace_id": "trace-started-1",
        "payload": [
            {
                "operate_time": 1700000005000,
                "operator": {"userid": "creator_01", "user_name": "Alice"},
                "meeting_info": copy.deepcopy(MEETING_INFO),
            }
        ],
    }


@pytest.fixture
def lark_meeting_ended_body() -> Dict[str, Any]:
    """Plaintext Lark schema 2.0 vc.meeting.all_meeting_ended_v1 callback."""
    return {
        "schema": "2.0",
        "header": {
            "event_id": "5e3702a84e847582be8db7fb73283c02",
            "event_type": "vc.meeting.all_meeting_ended_v1",
            "create_time": "1700003600000",
            "token": "lark-verification-token",
            "app_id": "cli_9e28cb5ba9b1d00c",
        },
        "event": {
            "meeting": {
                "id": "6911188411934433028",
                "topic": "Design review",
                "meeting_no": "235812466",
                "start_time": "1700000000",
                "end_time": "1700003600",
                "host_user": {"id": {"user_id": "lark_host_01"}},
            }
        },
    }


@pytest.fixture
def encrypt_tencent_event():
    """
    Build the signed, encrypted pieces of a Tencent callback.

    Returns a function(body) -> (data, timestamp, nonce, signature).
    """

    def _encrypt(body: Any, token: str = TEST_TOKEN, aes_key: str = TEST_AES_KEY,
                 timestamp: str = "1700003700", nonce: Optional[str] = "3245612"):
        plaintext = body if isinstance(body, str) else json.dumps(body)
        data = aes_encrypt(plaintext, aes_key)
        return data, timestamp, nonce, compute_signature(token, timestamp, nonce, data)

    return _encrypt


# ============== Services ==============

LARK_ENCRYPT_KEY = "lark-encrypt-key"
LARK_VERIFICATION_TOKEN = "lark-verification-token"


@pytest.fixture
def meeting_cache(fake_redis):
    return MeetingMetadataCache(ttl_seconds=3600, client=fake_redis)


@pytest.fixture
def webhook_service(job_queue, meeting_cache):
    """WebhookService with test credentials for both providers."""
    return WebhookService(
        queue=job_queue,
        meeting_cache=meeting_cache,
        tencent_token=TEST_TOKEN,
        tencent_aes_key=TEST_AES_KEY,
        lark_encrypt_key=LARK_ENCRYPT_KEY,
        lark_verification_token=LARK_VERIFICATION_TOKEN,
    )
