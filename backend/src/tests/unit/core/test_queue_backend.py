"""
Tests for the QueueBackend implementations that carry PROCESS_FILE tasks.
"""

import time
from datetime import datetime, timezone
from typing import Dict, Optional
from unittest.mock import AsyncMock, patch

import pytest
import redis.asyncio as redis
from hypothesis import given, settings, strategies as st

from filesync.core.config import Settings
from filesync.core.queue_backend import (
    InMemoryQueueBackend,
    Job,
    JobSerializationError,
    QueueBackend,
    QueueConnectionError,
    QueueOperationError,
    RedisQueueBackend,
    create_queue_backend,
)


# =============================================================================
# Mock Redis Client for Queue Operations
# =============================================================================


class MockRedisClientForQueue:
    """In-process stand-in for the subset of redis.asyncio used by RedisQueueBackend."""

    def __init__(self):
        self._lists: Dict[str, list] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._data: Dict[str, str] = {}
        self.closed = False

    async def lpush(self, key: str, *values: str) -> int:
        lst = self._lists.setdefault(key, [])
        for value in values:
            lst.insert(0, value)
        return len(lst)

    async def rpush(self, key: str, *values: str) -> int:
        lst = self._lists.setdefault(key, [])
        lst.extend(values)
        return len(lst)

    async def rpop(self, key: str) -> Optional[str]:
        lst = self._lists.get(key)
        return lst.pop() if lst else None

    async def brpop(self, key: str, timeout: int = 0) -> Optional[tuple]:
        value = await self.rpop(key)
        return (key, value) if value is not None else None

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, []))

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrem(self, key: str, *members: str) -> int:
        zset = self._zsets.get(key, {})
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        return removed

    async def zrangebyscore(self, key: str, min_score: str, max_score: float) -> list:
        return [m for m, score in self._zsets.get(key, {}).items() if score <= float(max_score)]

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._data[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Hypothesis Strategies for Job Generation
# =============================================================================


json_value_strategy = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=50),
    lambda children: st.lists(children, max_size=5) | st.dictionaries(st.text(min_size=1, max_size=20), children, max_size=5),
    max_leaves=10,
)

job_strategy = st.builds(
    Job,
    queue_name=st.sampled_from(["filesync:process_file", "other:queue"]),
    payload=st.dictionaries(st.text(min_size=1, max_size=30), json_value_strategy, max_size=8),
    id=st.uuids().map(str),
    created_at=st.datetimes(
        min_value=datetime(2020, 1, 1),
        max_value=datetime(2030, 12, 31),
        timezones=st.just(timezone.utc),
    ),
    attempts=st.integers(min_value=0, max_value=100),
    max_attempts=st.integers(min_value=1, max_value=100),
    visibility_timeout=st.integers(min_value=1, max_value=86400),
)


class TestJobSerialization:
    @pytest.mark.asyncio
    @settings(max_examples=50)
    @given(job=job_strategy)
    async def test_job_serialization_round_trip(self, job: Job):
        restored = Job.from_json(job.to_json())
        assert restored == job

    def test_unserializable_payload(self):
        job = Job(queue_name="q", payload={"when": object()})
        with pytest.raises(JobSerializationError):
            job.to_json()

    def test_from_json_invalid_json(self):
        with pytest.raises(JobSerializationError) as exc_info:
            Job.from_json("not valid json")
        assert "Failed to parse job JSON" in exc_info.value.message

    def test_from_json_missing_required_field(self):
        with pytest.raises(JobSerializationError) as exc_info:
            Job.from_json('{"id": "123", "payload": {}}')
        assert "Missing required field" in exc_info.value.message


# =============================================================================
# InMemoryQueueBackend
# =============================================================================


class TestInMemoryQueueBackend:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryQueueBackend(), QueueBackend)

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        backend = InMemoryQueueBackend()
        for i in range(3):
            await backend.enqueue(Job(queue_name="q", payload={"n": i}))

        assert await backend.queue_length("q") == 3
        received = [(await backend.dequeue("q")).payload["n"] for _ in range(3)]
        assert received == [0, 1, 2]
        assert await backend.dequeue("q") is None

    @pytest.mark.asyncio
    async def test_dequeue_increments_attempts(self):
        backend = InMemoryQueueBackend()
        await backend.enqueue(Job(queue_name="q", payload={}))
        job = await backend.dequeue("q")
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_acknowledge_prevents_redelivery(self):
        backend = InMemoryQueueBackend()
        await backend.enqueue(Job(queue_name="q", payload={}, visibility_timeout=1))
        job = await backend.dequeue("q")

        assert await backend.acknowledge(job) is True
        assert await backend.acknowledge(job) is False
        with patch("filesync.core.queue_backend.time.time", return_value=time.time() + 10):
            assert await backend.queue_length("q") == 0

    @pytest.mark.asyncio
    async def test_unacknowledged_job_redelivered_after_visibility_timeout(self):
        backend = InMemoryQueueBackend()
        await backend.enqueue(Job(queue_name="q", payload={"k": "v"}, visibility_timeout=1))
        first = await backend.dequeue("q")

        with patch("filesync.core.queue_backend.time.time", return_value=time.time() + 10):
            again = await backend.dequeue("q")

        assert again.id == first.id
        assert again.attempts == 2

    @pytest.mark.asyncio
    async def test_reject_requeues_until_max_attempts(self):
        backend = InMemoryQueueBackend()
        await backend.enqueue(Job(queue_name="q", payload={}, max_attempts=2))

        job = await backend.dequeue("q")
        await backend.reject(job)
        assert await backend.queue_length("q") == 1

        job = await backend.dequeue("q")
        await backend.reject(job)
        assert await backend.queue_length("q") == 0

    @pytest.mark.asyncio
    async def test_blocking_dequeue_times_out(self):
        backend = InMemoryQueueBackend()
        assert await backend.dequeue("q", timeout_seconds=1) is None

    @pytest.mark.asyncio
    async def test_enqueue_unserializable_raises_operation_error(self):
        backend = InMemoryQueueBackend()
        with pytest.raises(QueueOperationError):
            await backend.enqueue(Job(queue_name="q", payload={"bad": object()}))


# =============================================================================
# RedisQueueBackend
# =============================================================================


class TestRedisQueueBackend:
    @pytest.mark.asyncio
    async def test_enqueue_dequeue_acknowledge(self):
        client = MockRedisClientForQueue()
        backend = RedisQueueBackend(client)

        await backend.enqueue(Job(queue_name="q", payload={"task_name": "PROCESS_FILE"}))
        assert await backend.queue_length("q") == 1

        job = await backend.dequeue("q")
        assert job.payload == {"task_name": "PROCESS_FILE"}
        assert job.attempts == 1
        assert await backend.acknowledge(job) is True

    @pytest.mark.asyncio
    async def test_expired_job_restored(self):
        client = MockRedisClientForQueue()
        backend = RedisQueueBackend(client)
        await backend.enqueue(Job(queue_name="q", payload={}, visibility_timeout=1))
        first = await backend.dequeue("q")

        with patch("filesync.core.queue_backend.time.time", return_value=time.time() + 10):
            again = await backend.dequeue("q")

        assert again.id == first.id

    @pytest.mark.asyncio
    async def test_expired_job_requeued_once_when_consumers_race(self):
        client = MockRedisClientForQueue()
        backend = RedisQueueBackend(client)
        await backend.enqueue(Job(queue_name="q", payload={}, visibility_timeout=1))
        job = await backend.dequeue("q")

        # Both consumers read the expired set before either removes the entry
        stale = [job.id]
        client.zrangebyscore = AsyncMock(return_value=stale)
        with patch("filesync.core.queue_backend.time.time", return_value=time.time() + 10):
            await backend._requeue_timed_out("q")
            await backend._requeue_timed_out("q")

        assert await client.llen(backend._key("q")) == 1

    @pytest.mark.asyncio
    async def test_redis_failure_becomes_connection_error(self):
        client = MockRedisClientForQueue()
        client.lpush = AsyncMock(side_effect=redis.ConnectionError("connection refused"))
        backend = RedisQueueBackend(client)

        with pytest.raises(QueueConnectionError):
            await backend.enqueue(Job(queue_name="q", payload={}))

    @pytest.mark.asyncio
    async def test_close(self):
        client = MockRedisClientForQueue()
        await RedisQueueBackend(client).close()
        assert client.closed


# =============================================================================
# Factory
# =============================================================================


class TestCreateQueueBackend:
    @pytest.mark.asyncio
    async def test_in_memory_without_redis_url(self):
        backend = await create_queue_backend(Settings(_env_file=None))
        assert isinstance(backend, InMemoryQueueBackend)

    @pytest.mark.asyncio
    async def test_each_call_returns_new_instance(self):
        settings_ = Settings(_env_file=None)
        assert await create_queue_backend(settings_) is not await create_queue_backend(settings_)

    @pytest.mark.asyncio
    async def test_redis_when_ping_succeeds(self):
        client = MockRedisClientForQueue()
        client.ping = AsyncMock(return_value=True)
        with patch("filesync.core.queue_backend.redis.from_url", return_value=client):
            backend = await create_queue_backend(Settings(_env_file=None, FILESYNC_REDIS_URL="redis://localhost:6379"))
        assert isinstance(backend, RedisQueueBackend)

    @pytest.mark.asyncio
    async def test_unreachable_redis_raises(self):
        client = MockRedisClientForQueue()
        client.ping = AsyncMock(side_effect=redis.ConnectionError("refused"))
        with patch("filesync.core.queue_backend.redis.from_url", return_value=client):
            with pytest.raises(QueueConnectionError):
                await create_queue_backend(Settings(_env_file=None, FILESYNC_REDIS_URL="redis://localhost:6379"))
        assert client.closed
