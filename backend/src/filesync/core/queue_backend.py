"""
Work queue backends for downstream file-processing tasks.

The ingestion pipeline only ever enqueues; ``dequeue``, ``acknowledge`` and
``reject`` exist for whatever consumes ``PROCESS_FILE`` jobs. Delivery is
at-least-once: a dequeued job that is not acknowledged within its
visibility timeout is handed out again.

Two implementations:
- RedisQueueBackend: shared between processes, survives restarts
- InMemoryQueueBackend: single process, for development and tests

``create_queue_backend(settings)`` returns a new instance chosen by
FILESYNC_REDIS_URL; the caller owns and closes it.
"""

import asyncio
import json
import threading
import time
import uuid
from collections import defaultdict, deque
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar, runtime_checkable

import redis.asyncio as redis

from .config import Settings
from .logging import get_logger

logger = get_logger(__name__)

_T = TypeVar("_T")

DEFAULT_VISIBILITY_TIMEOUT = 300
DEFAULT_MAX_ATTEMPTS = 3


# =============================================================================
# Errors
# =============================================================================


class QueueError(Exception):
    """Root of all task queue failures; ``details`` carries log context."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class QueueConnectionError(QueueError):
    """The queue could not be reached at all."""


class QueueOperationError(QueueError):
    """The queue was reachable but refused this particular job."""


class JobSerializationError(QueueError):
    """A job could not be written to, or read back from, its JSON form."""


# =============================================================================
# Job
# =============================================================================


def _preview(data: str | None) -> str | None:
    return data[:100] if data else None


@dataclass
class Job:
    """One queued unit of work.

    ``attempts`` counts deliveries and is bumped by ``dequeue``; ``reject``
    stops requeueing once it reaches ``max_attempts``.
    """

    queue_name: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT

    def to_json(self) -> str:
        envelope = {
            "id": self.id,
            "queue_name": self.queue_name,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "visibility_timeout": self.visibility_timeout,
        }
        try:
            return json.dumps(envelope)
        except (TypeError, ValueError) as e:
            raise JobSerializationError(
                f"Job {self.id} payload is not JSON-serializable: {e}",
                details={"job_id": self.id, "queue_name": self.queue_name},
            ) from e

    @classmethod
    def from_json(cls, data: str) -> "Job":
        try:
            raw = json.loads(data)
        except json.JSONDecodeError as e:
            raise JobSerializationError(
                f"Failed to parse job JSON: {e}", details={"data_preview": _preview(data)}
            ) from e
        try:
            return cls(
                id=raw["id"],
                queue_name=raw["queue_name"],
                payload=raw["payload"],
                created_at=datetime.fromisoformat(raw["created_at"]),
                attempts=raw.get("attempts", 0),
                max_attempts=raw.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
                visibility_timeout=raw.get("visibility_timeout", DEFAULT_VISIBILITY_TIMEOUT),
            )
        except KeyError as e:
            raise JobSerializationError(
                f"Missing required field in job JSON: {e}", details={"data_preview": _preview(data)}
            ) from e
        except (TypeError, ValueError) as e:
            raise JobSerializationError(
                f"Malformed job JSON: {e}", details={"data_preview": _preview(data)}
            ) from e


def _serialize_for_enqueue(job: Job) -> str:
    try:
        return job.to_json()
    except JobSerializationError as e:
        raise QueueOperationError(f"Job {job.id} refused by queue '{job.queue_name}': {e.message}", e.details) from e


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class QueueBackend(Protocol):
    """Interface shared by all queue backends; safe for concurrent coroutines."""

    async def enqueue(self, job: Job) -> bool:
        """Append ``job`` to its queue.

        Raises:
            QueueConnectionError: If the backend is unreachable.
            QueueOperationError: If the job cannot be serialized.
        """
        ...

    async def dequeue(self, queue_name: str, timeout_seconds: int | None = None) -> Job | None:
        """Take the oldest waiting job and mark it in flight.

        ``None`` polls once, ``0`` waits indefinitely, a positive value waits
        at most that many seconds.
        """
        ...

    async def acknowledge(self, job: Job) -> bool:
        ...

    async def reject(self, job: Job, requeue: bool = True) -> bool:
        ...

    async def queue_length(self, queue_name: str) -> int:
        """Jobs waiting for delivery; in-flight jobs are not counted."""
        ...


# =============================================================================
# In-memory backend
# =============================================================================


class InMemoryQueueBackend:
    """Process-local queue. Jobs are stored as JSON so both backends behave alike."""

    def __init__(self) -> None:
        self._waiting: dict[str, deque[str]] = defaultdict(deque)
        # job id -> (job JSON, visible-again timestamp)
        self._in_flight: dict[str, dict[str, tuple[str, float]]] = defaultdict(dict)
        self._signals: dict[str, asyncio.Event] = {}
        self._lock = threading.RLock()

    def _signal(self, queue_name: str) -> asyncio.Event:
        return self._signals.setdefault(queue_name, asyncio.Event())

    def _requeue_timed_out(self, queue_name: str) -> None:
        # Caller holds self._lock
        now = time.time()
        in_flight = self._in_flight[queue_name]
        for job_id in [jid for jid, (_, visible_at) in in_flight.items() if visible_at < now]:
            job_json, _ = in_flight.pop(job_id)
            self._waiting[queue_name].appendleft(job_json)
            logger.debug("Visibility timeout expired, job requeued", extra={"job_id": job_id, "queue_name": queue_name})

    def _take(self, queue_name: str) -> Job | None:
        with self._lock:
            self._requeue_timed_out(queue_name)
            if not self._waiting[queue_name]:
                return None
            job = Job.from_json(self._waiting[queue_name].popleft())
            job.attempts += 1
            self._in_flight[queue_name][job.id] = (job.to_json(), time.time() + job.visibility_timeout)
            return job

    async def enqueue(self, job: Job) -> bool:
        job_json = _serialize_for_enqueue(job)
        with self._lock:
            self._waiting[job.queue_name].append(job_json)
            signal = self._signal(job.queue_name)
        signal.set()
        logger.debug("Job enqueued", extra={"job_id": job.id, "queue_name": job.queue_name})
        return True

    async def dequeue(self, queue_name: str, timeout_seconds: int | None = None) -> Job | None:
        deadline = time.time() + timeout_seconds if timeout_seconds else None
        while True:
            job = self._take(queue_name)
            if job is not None or timeout_seconds is None:
                return job

            wait_for = None
            if deadline is not None:
                wait_for = deadline - time.time()
                if wait_for <= 0:
                    return None

            signal = self._signal(queue_name)
            signal.clear()
            try:
                await asyncio.wait_for(signal.wait(), timeout=wait_for)
            except asyncio.TimeoutError:
                return None

    async def acknowledge(self, job: Job) -> bool:
        with self._lock:
            return self._in_flight[job.queue_name].pop(job.id, None) is not None

    async def reject(self, job: Job, requeue: bool = True) -> bool:
        requeued = False
        with self._lock:
            self._in_flight[job.queue_name].pop(job.id, None)
            if requeue and job.attempts < job.max_attempts:
                self._waiting[job.queue_name].append(job.to_json())
                requeued = True
        if requeued:
            self._signal(job.queue_name).set()
        elif requeue:
            logger.warning(
                "Job dropped after exhausting its attempts",
                extra={"job_id": job.id, "queue_name": job.queue_name, "attempts": job.attempts},
            )
        return True

    async def queue_length(self, queue_name: str) -> int:
        with self._lock:
            self._requeue_timed_out(queue_name)
            return len(self._waiting[queue_name])


# =============================================================================
# Redis backend
# =============================================================================


class RedisQueueBackend:
    """Redis queue shared across processes.

    Keys, for a queue ``q`` under prefix ``p``:
        p:q             list of waiting job JSON (LPUSH in, RPOP/BRPOP out)
        p:q:inflight    sorted set of in-flight job ids scored by visible-again time
        p:q:job:<id>    JSON of an in-flight job, used to requeue it
    """

    def __init__(self, redis_client: Any, key_prefix: str = "filesync"):
        self._client = redis_client
        self._prefix = key_prefix

    def _key(self, queue_name: str, *parts: str) -> str:
        return ":".join((self._prefix, queue_name, *parts))

    async def _redis(self, action: str, awaitable: Awaitable[_T], **context: Any) -> _T:
        try:
            return await awaitable
        except redis.RedisError as e:
            logger.error(f"Redis {action} failed: {e}", extra=context)
            raise QueueConnectionError(f"Redis {action} failed: {e}", details=context) from e

    async def _requeue_timed_out(self, queue_name: str) -> None:
        inflight_key = self._key(queue_name, "inflight")
        expired = await self._client.zrangebyscore(inflight_key, "-inf", time.time())
        for job_id in expired or []:
            # Only the consumer whose ZREM removed the entry owns the requeue
            if await self._client.zrem(inflight_key, job_id) != 1:
                continue
            job_key = self._key(queue_name, "job", job_id)
            job_json = await self._client.get(job_key)
            if job_json:
                # Consumers pop from the right, so RPUSH redelivers it next
                await self._client.rpush(self._key(queue_name), job_json)
            await self._client.delete(job_key)
            logger.debug("Visibility timeout expired, job requeued", extra={"job_id": job_id, "queue_name": queue_name})

    async def enqueue(self, job: Job) -> bool:
        job_json = _serialize_for_enqueue(job)
        await self._redis(
            "enqueue",
            self._client.lpush(self._key(job.queue_name), job_json),
            job_id=job.id,
            queue_name=job.queue_name,
        )
        logger.debug("Job enqueued", extra={"job_id": job.id, "queue_name": job.queue_name})
        return True

    async def _pop(self, queue_name: str, timeout_seconds: int | None) -> str | None:
        await self._requeue_timed_out(queue_name)
        if timeout_seconds is None:
            return await self._client.rpop(self._key(queue_name))
        popped = await self._client.brpop(self._key(queue_name), timeout=timeout_seconds)
        return popped[1] if popped else None

    async def dequeue(self, queue_name: str, timeout_seconds: int | None = None) -> Job | None:
        raw = await self._redis("dequeue", self._pop(queue_name, timeout_seconds), queue_name=queue_name)
        if not raw:
            return None
        try:
            job = Job.from_json(raw)
        except JobSerializationError as e:
            logger.error(f"Discarding unreadable job: {e.message}", extra={"queue_name": queue_name})
            return None

        job.attempts += 1
        visible_at = time.time() + job.visibility_timeout
        await self._redis(
            "dequeue",
            self._mark_in_flight(job, visible_at),
            job_id=job.id,
            queue_name=queue_name,
        )
        return job

    async def _mark_in_flight(self, job: Job, visible_at: float) -> None:
        await self._client.zadd(self._key(job.queue_name, "inflight"), {job.id: visible_at})
        await self._client.set(
            self._key(job.queue_name, "job", job.id), job.to_json(), ex=job.visibility_timeout + 60
        )

    async def _forget(self, job: Job) -> int:
        removed = await self._client.zrem(self._key(job.queue_name, "inflight"), job.id)
        await self._client.delete(self._key(job.queue_name, "job", job.id))
        return removed

    async def acknowledge(self, job: Job) -> bool:
        removed = await self._redis("acknowledge", self._forget(job), job_id=job.id, queue_name=job.queue_name)
        return removed > 0

    async def reject(self, job: Job, requeue: bool = True) -> bool:
        await self._redis("reject", self._forget(job), job_id=job.id, queue_name=job.queue_name)
        if requeue and job.attempts < job.max_attempts:
            await self._redis(
                "reject",
                self._client.lpush(self._key(job.queue_name), job.to_json()),
                job_id=job.id,
                queue_name=job.queue_name,
            )
        elif requeue:
            logger.warning(
                "Job dropped after exhausting its attempts",
                extra={"job_id": job.id, "queue_name": job.queue_name, "attempts": job.attempts},
            )
        return True

    async def _length(self, queue_name: str) -> int:
        await self._requeue_timed_out(queue_name)
        return await self._client.llen(self._key(queue_name))

    async def queue_length(self, queue_name: str) -> int:
        return await self._redis("queue_length", self._length(queue_name), queue_name=queue_name)

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Factory
# =============================================================================


async def create_queue_backend(settings: Settings) -> QueueBackend:
    """Return Redis when FILESYNC_REDIS_URL is set (verified with PING), else in-memory.

    Raises:
        QueueConnectionError: If Redis is configured but unreachable.
    """
    if not settings.redis_enabled:
        logger.info("FILESYNC_REDIS_URL not set, tasks stay in this process (InMemoryQueueBackend)")
        return InMemoryQueueBackend()

    client = redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=settings.redis_connection_timeout,
    )
    try:
        await client.ping()
    except (redis.RedisError, OSError) as e:
        await client.aclose()
        raise QueueConnectionError(f"Redis at FILESYNC_REDIS_URL is unreachable: {e}") from e

    logger.info("Task queue backed by Redis", extra={"queue_prefix": "filesync"})
    return RedisQueueBackend(client)
