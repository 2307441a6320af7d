"""
Processing task handoff.

The pipeline hands each newly seen piece of content to downstream
processing as a ``PROCESS_FILE`` task. ``TaskQueue`` is the narrow seam the
pipeline depends on; ``QueueTaskDispatcher`` adapts a ``QueueBackend`` to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from ..core.logging import get_logger
from ..core.queue_backend import Job, QueueBackend

logger = get_logger(__name__)

PROCESS_FILE = "PROCESS_FILE"


@dataclass(frozen=True)
class ProcessingTask:
    """Request for downstream processing of one piece of content."""

    file_source_id: str
    file_name: str
    content_hash: str
    tags: frozenset[str] = frozenset()
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task_name: str = PROCESS_FILE

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "file_source_id": self.file_source_id,
            "file_name": self.file_name,
            "content_hash": self.content_hash,
            "tags": sorted(self.tags),
            "enqueued_at": self.enqueued_at.isoformat(),
        }


@runtime_checkable
class TaskQueue(Protocol):
    """Accepts processing tasks; returns an id for the enqueued task.

    Raises ``QueueConnectionError`` when the queue is unreachable and
    ``QueueOperationError`` when this particular task was refused.
    """

    async def enqueue(self, task: ProcessingTask) -> str: ...


class QueueTaskDispatcher:
    """TaskQueue that wraps each task in a ``Job`` on a ``QueueBackend``."""

    def __init__(self, backend: QueueBackend, queue_name: str) -> None:
        self.backend = backend
        self.queue_name = queue_name

    async def enqueue(self, task: ProcessingTask) -> str:
        job = Job(queue_name=self.queue_name, payload=task.to_payload())
        await self.backend.enqueue(job)
        logger.info(
            "Enqueued processing task",
            extra={
                "job_id": job.id,
                "task_name": task.task_name,
                "file_source_id": task.file_source_id,
                "content_hash": task.content_hash,
            },
        )
        return job.id
