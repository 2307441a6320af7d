"""
Shared pytest fixtures and path setup for unit tests.
"""

import os
import sys
from pathlib import Path

# Keep a developer's .env or shell from leaking into tests. Settings are
# always built explicitly in the tests that need them.
for _var in (
    "FILESYNC_DATABASE_URL",
    "FILESYNC_REDIS_URL",
    "FILESYNC_LOCAL_WATCH_PATH",
    "FILESYNC_LOG_DIR",
    "GOOGLE_DRIVE_ACCESS_TOKEN",
):
    os.environ.pop(_var, None)

# Add backend/src to sys.path so filesync.* imports work when running pytest from repo root.
PROJECT_SRC = Path(__file__).resolve().parents[2]
if str(PROJECT_SRC) not in sys.path:
    sys.path.insert(0, str(PROJECT_SRC))

import pytest

from filesync.ingestion.tasks import ProcessingTask
from filesync.sources.base import ChangeEvent, ChangeKind
from filesync.storage.metadata_store import InMemoryMetadataStore


class RecordingTaskQueue:
    """TaskQueue double that keeps every task it is given."""

    def __init__(self):
        self.tasks: list[ProcessingTask] = []

    async def enqueue(self, task: ProcessingTask) -> str:
        self.tasks.append(task)
        return f"task-{len(self.tasks)}"


def _make_event(
    path_or_id: str,
    data: bytes | None = b"%PDF-1.7 test",
    kind: ChangeKind = ChangeKind.ADDED,
    **kwargs,
) -> ChangeEvent:
    """Build a ChangeEvent whose bytes provider returns ``data``."""

    async def provide() -> bytes | None:
        return data

    return ChangeEvent(path_or_id=path_or_id, kind=kind, bytes_provider=provide, **kwargs)


@pytest.fixture
def make_event():
    """Factory for ChangeEvents with in-memory bytes."""
    return _make_event


@pytest.fixture
def recording_queue_class():
    return RecordingTaskQueue


@pytest.fixture
def store():
    return InMemoryMetadataStore()


@pytest.fixture
def task_queue():
    return RecordingTaskQueue()
