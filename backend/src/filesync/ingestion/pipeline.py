"""
Ingestion pipeline.

Turns change events into metadata records and processing tasks:

    event -> accepted type? -> read bytes -> fingerprint -> dedupe -> upsert -> enqueue

Records are keyed by content hash, so the same bytes arriving under another
name or from another source update one record instead of creating a second.
A processing task is enqueued only when the upsert created the record.
Removals are logged and the record is kept.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..core.exceptions import (
    FileReadError,
    FileSyncException,
    StorageError,
    StorageUnavailableError,
    UnsupportedFileError,
)
from ..core.logging import get_logger
from ..core.queue_backend import QueueConnectionError, QueueError, QueueOperationError
from ..models.file_record import FileRecordData
from ..sources.base import ChangeEvent, ChangeKind
from ..storage.metadata_store import MetadataStore
from .filetypes import FileTypeFilter
from .fingerprint import ContentFingerprinter, synthetic_source_id
from .tasks import ProcessingTask, TaskQueue

logger = get_logger(__name__)

# Faults confined to a single event; anything else aborts the batch
_EVENT_LOCAL_ERRORS = (FileReadError, QueueOperationError)


class OutcomeStatus(str, Enum):
    ENQUEUED = "enqueued"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    UNSUPPORTED = "unsupported"
    REMOVED = "removed"
    FAILED = "failed"


@dataclass(frozen=True)
class IngestionOutcome:
    """What happened to one change event."""

    event: ChangeEvent
    status: OutcomeStatus
    content_hash: str | None = None
    task_id: str | None = None
    error: str | None = None


@dataclass
class BatchResult:
    outcomes: list[IngestionOutcome] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        counter = Counter(o.status.value for o in self.outcomes)
        return {status.value: counter.get(status.value, 0) for status in OutcomeStatus}

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def failed(self) -> list[IngestionOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.FAILED]

    def __len__(self) -> int:
        return len(self.outcomes)


class IngestionPipeline:
    """Fingerprints, deduplicates and dispatches change events.

    Collaborators are injected; the pipeline holds no global state and is
    safe to share between the remote sync loop and the local watcher.
    """

    def __init__(
        self,
        store: MetadataStore,
        task_queue: TaskQueue,
        file_filter: FileTypeFilter | None = None,
        fingerprinter: ContentFingerprinter | None = None,
        max_concurrency: int = 4,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.store = store
        self.task_queue = task_queue
        self.file_filter = file_filter or FileTypeFilter()
        self.fingerprinter = fingerprinter or ContentFingerprinter()
        self.max_concurrency = max_concurrency

    @classmethod
    def from_settings(cls, settings, store: MetadataStore, task_queue: TaskQueue) -> IngestionPipeline:  # type: ignore[no-untyped-def]
        return cls(
            store=store,
            task_queue=task_queue,
            file_filter=FileTypeFilter.from_settings(settings),
            fingerprinter=ContentFingerprinter(settings.hash_algorithm),
            max_concurrency=settings.ingest_concurrency,
        )

    async def handle_event(self, event: ChangeEvent) -> IngestionOutcome:
        """Ingest a single change event.

        Raises:
            FileReadError: If the event's bytes cannot be read.
            StorageUnavailableError: If the metadata store is unreachable.
            QueueConnectionError: If the task queue is unreachable.
            QueueOperationError: If the queue refuses this task.
        """
        name = event.display_name

        if event.kind is ChangeKind.REMOVED:
            # Records outlive their files; nothing is deleted here.
            logger.info(
                "File removed at source, record retained",
                extra={"path_or_id": event.path_or_id, "source_id": event.source_id},
            )
            return IngestionOutcome(event=event, status=OutcomeStatus.REMOVED)

        try:
            self.file_filter.check(name, event.mime_type)
        except UnsupportedFileError as e:
            logger.debug("Skipping unsupported file", extra=e.details)
            return IngestionOutcome(event=event, status=OutcomeStatus.UNSUPPORTED)

        data = await self._read(event)
        content_hash = self.fingerprinter.fingerprint(data)

        if event.kind is ChangeKind.MODIFIED and await self.store.exists(content_hash):
            logger.debug(
                "Content unchanged, skipping",
                extra={"file_name": name, "content_hash": content_hash},
            )
            return IngestionOutcome(event=event, status=OutcomeStatus.DUPLICATE, content_hash=content_hash)

        now = datetime.now(timezone.utc)
        source_id = event.source_id or synthetic_source_id(content_hash)
        result = await self.store.upsert(
            FileRecordData(
                content_hash=content_hash,
                file_name=name,
                file_size_bytes=len(data),
                created_at=now,
                modified_at=now,
                source_id=source_id,
                tags=event.tags,
            )
        )

        if not result.created:
            logger.info(
                "Known content seen again, metadata refreshed",
                extra={"file_name": name, "content_hash": content_hash, "sightings": result.record.sightings},
            )
            return IngestionOutcome(event=event, status=OutcomeStatus.UPDATED, content_hash=content_hash)

        task = ProcessingTask(
            file_source_id=result.record.source_id,
            file_name=result.record.file_name,
            content_hash=content_hash,
            tags=result.record.tags,
        )
        try:
            task_id = await self.task_queue.enqueue(task)
        except QueueError:
            logger.error(
                "Processing task not enqueued, releasing new record",
                extra={"file_name": name, "content_hash": content_hash, "source_id": source_id},
            )
            await self._release(content_hash)
            raise

        logger.info(
            "New file ingested",
            extra={"file_name": name, "content_hash": content_hash, "source_id": source_id, "task_id": task_id},
        )
        return IngestionOutcome(
            event=event,
            status=OutcomeStatus.ENQUEUED,
            content_hash=content_hash,
            task_id=task_id,
        )

    async def _read(self, event: ChangeEvent) -> bytes:
        try:
            data = await event.bytes_provider()
        except OSError as e:
            raise FileReadError(event.path_or_id, str(e)) from e
        if data is None:
            raise FileReadError(event.path_or_id, "no content available")
        return data

    async def _release(self, content_hash: str) -> None:
        """Drop a just-created record so the next sighting creates and enqueues it again."""
        try:
            await self.store.discard(content_hash)
        except StorageError as e:
            # The queue error is what the caller sees; this one is only logged
            logger.error(
                f"Could not release record after enqueue failure: {e.message}",
                extra={"content_hash": content_hash},
            )

    async def process_batch(self, events: Iterable[ChangeEvent]) -> BatchResult:
        """Ingest events concurrently, isolating per-file faults.

        A file that cannot be read (or a task the queue refuses) becomes a
        ``failed`` outcome. Storage or queue outages are raised once every
        event in the batch has settled.

        Raises:
            StorageUnavailableError: If the metadata store is unreachable.
            QueueConnectionError: If the task queue is unreachable.
        """
        events = list(events)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(event: ChangeEvent) -> IngestionOutcome:
            async with semaphore:
                return await self.handle_event(event)

        results = await asyncio.gather(*(run(e) for e in events), return_exceptions=True)

        batch = BatchResult()
        fatal: BaseException | None = None
        for event, result in zip(events, results):
            if isinstance(result, IngestionOutcome):
                batch.outcomes.append(result)
            elif isinstance(result, _EVENT_LOCAL_ERRORS) or (
                isinstance(result, StorageError) and not isinstance(result, StorageUnavailableError)
            ):
                logger.warning(
                    f"Failed to ingest '{event.display_name}': {result}",
                    extra={"path_or_id": event.path_or_id},
                )
                batch.outcomes.append(IngestionOutcome(event=event, status=OutcomeStatus.FAILED, error=str(result)))
            elif fatal is None:
                fatal = result

        if fatal is not None:
            logger.error(f"Batch aborted: {fatal}", extra={"event_count": len(events)})
            raise fatal

        logger.info("Batch processed", extra=batch.counts)
        return batch

    async def handle_watch_event(self, event: ChangeEvent) -> IngestionOutcome | None:
        """Callback for long-lived watchers; never raises."""
        try:
            return await self.handle_event(event)
        except (StorageUnavailableError, QueueConnectionError) as e:
            logger.error(f"Failed to ingest '{event.display_name}': {e}", extra={"path_or_id": event.path_or_id})
        except (FileSyncException, QueueError) as e:
            logger.warning(f"Failed to ingest '{event.display_name}': {e}", extra={"path_or_id": event.path_or_id})
        except Exception:
            logger.exception("Unexpected error ingesting watched file", extra={"path_or_id": event.path_or_id})
        return None
