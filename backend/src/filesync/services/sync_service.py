"""Sync service.

Drives the ingestion pipeline from its change sources:

- a remote feed, polled on a fixed interval through ``RetryingSyncRunner``
- a local watch, started once and fed straight into the pipeline

The remote cursor only advances after the batch it came with has been
processed, so a cycle that dies half-way is re-listed by the next one.
Changes that fail on their own (an unreadable download, a refused task) are
not re-listed once the cursor moves on; they are carried into the following
cycles instead, up to ``failed_retry_cycles`` times.
"""

from __future__ import annotations

import asyncio

from ..core.exceptions import StorageUnavailableError, SyncFailedError
from ..core.logging import get_logger
from ..core.queue_backend import QueueConnectionError
from ..core.retry import RetryConfig, RetryingSyncRunner
from ..ingestion.pipeline import BatchResult, IngestionPipeline
from ..sources.base import ChangeEvent, PollingChangeSource, WatchingChangeSource

logger = get_logger(__name__)


class SyncService:
    """Owns the sync schedule and the local watch lifecycle."""

    def __init__(
        self,
        pipeline: IngestionPipeline,
        remote_source: PollingChangeSource | None = None,
        local_source: WatchingChangeSource | None = None,
        retry_config: RetryConfig | None = None,
        poll_interval: float = 300.0,
        cursor: str | None = None,
        failed_retry_cycles: int = 5,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if failed_retry_cycles < 0:
            raise ValueError("failed_retry_cycles must be >= 0")
        self.pipeline = pipeline
        self.remote_source = remote_source
        self.local_source = local_source
        self.retry_config = retry_config or RetryConfig()
        self.poll_interval = poll_interval
        self.cursor = cursor
        self.failed_retry_cycles = failed_retry_cycles
        self.cycles_completed = 0
        # path_or_id -> (failed event, times it has already been retried)
        self._carried: dict[str, tuple[ChangeEvent, int]] = {}

    @property
    def pending_retries(self) -> list[str]:
        """Identifiers of failed changes waiting for the next cycle."""
        return list(self._carried)

    async def start(self) -> None:
        """Run the initial remote sync, then start watching local folders.

        Raises:
            SyncFailedError: If the initial sync fails on every attempt; the
                local watch is not started in that case.
        """
        if self.remote_source is not None:
            await self.sync_once()
        if self.local_source is not None:
            await self.local_source.start(self.pipeline.handle_watch_event)

    async def sync_once(self) -> BatchResult:
        """One remote cycle: poll with retries, then ingest the batch.

        Raises:
            SyncFailedError: Once the retry budget for the poll is spent.
            StorageUnavailableError: If the metadata store is unreachable.
            QueueConnectionError: If the task queue is unreachable.
        """
        if self.remote_source is None:
            logger.debug("No remote source configured, nothing to sync")
            return BatchResult()

        source = self.remote_source
        cursor = self.cursor
        # Fresh runner per cycle: no backoff state carries over
        runner = RetryingSyncRunner(self.retry_config)
        try:
            result = await runner.run(lambda: source.poll(cursor))
        except SyncFailedError:
            logger.error("Remote sync cycle failed", extra={"source": source.name, "had_cursor": cursor is not None})
            raise

        # A fresh change for the same file supersedes the carried one
        listed = {event.path_or_id for event in result.changes}
        retried = [event for key, (event, _) in self._carried.items() if key not in listed]
        batch = await self.pipeline.process_batch([*retried, *result.changes])
        self._carry_failures(batch)
        if result.next_cursor:
            self.cursor = result.next_cursor
        self.cycles_completed += 1
        logger.info(
            "Sync cycle completed",
            extra={
                "source": source.name,
                "change_count": len(result),
                "retried": len(retried),
                "pending_retries": len(self._carried),
                **batch.counts,
            },
        )
        return batch

    def _carry_failures(self, batch: BatchResult) -> None:
        carried: dict[str, tuple[ChangeEvent, int]] = {}
        for outcome in batch.failed:
            event = outcome.event
            previous = self._carried.get(event.path_or_id)
            retries = previous[1] + 1 if previous is not None and previous[0] is event else 0
            if retries >= self.failed_retry_cycles:
                logger.warning(
                    f"Giving up on failed change: {outcome.error}",
                    extra={"path_or_id": event.path_or_id, "retries": retries},
                )
                continue
            carried[event.path_or_id] = (event, retries)
        self._carried = carried

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Repeat ``sync_once`` every ``poll_interval`` seconds until ``stop_event`` is set.

        A failed cycle is logged and the next one starts on schedule. If a
        cycle already ran (e.g. from ``start``), the first one here waits a
        full interval.
        """
        if self.remote_source is None:
            await stop_event.wait()
            return

        wait_first = self.cycles_completed > 0
        while True:
            if wait_first and await self._wait_for_stop(stop_event):
                return
            wait_first = True
            if stop_event.is_set():
                return
            try:
                await self.sync_once()
            except SyncFailedError as e:
                logger.error(f"Sync cycle failed: {e.message}", extra={"source": e.source})
            except (StorageUnavailableError, QueueConnectionError) as e:
                logger.error(f"Sync cycle aborted, will retry next interval: {e}")

    async def _wait_for_stop(self, stop_event: asyncio.Event) -> bool:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        if self.local_source is not None:
            await self.local_source.stop()
        logger.info("Sync service stopped", extra={"cycles_completed": self.cycles_completed})

    async def __aenter__(self) -> SyncService:
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.stop()
