"""
Local folder watch source.

Watches one or more directories with watchdog and turns filesystem events
into ``ChangeEvent``s:

- every file present at start-up is reported as ``added``
- created / modified / deleted files become ``added`` / ``modified`` / ``removed``
- a move is ``removed`` + ``added``, or just ``added`` when a temp file is
  renamed into place (atomic write)

Transient files matching the exclusion globs are never emitted. Raw
``modified`` events are passed on even when the bytes did not change; the
pipeline's hash check absorbs them.

A file still being written produces a burst of created/modified events.
Those are coalesced per path: the file is emitted once, after
``settle_seconds`` with no further events and no change in size or mtime.
A burst that began with ``created`` is emitted as ``added``. Removals are
emitted at once and drop any pending write for the same path.

Watchdog calls back on its own thread, so events are handed to the event
loop with ``call_soon_threadsafe`` and delivered by a single consumer task
in the order they become ready.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..core.exceptions import FileReadError, WatchError
from ..core.logging import get_logger
from ..ingestion.filetypes import DEFAULT_EXCLUDE_PATTERNS, FileTypeFilter
from .base import ChangeEvent, ChangeKind, ErrorHook, EventCallback

logger = get_logger(__name__)

# How long stop() waits for the observer thread to exit
_OBSERVER_JOIN_TIMEOUT = 5.0

_KIND_BY_EVENT_TYPE = {
    "created": ChangeKind.ADDED,
    "modified": ChangeKind.MODIFIED,
    "deleted": ChangeKind.REMOVED,
}


def _signature(path: str) -> tuple[int, int] | None:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_size, st.st_mtime_ns


@dataclass
class _PendingWrite:
    kind: ChangeKind
    last_event: float
    signature: tuple[int, int] | None


def _local_bytes_provider(path: Path) -> Callable[[], Any]:
    async def read() -> bytes:
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise FileReadError(str(path), str(e)) from e

    return read


class _WatchdogHandler(FileSystemEventHandler):
    """Runs on the watchdog thread; only translates and forwards."""

    def __init__(self, source: LocalWatchSource) -> None:
        self._source = source

    def on_any_event(self, event: FileSystemEvent) -> None:
        src_path = os.fsdecode(event.src_path)

        if event.is_directory:
            if event.event_type == "deleted" and self._source.is_watch_root(src_path):
                self._source.report_threadsafe(WatchError(src_path, "watched directory was removed"))
            return

        if event.event_type == "moved":
            dest_path = os.fsdecode(getattr(event, "dest_path", "") or "")
            self._handle_move(src_path, dest_path)
            return

        kind = _KIND_BY_EVENT_TYPE.get(event.event_type)
        if kind is None:
            # opened / closed notifications carry no content change
            return
        self._source.emit_threadsafe(src_path, kind)

    def _handle_move(self, src_path: str, dest_path: str) -> None:
        src_excluded = self._source.file_filter.is_excluded(src_path)
        if not src_excluded:
            self._source.emit_threadsafe(src_path, ChangeKind.REMOVED)
        if dest_path:
            self._source.emit_threadsafe(dest_path, ChangeKind.ADDED)


class LocalWatchSource:
    """Watches local directories and pushes ``ChangeEvent``s to a callback.

    Must be stopped explicitly (or used as an async context manager); stop
    releases the OS watch handles and no callback runs after it returns.
    """

    name = "local"

    def __init__(
        self,
        paths: str | os.PathLike[str] | Iterable[str | os.PathLike[str]],
        file_filter: FileTypeFilter | None = None,
        recursive: bool = True,
        on_error: ErrorHook | None = None,
        observer_factory: Callable[[], Any] = Observer,
        settle_seconds: float = 1.0,
    ) -> None:
        if isinstance(paths, (str, os.PathLike)):
            paths = [paths]
        self.paths = [Path(p).expanduser().resolve() for p in paths]
        if not self.paths:
            raise ValueError("LocalWatchSource needs at least one path")
        self.file_filter = file_filter or FileTypeFilter(exclude_patterns=DEFAULT_EXCLUDE_PATTERNS)
        if settle_seconds < 0:
            raise ValueError("settle_seconds must be >= 0")
        self.recursive = recursive
        self.settle_seconds = settle_seconds
        self._on_error = on_error
        self._observer_factory = observer_factory

        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._callback: EventCallback | None = None
        self._watched: set[str] = set()
        self._stopped = True
        self._pending: dict[str, _PendingWrite] = {}
        self._settle_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def is_running(self) -> bool:
        return not self._stopped

    @property
    def watched_paths(self) -> list[str]:
        return sorted(self._watched)

    def is_watch_root(self, path: str) -> bool:
        return str(Path(path)) in self._watched

    async def start(self, callback: EventCallback) -> None:
        """Begin watching. Returns once the initial scan has been queued."""
        if not self._stopped:
            logger.warning("Local watch already running", extra={"paths": ",".join(self._watched)})
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._callback = callback
        self._stopped = False
        self._watched.clear()

        observer = self._observer_factory()
        handler = _WatchdogHandler(self)
        for path in self.paths:
            if not path.is_dir():
                self._report(WatchError(str(path), "not a directory"))
                continue
            try:
                observer.schedule(handler, str(path), recursive=self.recursive)
            except OSError as e:
                self._report(WatchError(str(path), str(e)))
                continue
            self._watched.add(str(path))

        self._observer = observer
        try:
            observer.start()
        except Exception:
            await self.stop()
            raise

        self._consumer = asyncio.create_task(self._consume(), name="filesync-local-watch")

        for root in sorted(self._watched):
            existing = await asyncio.to_thread(self._scan, Path(root))
            for file_path in existing:
                self._enqueue(str(file_path), ChangeKind.ADDED)

        logger.info(
            "Started monitoring local folders",
            extra={"paths": ",".join(sorted(self._watched)), "recursive": self.recursive},
        )

    async def stop(self) -> None:
        """Stop watching. Idempotent; safe to call after a failed start."""
        if self._stopped and self._observer is None and self._consumer is None:
            return
        self._stopped = True

        observer, self._observer = self._observer, None
        consumer, self._consumer = self._consumer, None
        try:
            if observer is not None:
                observer.stop()
                if observer.is_alive():
                    await asyncio.to_thread(observer.join, _OBSERVER_JOIN_TIMEOUT)
                    if observer.is_alive():
                        logger.warning("Observer thread did not exit within timeout")
        finally:
            settling = list(self._settle_tasks.values())
            for task in settling:
                task.cancel()
            await asyncio.gather(*settling, return_exceptions=True)
            self._settle_tasks.clear()
            self._pending.clear()
            if consumer is not None:
                consumer.cancel()
                try:
                    await consumer
                except asyncio.CancelledError:
                    pass
            if self._queue is not None:
                while not self._queue.empty():
                    self._queue.get_nowait()
            self._watched.clear()
            logger.info("Stopped local folder monitoring")

    async def __aenter__(self) -> LocalWatchSource:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.stop()

    # ------------------------------------------------------------------
    # Thread handoff
    # ------------------------------------------------------------------

    def emit_threadsafe(self, path: str, kind: ChangeKind) -> None:
        loop = self._loop
        if self._stopped or loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._emit, path, kind)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def report_threadsafe(self, error: Exception) -> None:
        loop = self._loop
        if self._stopped or loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._report, error)
        except RuntimeError:
            pass

    # ------------------------------------------------------------------
    # Event loop side
    # ------------------------------------------------------------------

    def _emit(self, path: str, kind: ChangeKind) -> None:
        if self._stopped or self._queue is None:
            return
        if self.file_filter.is_excluded(path):
            logger.debug("Ignoring transient file", extra={"path": path})
            return
        if kind is ChangeKind.REMOVED:
            self._drop_pending(path)
            self._enqueue(path, kind)
        elif self.settle_seconds <= 0:
            self._enqueue(path, kind)
        else:
            self._hold_until_settled(path, kind)

    def _hold_until_settled(self, path: str, kind: ChangeKind) -> None:
        assert self._loop is not None
        now = self._loop.time()
        pending = self._pending.get(path)
        if pending is not None:
            pending.last_event = now
            pending.signature = _signature(path)
            if kind is ChangeKind.ADDED:
                pending.kind = kind
            return
        self._pending[path] = _PendingWrite(kind=kind, last_event=now, signature=_signature(path))
        self._settle_tasks[path] = self._loop.create_task(self._emit_when_settled(path))

    def _drop_pending(self, path: str) -> None:
        self._pending.pop(path, None)
        task = self._settle_tasks.pop(path, None)
        if task is not None:
            task.cancel()

    async def _emit_when_settled(self, path: str) -> None:
        assert self._loop is not None
        try:
            while True:
                pending = self._pending[path]
                remaining = pending.last_event + self.settle_seconds - self._loop.time()
                if remaining > 0:
                    await asyncio.sleep(remaining)
                    continue
                signature = _signature(path)
                if signature == pending.signature:
                    break
                # Written to without an event reaching us yet
                pending.signature = signature
                pending.last_event = self._loop.time()
            kind = self._pending.pop(path).kind
        finally:
            if self._settle_tasks.get(path) is asyncio.current_task():
                del self._settle_tasks[path]
        self._enqueue(path, kind)

    def _enqueue(self, path: str, kind: ChangeKind) -> None:
        if self._stopped or self._queue is None:
            return
        file_path = Path(path)
        self._queue.put_nowait(
            ChangeEvent(
                path_or_id=str(file_path),
                kind=kind,
                bytes_provider=_local_bytes_provider(file_path),
                name=file_path.name,
            )
        )

    def _report(self, error: Exception) -> None:
        logger.error(f"Local monitoring error: {error}")
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:
            logger.exception("Watch error hook raised")

    def _scan(self, root: Path) -> list[Path]:
        pattern = "**/*" if self.recursive else "*"
        found = []
        for path in sorted(root.glob(pattern)):
            try:
                if path.is_file() and not self.file_filter.is_excluded(path):
                    found.append(path)
            except OSError as e:
                self.report_threadsafe(WatchError(str(path), str(e)))
        return found

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            if self._stopped or self._callback is None:
                return
            try:
                await self._callback(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._report(e)
