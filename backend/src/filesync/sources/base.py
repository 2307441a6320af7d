"""
Change source contracts.

A change source tells the pipeline which files appeared, changed or
disappeared. Two shapes exist:

- ``PollingChangeSource``: asked on demand, returns a batch plus a cursor
  to resume from (remote feeds such as the Drive changes API).
- ``WatchingChangeSource``: long-lived producer that pushes events to a
  callback as they happen (local directory watch).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Protocol, runtime_checkable


class ChangeKind(str, Enum):
    """Kind of change reported by a source."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


BytesProvider = Callable[[], Awaitable[bytes | None]]


async def _no_bytes() -> bytes | None:
    return None


@dataclass(frozen=True)
class ChangeEvent:
    """One add/modify/remove notification. Consumed once, never persisted.

    Attributes:
        path_or_id: Local path or remote identifier the change refers to.
        kind: What happened.
        bytes_provider: Coroutine factory returning the file's full content.
        name: Display name; defaults to the basename of ``path_or_id``.
        source_id: Origin identifier, if the source has one (e.g. Drive file id).
        mime_type: Reported content type, used when the name has no suffix.
        size_hint: Size reported by the source; informational only.
        tags: Labels the source attaches to the content.
    """

    path_or_id: str
    kind: ChangeKind
    bytes_provider: BytesProvider = field(default=_no_bytes, compare=False, repr=False)
    name: str | None = None
    source_id: str | None = None
    mime_type: str | None = None
    size_hint: int | None = None
    tags: frozenset[str] = frozenset()

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return PurePosixPath(self.path_or_id.replace("\\", "/")).name or self.path_or_id


@dataclass
class PollResult:
    """Changes since the previous cursor, and the cursor to pass next time."""

    changes: list[ChangeEvent]
    next_cursor: str | None

    def __len__(self) -> int:
        return len(self.changes)


EventCallback = Callable[[ChangeEvent], Awaitable[object]]
ErrorHook = Callable[[Exception], None]


@runtime_checkable
class PollingChangeSource(Protocol):
    """Remote feed polled for changes.

    ``poll`` returns an empty ``PollResult`` when nothing changed and raises
    ``SyncFailedError`` when the call itself failed, so callers can tell
    the two apart.
    """

    name: str

    async def poll(self, cursor: str | None) -> PollResult: ...


@runtime_checkable
class WatchingChangeSource(Protocol):
    """Long-lived producer delivering events to a callback until stopped."""

    @property
    def is_running(self) -> bool: ...

    async def start(self, callback: EventCallback) -> None: ...

    async def stop(self) -> None: ...
