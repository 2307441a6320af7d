"""File-type filtering for the ingestion pipeline.

Decides which files are worth fingerprinting:

* Accepted extensions (``FILESYNC_ACCEPTED_EXTENSIONS``, ``.pdf`` by default)
* Exclusion globs for transient/incomplete files (partial downloads,
  editor lock files) that must never be emitted or ingested
* MIME-to-extension mapping for remote files whose name has no suffix
"""

from __future__ import annotations

import fnmatch
import mimetypes
from collections.abc import Iterable
from pathlib import PurePath, PurePosixPath

from ..core.exceptions import UnsupportedFileError

# ---------------------------------------------------------------------------
# Default exclusion globs, matched against the basename only
# ---------------------------------------------------------------------------

DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = ("*.tmp", "*.crdownload", "*.part", "*.partial", "~$*")

# ---------------------------------------------------------------------------
# MIME → dotted extension for the document types we expect from remote feeds
# ---------------------------------------------------------------------------

MIME_TO_EXT: dict[str, str] = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/rtf": ".rtf",
    "text/plain": ".txt",
    "text/markdown": ".md",
    "text/html": ".html",
    "text/csv": ".csv",
}

# Drive-native documents have no downloadable bytes without an export step
GOOGLE_APPS_MIME_PREFIX = "application/vnd.google-apps."


def normalize_extension(ext: str) -> str:
    """Return ``ext`` lowercased with exactly one leading dot."""
    ext = (ext or "").strip().lower()
    if not ext:
        return ""
    return ext if ext.startswith(".") else f".{ext}"


def extension_for(name: str, mime_type: str | None = None) -> str:
    """Dotted extension of ``name``, falling back to ``mime_type`` when unsuffixed."""
    ext = PurePosixPath(name.replace("\\", "/")).suffix.lower() if name else ""
    if ext:
        return ext
    if mime_type:
        lower = mime_type.strip().lower()
        if lower in MIME_TO_EXT:
            return MIME_TO_EXT[lower]
        guessed = mimetypes.guess_extension(lower, strict=False)
        if guessed:
            return guessed.lower()
    return ""


class FileTypeFilter:
    """Accepted-extension and exclusion-pattern checks."""

    def __init__(
        self,
        accepted_extensions: Iterable[str] = (".pdf",),
        exclude_patterns: Iterable[str] = DEFAULT_EXCLUDE_PATTERNS,
    ) -> None:
        self.accepted_extensions = frozenset(
            normalize_extension(ext) for ext in accepted_extensions if normalize_extension(ext)
        )
        self.exclude_patterns = tuple(exclude_patterns)

    @classmethod
    def from_settings(cls, settings) -> FileTypeFilter:  # type: ignore[no-untyped-def]
        return cls(settings.accepted_extensions, settings.exclude_patterns)

    def is_excluded(self, path: str | PurePath) -> bool:
        """True when the basename matches an exclusion glob (case-insensitive)."""
        name = PurePosixPath(str(path).replace("\\", "/")).name.lower()
        return any(fnmatch.fnmatchcase(name, pattern.lower()) for pattern in self.exclude_patterns)

    def is_accepted(self, name: str, mime_type: str | None = None) -> bool:
        if not name or self.is_excluded(name):
            return False
        return extension_for(name, mime_type) in self.accepted_extensions

    def check(self, name: str, mime_type: str | None = None) -> None:
        """Raise UnsupportedFileError unless ``is_accepted`` holds."""
        if not self.is_accepted(name, mime_type):
            raise UnsupportedFileError(name, details={"file_name": name, "mime_type": mime_type})
