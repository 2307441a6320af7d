"""Custom exceptions for filesync.

This module defines the error taxonomy used by the ingestion pipeline,
its storage layer and its change sources.
"""

from typing import Any


class FileSyncException(Exception):
    """Base exception class for filesync."""

    def __init__(
        self,
        message: str,
        error_code: str,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


# Configuration Exceptions
class ConfigurationError(FileSyncException):
    """Raised when a component is constructed with invalid configuration."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Invalid configuration: {reason}",
            error_code="CONFIGURATION_ERROR",
            details=details or {"reason": reason},
        )


# Storage Exceptions
class StorageError(FileSyncException):
    """Raised when a metadata store operation fails for a non-connectivity reason."""

    def __init__(self, operation: str, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Metadata store {operation} failed: {reason}",
            error_code="STORAGE_ERROR",
            details=details or {"operation": operation, "reason": reason},
        )


class StorageUnavailableError(StorageError):
    """Raised when the metadata store cannot be reached.

    Never retried inside the store; the caller of the pipeline decides
    whether to abort or reschedule.
    """

    def __init__(self, operation: str, reason: str, details: dict[str, Any] | None = None):
        FileSyncException.__init__(
            self,
            message=f"Metadata store unavailable during {operation}: {reason}",
            error_code="STORAGE_UNAVAILABLE",
            details=details or {"operation": operation, "reason": reason},
        )


# Sync Exceptions
class SyncFailedError(FileSyncException):
    """Raised when a remote change poll fails."""

    def __init__(
        self,
        source: str,
        reason: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.source = source
        self.status_code = status_code
        super().__init__(
            message=f"Sync from '{source}' failed: {reason}",
            error_code="SYNC_FAILED",
            details=details or {"source": source, "reason": reason, "status_code": status_code},
        )


# File Exceptions
class FileReadError(FileSyncException):
    """Raised when the bytes of a single file cannot be read."""

    def __init__(self, path_or_id: str, reason: str, details: dict[str, Any] | None = None):
        self.path_or_id = path_or_id
        super().__init__(
            message=f"Could not read '{path_or_id}': {reason}",
            error_code="FILE_READ_ERROR",
            details=details or {"path_or_id": path_or_id, "reason": reason},
        )


class UnsupportedFileError(FileSyncException):
    """Signals a file outside the accepted extension set.

    Not a failure: the pipeline records it as a skip and moves on.
    """

    def __init__(self, file_name: str, details: dict[str, Any] | None = None):
        self.file_name = file_name
        super().__init__(
            message=f"File '{file_name}' is not an accepted file type",
            error_code="UNSUPPORTED_FILE",
            details=details or {"file_name": file_name},
        )


# Watch Exceptions
class WatchError(FileSyncException):
    """Raised (or reported) when a filesystem watch faults."""

    def __init__(self, path: str, reason: str, details: dict[str, Any] | None = None):
        self.path = path
        super().__init__(
            message=f"Filesystem watch on '{path}' failed: {reason}",
            error_code="WATCH_ERROR",
            details=details or {"path": path, "reason": reason},
        )
