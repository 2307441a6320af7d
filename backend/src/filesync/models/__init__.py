"""Database models for filesync."""

from .base import Base
from .file_record import FileRecord, FileRecordData

__all__ = ["Base", "FileRecord", "FileRecordData"]
