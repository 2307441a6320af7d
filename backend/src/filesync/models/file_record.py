"""
FileRecord model for filesync.

One row per distinct content hash. The table is content-addressed: identical
bytes never produce two rows, regardless of file name or origin.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, CheckConstraint, Column, DateTime, Integer, String

from .base import Base


class FileRecord(Base):
    """
    Metadata for one piece of ingested content.

    ``sightings`` counts how often the content has been upserted; it is 1
    exactly when the row was just created.
    """

    __tablename__ = "file_metadata"

    content_hash = Column(String(128), primary_key=True)
    file_name = Column(String(1024), nullable=False)
    file_size_bytes = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    modified_at = Column(DateTime(timezone=True), nullable=False)
    tags = Column(JSON, nullable=True)  # sorted list of unique strings
    source_id = Column(String(512), nullable=False, index=True)
    sightings = Column(Integer, nullable=False, default=1)

    __table_args__ = (CheckConstraint("file_size_bytes >= 0", name="ck_file_metadata_size_non_negative"),)

    def __repr__(self) -> str:
        return f"<FileRecord(content_hash={self.content_hash}, file_name={self.file_name})>"


@dataclass(frozen=True)
class FileRecordData:
    """Detached view of a FileRecord passed across the MetadataStore boundary."""

    content_hash: str
    file_name: str
    file_size_bytes: int
    created_at: datetime
    modified_at: datetime
    source_id: str
    tags: frozenset[str] = field(default_factory=frozenset)
    sightings: int = 1

    def __post_init__(self) -> None:
        if self.file_size_bytes < 0:
            raise ValueError(f"file_size_bytes must be >= 0, got {self.file_size_bytes}")

    @classmethod
    def from_row(cls, row: Any) -> "FileRecordData":
        """Build from an ORM instance or a RETURNING row with the same attribute names."""
        return cls(
            content_hash=row.content_hash,
            file_name=row.file_name,
            file_size_bytes=row.file_size_bytes,
            created_at=row.created_at,
            modified_at=row.modified_at,
            source_id=row.source_id,
            tags=frozenset(row.tags or ()),
            sightings=row.sightings,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "file_name": self.file_name,
            "file_size_bytes": self.file_size_bytes,
            "created_at": self.created_at.isoformat(),
            "modified_at": self.modified_at.isoformat(),
            "source_id": self.source_id,
            "tags": sorted(self.tags),
            "sightings": self.sightings,
        }
