"""
Content-addressed metadata store.

Maps a content hash to its ``FileRecord``. Two interchangeable
implementations share the ``MetadataStore`` protocol:
- SQLAlchemyMetadataStore: PostgreSQL (or SQLite) via the async engine
- InMemoryMetadataStore: single process, for development and tests

Upserts are a single merge statement, never a read followed by a write, so
concurrent callers racing on the same hash cannot insert twice or lose an
update.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Protocol, runtime_checkable

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError

from ..core.config import Settings
from ..core.database import Database
from ..core.exceptions import StorageError, StorageUnavailableError
from ..core.logging import get_logger
from ..models.file_record import FileRecord, FileRecordData

logger = get_logger(__name__)

# Columns refreshed when an existing hash is sighted again
UPSERT_UPDATE_COLUMNS = ("file_name", "file_size_bytes", "modified_at", "source_id")


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an upsert: the stored record and whether it was just created."""

    record: FileRecordData
    created: bool


@runtime_checkable
class MetadataStore(Protocol):
    """Durable mapping from content hash to file record."""

    async def exists(self, content_hash: str) -> bool: ...

    async def upsert(self, record: FileRecordData) -> UpsertResult: ...

    async def discard(self, content_hash: str) -> bool: ...

    async def get(self, content_hash: str) -> FileRecordData | None: ...

    async def get_by_source_id(self, source_id: str) -> FileRecordData | None: ...

    async def list_records(self, limit: int = 100, offset: int = 0) -> list[FileRecordData]: ...

    async def count(self) -> int: ...


def _is_connectivity_error(error: BaseException) -> bool:
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return isinstance(error, (OSError, ConnectionError, asyncio.TimeoutError))


class SQLAlchemyMetadataStore:
    """MetadataStore backed by the ``file_metadata`` table."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def _translate(self, operation: str, error: BaseException) -> StorageError:
        if _is_connectivity_error(error):
            logger.error(f"Metadata store unreachable during {operation}: {error}")
            return StorageUnavailableError(operation, str(error))
        logger.error(f"Metadata store {operation} failed: {error}")
        return StorageError(operation, str(error))

    def _insert(self):  # type: ignore[no-untyped-def]
        dialect = self.database.dialect_name
        if dialect == "postgresql":
            return postgresql.insert(FileRecord)
        if dialect == "sqlite":
            return sqlite.insert(FileRecord)
        raise StorageError("upsert", f"unsupported database dialect '{dialect}'")

    async def exists(self, content_hash: str) -> bool:
        stmt = select(FileRecord.content_hash).where(FileRecord.content_hash == content_hash).limit(1)
        try:
            async with self.database.session() as session:
                result = await session.execute(stmt)
                return result.scalar_one_or_none() is not None
        except (SQLAlchemyError, OSError, ConnectionError, asyncio.TimeoutError) as e:
            raise self._translate("exists", e) from e

    async def upsert(self, record: FileRecordData) -> UpsertResult:
        insert_stmt = self._insert().values(
            content_hash=record.content_hash,
            file_name=record.file_name,
            file_size_bytes=record.file_size_bytes,
            created_at=record.created_at,
            modified_at=record.modified_at,
            tags=sorted(record.tags) if record.tags else None,
            source_id=record.source_id,
            sightings=1,
        )
        update_set = {name: insert_stmt.excluded[name] for name in UPSERT_UPDATE_COLUMNS}
        update_set["sightings"] = FileRecord.sightings + 1
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[FileRecord.content_hash],
            set_=update_set,
        ).returning(*FileRecord.__table__.columns)

        try:
            async with self.database.session() as session:
                result = await session.execute(stmt)
                row = result.one()
                await session.commit()
        except (SQLAlchemyError, OSError, ConnectionError, asyncio.TimeoutError) as e:
            raise self._translate("upsert", e) from e

        stored = FileRecordData.from_row(row)
        created = stored.sightings == 1
        logger.debug(
            "File record upserted",
            extra={"content_hash": stored.content_hash, "inserted": created, "sightings": stored.sightings},
        )
        return UpsertResult(record=stored, created=created)

    async def discard(self, content_hash: str) -> bool:
        """Delete the record for this hash. Returns False when there was none."""
        stmt = delete(FileRecord).where(FileRecord.content_hash == content_hash)
        try:
            async with self.database.session() as session:
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError, ConnectionError, asyncio.TimeoutError) as e:
            raise self._translate("discard", e) from e
        removed = result.rowcount > 0
        logger.debug("File record discarded", extra={"content_hash": content_hash, "removed": removed})
        return removed

    async def get(self, content_hash: str) -> FileRecordData | None:
        stmt = select(FileRecord).where(FileRecord.content_hash == content_hash)
        return await self._fetch_one("get", stmt)

    async def get_by_source_id(self, source_id: str) -> FileRecordData | None:
        stmt = (
            select(FileRecord)
            .where(FileRecord.source_id == source_id)
            .order_by(FileRecord.modified_at.desc())
            .limit(1)
        )
        return await self._fetch_one("get_by_source_id", stmt)

    async def _fetch_one(self, operation: str, stmt) -> FileRecordData | None:  # type: ignore[no-untyped-def]
        try:
            async with self.database.session() as session:
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
                return FileRecordData.from_row(row) if row is not None else None
        except (SQLAlchemyError, OSError, ConnectionError, asyncio.TimeoutError) as e:
            raise self._translate(operation, e) from e

    async def list_records(self, limit: int = 100, offset: int = 0) -> list[FileRecordData]:
        stmt = (
            select(FileRecord)
            .order_by(FileRecord.modified_at.desc(), FileRecord.content_hash)
            .limit(limit)
            .offset(offset)
        )
        try:
            async with self.database.session() as session:
                result = await session.execute(stmt)
                return [FileRecordData.from_row(row) for row in result.scalars().all()]
        except (SQLAlchemyError, OSError, ConnectionError, asyncio.TimeoutError) as e:
            raise self._translate("list_records", e) from e

    async def count(self) -> int:
        try:
            async with self.database.session() as session:
                result = await session.execute(select(func.count()).select_from(FileRecord))
                return int(result.scalar_one())
        except (SQLAlchemyError, OSError, ConnectionError, asyncio.TimeoutError) as e:
            raise self._translate("count", e) from e


class InMemoryMetadataStore:
    """MetadataStore kept in a dict; data is lost when the process exits.

    A single asyncio.Lock serialises upserts, which gives the same
    no-duplicate/no-lost-update guarantee as the SQL merge within one loop.
    """

    def __init__(self) -> None:
        self._records: dict[str, FileRecordData] = {}
        self._lock = asyncio.Lock()

    async def exists(self, content_hash: str) -> bool:
        return content_hash in self._records

    async def upsert(self, record: FileRecordData) -> UpsertResult:
        async with self._lock:
            existing = self._records.get(record.content_hash)
            if existing is None:
                stored = replace(record, sightings=1)
                created = True
            else:
                stored = replace(
                    existing,
                    file_name=record.file_name,
                    file_size_bytes=record.file_size_bytes,
                    modified_at=record.modified_at,
                    source_id=record.source_id,
                    sightings=existing.sightings + 1,
                )
                created = False
            self._records[record.content_hash] = stored
        return UpsertResult(record=stored, created=created)

    async def discard(self, content_hash: str) -> bool:
        async with self._lock:
            return self._records.pop(content_hash, None) is not None

    async def get(self, content_hash: str) -> FileRecordData | None:
        return self._records.get(content_hash)

    async def get_by_source_id(self, source_id: str) -> FileRecordData | None:
        matches = [r for r in self._records.values() if r.source_id == source_id]
        if not matches:
            return None
        return max(matches, key=lambda r: r.modified_at)

    async def list_records(self, limit: int = 100, offset: int = 0) -> list[FileRecordData]:
        ordered = sorted(self._records.values(), key=lambda r: r.content_hash)
        ordered.sort(key=lambda r: r.modified_at, reverse=True)
        return ordered[offset : offset + limit]

    async def count(self) -> int:
        return len(self._records)


def create_metadata_store(settings: Settings, database: Database | None = None) -> MetadataStore:
    """Pick the store implementation for these settings.

    Uses the given database (or one built from FILESYNC_DATABASE_URL); falls
    back to the in-memory store when no database is configured.
    """
    if database is None and not settings.database_url:
        logger.info("No database URL configured, using InMemoryMetadataStore")
        return InMemoryMetadataStore()
    return SQLAlchemyMetadataStore(database or Database.from_settings(settings))
