"""
Database connection and session management for filesync.

Each ``Database`` owns one async engine and its session factory. Components
receive the instance they should use; nothing here is process-global.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings
from .exceptions import StorageUnavailableError
from .logging import get_logger

logger = get_logger(__name__)


def _redact_url(database_url: str) -> str:
    """Drop credentials from a database URL for logging."""
    if "@" not in database_url:
        return database_url
    scheme, _, rest = database_url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


class Database:
    """Async engine plus session factory for one database."""

    def __init__(self, database_url: str, **engine_kwargs: Any) -> None:
        self.database_url = database_url
        try:
            self.engine: AsyncEngine = create_async_engine(database_url, **engine_kwargs)
        except Exception as e:
            logger.error(f"Failed to create async database engine: {str(e)}")
            raise StorageUnavailableError("engine creation", str(e)) from e
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autoflush=False,
            class_=AsyncSession,
        )
        logger.debug(f"Database configured: {_redact_url(database_url)}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        if not settings.database_url:
            raise ValueError("FILESYNC_DATABASE_URL is not configured")
        kwargs: dict[str, Any] = {"pool_pre_ping": True, "echo": False}
        # SQLite uses a static/singleton pool that rejects sizing arguments
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_recycle=settings.database_pool_recycle,
            )
        return cls(settings.database_url, **kwargs)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session, rolling back on SQLAlchemy errors."""
        async with self.session_factory() as session:
            try:
                yield session
            except SQLAlchemyError:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """Create all tables registered on the declarative Base."""
        from ..models import Base

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Database initialization failed: {str(e)}")
            raise StorageUnavailableError("create tables", str(e)) from e
        logger.info("Database tables initialized successfully")

    async def check_connection(self) -> bool:
        """Check if database connection is working."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Database connection check failed: {str(e)}")
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.debug("Database connections closed")
