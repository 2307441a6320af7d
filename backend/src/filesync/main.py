"""Command-line entrypoint for filesync.

Usage:
    # Initial sync, then keep polling and watching until SIGINT/SIGTERM
    python -m filesync run

    # One remote sync cycle; prints the outcome counts as JSON
    python -m filesync sync-once

    # Most recently seen records, one JSON object per line
    python -m filesync list --limit 20

    # Create the file_metadata table
    python -m filesync init-db

All configuration comes from the environment (see ``core.config.Settings``).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from . import __version__
from .core.config import Settings, get_settings
from .core.database import Database
from .core.exceptions import FileSyncException, StorageUnavailableError
from .core.logging import get_logger, setup_logging
from .core.queue_backend import QueueError, RedisQueueBackend, create_queue_backend
from .core.retry import RetryConfig
from .ingestion.filetypes import FileTypeFilter
from .ingestion.pipeline import IngestionPipeline
from .ingestion.tasks import QueueTaskDispatcher
from .services.sync_service import SyncService
from .sources.google_drive import GoogleDriveChangeSource
from .sources.local_watch import LocalWatchSource
from .storage.metadata_store import MetadataStore, create_metadata_store

logger = get_logger(__name__)


@dataclass
class Components:
    """Everything a command needs, wired from one Settings instance."""

    settings: Settings
    database: Database | None
    store: MetadataStore
    pipeline: IngestionPipeline
    remote_source: GoogleDriveChangeSource | None
    local_source: LocalWatchSource | None

    def sync_service(self) -> SyncService:
        return SyncService(
            pipeline=self.pipeline,
            remote_source=self.remote_source,
            local_source=self.local_source,
            retry_config=RetryConfig.from_settings(self.settings),
            poll_interval=self.settings.poll_interval_seconds,
            failed_retry_cycles=self.settings.failed_change_retry_cycles,
        )


async def build_components(settings: Settings, stack: AsyncExitStack) -> Components:
    """Construct and wire components; cleanup is registered on ``stack``."""
    database = None
    if settings.database_url:
        database = Database.from_settings(settings)
        stack.push_async_callback(database.dispose)
        if not await database.check_connection():
            raise StorageUnavailableError("connect", "database is not reachable")
        await database.create_tables()
    store = create_metadata_store(settings, database)

    backend = await create_queue_backend(settings)
    if isinstance(backend, RedisQueueBackend):
        stack.push_async_callback(backend.close)
    dispatcher = QueueTaskDispatcher(backend, settings.task_queue_name)

    file_filter = FileTypeFilter.from_settings(settings)
    pipeline = IngestionPipeline.from_settings(settings, store=store, task_queue=dispatcher)

    remote_source = None
    if settings.google_drive_enabled:
        remote_source = GoogleDriveChangeSource.from_settings(settings)
        stack.push_async_callback(remote_source.aclose)

    local_source = None
    if settings.local_watch_path:
        local_source = LocalWatchSource(
            [p.strip() for p in settings.local_watch_path.split(",") if p.strip()],
            file_filter=file_filter,
            settle_seconds=settings.watch_settle_seconds,
        )

    return Components(
        settings=settings,
        database=database,
        store=store,
        pipeline=pipeline,
        remote_source=remote_source,
        local_source=local_source,
    )


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Set ``stop_event`` on SIGTERM and SIGINT."""
    loop = asyncio.get_running_loop()

    def handle_signal(signum: int, frame: Any) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name} signal, shutting down...", extra={"signal": signal_name})
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


async def cmd_run(settings: Settings) -> int:
    async with AsyncExitStack() as stack:
        components = await build_components(settings, stack)
        if components.remote_source is None and components.local_source is None:
            logger.error("Nothing to do: set GOOGLE_DRIVE_ACCESS_TOKEN and/or FILESYNC_LOCAL_WATCH_PATH")
            return 1

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

        service = components.sync_service()
        async with service:
            logger.info(
                "filesync running",
                extra={
                    "remote": components.remote_source is not None,
                    "local_paths": settings.local_watch_path,
                    "poll_interval": settings.poll_interval_seconds,
                },
            )
            await service.run_forever(stop_event)
    return 0


async def cmd_sync_once(settings: Settings) -> int:
    async with AsyncExitStack() as stack:
        components = await build_components(settings, stack)
        if components.remote_source is None:
            logger.error("GOOGLE_DRIVE_ACCESS_TOKEN is not configured")
            return 1
        batch = await components.sync_service().sync_once()
        print(json.dumps(batch.counts, sort_keys=True))
    return 0


async def cmd_list(settings: Settings, limit: int, offset: int) -> int:
    async with AsyncExitStack() as stack:
        components = await build_components(settings, stack)
        for record in await components.store.list_records(limit=limit, offset=offset):
            print(json.dumps(record.to_dict(), sort_keys=True))
    return 0


async def cmd_init_db(settings: Settings) -> int:
    if not settings.database_url:
        logger.error("FILESYNC_DATABASE_URL is not configured")
        return 1
    database = Database.from_settings(settings)
    try:
        await database.create_tables()
    finally:
        await database.dispose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filesync",
        description="Content-addressed file ingestion with task dispatch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Sync, then keep polling and watching until interrupted")
    subparsers.add_parser("sync-once", help="Run a single remote sync cycle")

    list_parser = subparsers.add_parser("list", help="Print stored records as JSON lines")
    list_parser.add_argument("--limit", type=int, default=100, help="Maximum records to print (default: 100)")
    list_parser.add_argument("--offset", type=int, default=0, help="Records to skip (default: 0)")

    subparsers.add_parser("init-db", help="Create database tables")
    return parser


async def dispatch(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "run":
        return await cmd_run(settings)
    if args.command == "sync-once":
        return await cmd_sync_once(settings)
    if args.command == "list":
        return await cmd_list(settings, limit=args.limit, offset=args.offset)
    if args.command == "init-db":
        return await cmd_init_db(settings)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    """Start filesync."""
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(settings)

    logger.info(
        "filesync starting",
        extra={"version": __version__, "environment": settings.environment, "command": args.command},
    )

    try:
        exit_code = asyncio.run(dispatch(args, settings))
    except (FileSyncException, QueueError) as e:
        logger.error(f"filesync failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error("filesync failed: %s", e, exc_info=True)
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
