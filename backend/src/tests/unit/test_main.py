"""Tests for the filesync command-line entrypoint."""

import asyncio
import json
from contextlib import AsyncExitStack
from datetime import datetime, timezone

import pytest

from filesync import main as cli
from filesync.core.config import Settings
from filesync.core.database import Database
from filesync.core.exceptions import StorageUnavailableError
from filesync.ingestion.tasks import QueueTaskDispatcher
from filesync.models.file_record import FileRecordData
from filesync.sources.local_watch import LocalWatchSource
from filesync.storage.metadata_store import InMemoryMetadataStore, SQLAlchemyMetadataStore


@pytest.fixture
def quiet_main(monkeypatch):
    """Run ``main`` with explicit settings and without touching logging handlers."""

    def configure(**env) -> None:
        monkeypatch.setattr(cli, "get_settings", lambda: Settings(_env_file=None, **env))
        monkeypatch.setattr(cli, "setup_logging", lambda settings: None)

    return configure


class TestParser:
    def test_list_defaults(self):
        args = cli.build_parser().parse_args(["list"])
        assert (args.command, args.limit, args.offset) == ("list", 100, 0)

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestMain:
    def test_init_db_without_database_exits_1(self, quiet_main):
        quiet_main()
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["init-db"])
        assert exc_info.value.code == 1

    def test_run_with_nothing_configured_exits_1(self, quiet_main):
        quiet_main()
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run"])
        assert exc_info.value.code == 1

    def test_sync_once_without_token_exits_1(self, quiet_main):
        quiet_main()
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["sync-once"])
        assert exc_info.value.code == 1

    def test_list_prints_stored_records(self, quiet_main, tmp_path, capsys):
        url = f"sqlite+aiosqlite:///{tmp_path / 'filesync.db'}"
        quiet_main(FILESYNC_DATABASE_URL=url)

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["init-db"])
        assert exc_info.value.code == 0

        async def seed() -> None:
            db = Database(url)
            try:
                now = datetime(2026, 3, 1, tzinfo=timezone.utc)
                await SQLAlchemyMetadataStore(db).upsert(
                    FileRecordData(
                        content_hash="d" * 64,
                        file_name="paper.pdf",
                        file_size_bytes=3,
                        created_at=now,
                        modified_at=now,
                        source_id="local_dddddddd",
                    )
                )
            finally:
                await db.dispose()

        asyncio.run(seed())

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["list", "--limit", "5"])
        assert exc_info.value.code == 0

        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
        assert [r["file_name"] for r in lines] == ["paper.pdf"]
        assert lines[0]["sightings"] == 1


class TestBuildComponents:
    @pytest.mark.asyncio
    async def test_defaults_are_in_memory_without_sources(self):
        async with AsyncExitStack() as stack:
            components = await cli.build_components(Settings(_env_file=None), stack)

        assert components.database is None
        assert isinstance(components.store, InMemoryMetadataStore)
        assert isinstance(components.pipeline.task_queue, QueueTaskDispatcher)
        assert components.remote_source is None
        assert components.local_source is None

    @pytest.mark.asyncio
    async def test_sources_enabled_by_settings(self, tmp_path):
        settings = Settings(
            _env_file=None,
            GOOGLE_DRIVE_ACCESS_TOKEN="tok",
            FILESYNC_LOCAL_WATCH_PATH=f"{tmp_path / 'a'}, {tmp_path / 'b'}",
            FILESYNC_POLL_INTERVAL_SECONDS=42,
            FILESYNC_WATCH_SETTLE_SECONDS=0.25,
            FILESYNC_FAILED_CHANGE_RETRY_CYCLES=2,
        )
        async with AsyncExitStack() as stack:
            components = await cli.build_components(settings, stack)
            service = components.sync_service()

        assert components.remote_source is not None
        assert components.remote_source._client.is_closed
        assert isinstance(components.local_source, LocalWatchSource)
        assert components.local_source.settle_seconds == 0.25
        assert service.failed_retry_cycles == 2
        assert service.poll_interval == 42
        assert service.retry_config.max_attempts == 3

    @pytest.mark.asyncio
    async def test_reachable_database_gets_tables(self, tmp_path):
        settings = Settings(_env_file=None, FILESYNC_DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'f.db'}")
        async with AsyncExitStack() as stack:
            components = await cli.build_components(settings, stack)
            assert await components.database.check_connection() is True
            assert await components.store.count() == 0

    @pytest.mark.asyncio
    async def test_unreachable_database_fails_before_wiring(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'f.db'}"
        async with AsyncExitStack() as stack:
            with pytest.raises(StorageUnavailableError) as exc_info:
                await cli.build_components(Settings(_env_file=None, FILESYNC_DATABASE_URL=url), stack)
        assert exc_info.value.error_code == "STORAGE_UNAVAILABLE"
