"""Unit tests for Settings field validators and defaults."""

import pytest
from pydantic import ValidationError

from filesync.core.config import Settings
from filesync.ingestion.filetypes import DEFAULT_EXCLUDE_PATTERNS


class TestDefaults:
    def test_defaults_select_in_memory_backends(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.database_url is None
        assert settings.redis_enabled is False
        assert settings.google_drive_enabled is False

    def test_retry_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.max_sync_retries == 3
        assert settings.base_backoff_ms == 1000
        assert settings.failed_change_retry_cycles == 5
        assert settings.watch_settle_seconds == 1.0

    def test_default_filters(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.accepted_extensions == [".pdf"]
        assert settings.exclude_patterns == list(DEFAULT_EXCLUDE_PATTERNS)


class TestValidateAcceptedExtensions:
    """Tests for Settings.validate_accepted_extensions."""

    def test_comma_separated_string(self) -> None:
        settings = Settings(_env_file=None, FILESYNC_ACCEPTED_EXTENSIONS="PDF, .docx,txt")
        assert settings.accepted_extensions == [".docx", ".pdf", ".txt"]

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Comma lists in the environment are not parsed as JSON."""
        monkeypatch.setenv("FILESYNC_ACCEPTED_EXTENSIONS", ".pdf,.md")
        settings = Settings(_env_file=None)
        assert settings.accepted_extensions == [".md", ".pdf"]

    def test_duplicates_collapsed(self) -> None:
        settings = Settings(_env_file=None, FILESYNC_ACCEPTED_EXTENSIONS=[".pdf", "pdf", ".PDF"])
        assert settings.accepted_extensions == [".pdf"]

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValidationError, match="At least one accepted extension"):
            Settings(_env_file=None, FILESYNC_ACCEPTED_EXTENSIONS=" , ")


class TestValidateLogging:
    def test_log_level_uppercased(self) -> None:
        settings = Settings(_env_file=None, FILESYNC_LOG_LEVEL="debug")
        assert settings.log_level == "DEBUG"

    def test_invalid_log_level_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Log level must be one of"):
            Settings(_env_file=None, FILESYNC_LOG_LEVEL="chatty")

    def test_invalid_log_format_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Log format must be"):
            Settings(_env_file=None, FILESYNC_LOG_FORMAT="xml")


class TestRanges:
    def test_max_sync_retries_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, FILESYNC_MAX_SYNC_RETRIES=0)

    def test_negative_backoff_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, FILESYNC_BASE_BACKOFF_MS=-1)

    def test_negative_settle_window_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, FILESYNC_WATCH_SETTLE_SECONDS=-0.5)


class TestOptionalUrls:
    def test_blank_urls_are_none(self) -> None:
        settings = Settings(_env_file=None, FILESYNC_DATABASE_URL="  ", FILESYNC_REDIS_URL="")
        assert settings.database_url is None
        assert settings.redis_url is None
        assert settings.redis_enabled is False

    def test_drive_token_enables_drive(self) -> None:
        settings = Settings(_env_file=None, GOOGLE_DRIVE_ACCESS_TOKEN="ya29.token")
        assert settings.google_drive_enabled is True
