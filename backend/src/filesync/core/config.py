"""Configuration management for filesync.

Uses Pydantic Settings for type-safe, environment-based configuration.
"""

from typing import Annotated

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ..ingestion.filetypes import DEFAULT_EXCLUDE_PATTERNS

# Load environment variables from .env file
load_dotenv(override=False)


def _split_csv(v: str | list | tuple | set | None) -> list[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [part.strip() for part in v.split(",") if part.strip()]
    return [str(part).strip() for part in v if str(part).strip()]


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # App configuration
    app_name: str = Field("filesync", alias="FILESYNC_APP_NAME")
    environment: str = Field("development", alias="FILESYNC_ENVIRONMENT")

    # Database configuration
    # Leave FILESYNC_DATABASE_URL unset to use the in-memory metadata store.
    database_url: str | None = Field(None, alias="FILESYNC_DATABASE_URL")
    database_pool_size: int = Field(10, alias="FILESYNC_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(20, alias="FILESYNC_DATABASE_MAX_OVERFLOW")
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Redis configuration
    # Set FILESYNC_REDIS_URL to enable the Redis task queue; omit for in-memory.
    redis_url: str | None = Field(None, alias="FILESYNC_REDIS_URL")
    redis_connection_timeout: int = Field(5, alias="FILESYNC_REDIS_CONNECTION_TIMEOUT")
    task_queue_name: str = Field("filesync:process_file", alias="FILESYNC_TASK_QUEUE_NAME")

    @property
    def redis_enabled(self) -> bool:
        """Whether Redis should be used, based on FILESYNC_REDIS_URL being set."""
        return bool(self.redis_url)

    # Ingestion configuration
    accepted_extensions: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [".pdf"], alias="FILESYNC_ACCEPTED_EXTENSIONS"
    )
    exclude_patterns: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS), alias="FILESYNC_EXCLUDE_PATTERNS"
    )
    local_watch_path: str | None = Field(None, alias="FILESYNC_LOCAL_WATCH_PATH")
    # A local file must go this long without further writes before it is ingested
    watch_settle_seconds: float = Field(1.0, alias="FILESYNC_WATCH_SETTLE_SECONDS", ge=0)
    hash_algorithm: str = Field("sha256", alias="FILESYNC_HASH_ALGORITHM")
    ingest_concurrency: int = Field(4, alias="FILESYNC_INGEST_CONCURRENCY", ge=1)

    # Remote sync configuration
    max_sync_retries: int = Field(3, alias="FILESYNC_MAX_SYNC_RETRIES", ge=1)
    base_backoff_ms: int = Field(1000, alias="FILESYNC_BASE_BACKOFF_MS", ge=0)
    max_backoff_ms: int = Field(60_000, alias="FILESYNC_MAX_BACKOFF_MS", ge=0)
    poll_interval_seconds: float = Field(300.0, alias="FILESYNC_POLL_INTERVAL_SECONDS", gt=0)
    # Cycles a failed remote change is retried before it is given up
    failed_change_retry_cycles: int = Field(5, alias="FILESYNC_FAILED_CHANGE_RETRY_CYCLES", ge=0)
    http_timeout_seconds: float = Field(30.0, alias="FILESYNC_HTTP_TIMEOUT_SECONDS", gt=0)

    # Google Drive configuration
    # The access token is minted elsewhere; filesync does not run the OAuth flow.
    google_drive_access_token: str | None = Field(None, alias="GOOGLE_DRIVE_ACCESS_TOKEN")
    google_drive_id: str | None = Field(None, alias="GOOGLE_DRIVE_ID")
    google_drive_include_shared: bool = Field(True, alias="GOOGLE_DRIVE_INCLUDE_SHARED")

    @property
    def google_drive_enabled(self) -> bool:
        return bool(self.google_drive_access_token)

    # Logging configuration
    log_level: str = Field("INFO", alias="FILESYNC_LOG_LEVEL")
    log_format: str = Field("text", alias="FILESYNC_LOG_FORMAT")  # text or json
    log_dir: str | None = Field(None, alias="FILESYNC_LOG_DIR")

    @field_validator("accepted_extensions", mode="before")
    @classmethod
    def validate_accepted_extensions(cls, v: str | list | None) -> list[str]:
        """Parse extensions from a comma-separated string or list, normalised to '.ext'."""
        items = []
        for ext in _split_csv(v):
            ext = ext.lower()
            items.append(ext if ext.startswith(".") else f".{ext}")
        if not items:
            raise ValueError("At least one accepted extension is required")
        return sorted(set(items))

    @field_validator("exclude_patterns", mode="before")
    @classmethod
    def validate_exclude_patterns(cls, v: str | list | None) -> list[str]:
        """Parse exclusion globs from a comma-separated string or list."""
        return _split_csv(v)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Log level must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL (got {v!r})")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in ("text", "json"):
            raise ValueError(f"Log format must be 'text' or 'json' (got {v!r})")
        return fmt

    @field_validator("database_url", "redis_url", "local_watch_path", "google_drive_access_token", "log_dir")
    @classmethod
    def empty_string_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        populate_by_name=True,
        extra="ignore",  # Ignore extra environment variables instead of forbidding them
    )


def get_settings() -> Settings:
    """Build a settings instance from the environment.

    Callers hold on to the returned instance and pass it to the components
    they construct; there is no process-wide settings object.
    """
    return Settings()  # type: ignore[call-arg]
