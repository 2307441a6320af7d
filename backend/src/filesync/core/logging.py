"""Logging configuration for filesync.

Sets up readable, color-coded console logs for development and JSON logs for
production, with an optional plain file handler.
"""

import json
import logging
import os
import socket
import sys
import traceback
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, ClassVar

from .config import Settings

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}

# content_hash extras are cut to this many hex chars in console output
HASH_DISPLAY_CHARS = 12


class ColoredFormatter(logging.Formatter):
    """One aligned line per record: time, colored level, logger, message, then short extras."""

    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    @staticmethod
    def _console_extras(record: logging.LogRecord) -> str:
        # Short scalars only; full values are in the JSON output
        parts = []
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or value is None or not isinstance(value, (str, int, float, bool)):
                continue
            if key == "content_hash" and isinstance(value, str):
                value = value[:HASH_DISPLAY_CHARS]
            if len(str(value)) < 100:
                parts.append(f"{key}={value}")
        return " ".join(parts)

    def format(self, record: logging.LogRecord) -> str:
        color, reset = ("", "")
        if self.use_colors:
            color, reset = self.COLORS.get(record.levelname, ""), self.COLORS["RESET"]

        when = datetime.fromtimestamp(record.created, UTC).strftime("%Y-%m-%d %H:%M:%S")
        name = record.name if len(record.name) <= 25 else record.name[:22] + "..."
        line = f"{when} - {color}{record.levelname}{reset} - {name:25} - {record.getMessage()}"

        extras = self._console_extras(record)
        if extras:
            line += f" | {extras}"
        if record.exc_info:
            line += f"\n{color}Exception:{reset}\n" + "".join(traceback.format_exception(*record.exc_info))
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with every ``extra`` field at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            exc_type = record.exc_info[0]
            log_data["exception"] = {
                "type": exc_type.__name__ if exc_type is not None else "Unknown",
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(settings: Settings) -> None:
    """Set up logging configuration for the filesync process.

    Safe to call more than once; handlers installed by a previous call are
    replaced rather than duplicated.
    """
    use_colors = settings.environment == "development" and sys.stdout.isatty()
    formatter: logging.Formatter = (
        JSONFormatter() if settings.log_format == "json" else ColoredFormatter(use_colors=use_colors)
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [console_handler]

    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        os.makedirs(log_dir, exist_ok=True)
        # Include hostname in filename so replicas sharing a volume don't clobber each other
        file_handler = logging.FileHandler(log_dir / f"filesync_{socket.gethostname()}.log", encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    level = getattr(logging, settings.log_level)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)
    for handler in handlers:
        root_logger.addHandler(handler)

    # SQLAlchemy logs SQL at INFO, which is too verbose for normal operation
    for logger_name in ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool"):
        logging.getLogger(logger_name).setLevel(logging.ERROR)

    # Reduce noise from other libraries - never below WARNING
    external_lib_level = max(level, logging.WARNING)
    for logger_name in ("httpx", "httpcore", "watchdog", "redis", "aiosqlite", "asyncio"):
        logging.getLogger(logger_name).setLevel(external_lib_level)

    logging.getLogger("filesync").setLevel(level)

    get_logger("logging").info(
        "Logging configured",
        extra={
            "log_level": settings.log_level,
            "log_format": settings.log_format,
            "environment": settings.environment,
            "use_colors": use_colors,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``filesync`` namespace."""
    if name.startswith("filesync"):
        return logging.getLogger(name)
    return logging.getLogger(f"filesync.{name}")
