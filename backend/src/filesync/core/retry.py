"""Retry/backoff runner for remote sync calls.

Usage::

    runner = RetryingSyncRunner(RetryConfig(max_attempts=3, base_delay=1.0))
    result = await runner.run(lambda: source.poll(cursor))

The runner retries on ``SyncFailedError`` with exponential backoff and
re-raises the last error once the attempt budget is spent. Any other
exception type propagates immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from .exceptions import ConfigurationError, SyncFailedError
from .logging import get_logger

if TYPE_CHECKING:
    from .config import Settings

logger = get_logger(__name__)

_T = TypeVar("_T")

FailureHook = Callable[[int, BaseException], None]


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for exponential-backoff retry behaviour.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        base_delay: Delay unit in seconds.
        max_delay: Upper bound on sleep duration regardless of backoff growth.
        backoff_factor: Multiplier applied per failed attempt.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")

    def delay_for(self, failed_attempts: int) -> float:
        """Return sleep duration (seconds) after ``failed_attempts`` failures (1-indexed).

        With a 1s base this gives 2s after the first failure, 4s after the
        second, and so on.
        """
        return min(self.base_delay * (self.backoff_factor ** failed_attempts), self.max_delay)

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            max_attempts=settings.max_sync_retries,
            base_delay=settings.base_backoff_ms / 1000.0,
            max_delay=max(settings.max_backoff_ms, settings.base_backoff_ms) / 1000.0,
        )


class RetryingSyncRunner:
    """Runs one fallible async operation with bounded retries.

    Each ``run`` call starts from attempt 1; no backoff state carries over
    between calls. The operation itself is never cancelled mid-attempt;
    timeouts belong to the operation.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        on_failure: FailureHook | None = None,
        retry_on: tuple[type[BaseException], ...] = (SyncFailedError,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self._on_failure = on_failure
        self._retry_on = retry_on
        self._sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[_T]]) -> _T:
        """Await ``operation()`` until it succeeds or attempts run out.

        Raises:
            The last retryable error once ``max_attempts`` attempts have failed.
            Any non-retryable error immediately.
        """
        max_attempts = self.config.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except self._retry_on as e:
                logger.warning(
                    f"Sync attempt {attempt}/{max_attempts} failed: {e}",
                    extra={"attempt": attempt, "max_attempts": max_attempts},
                )
                self._report(attempt, e)
                if attempt == max_attempts:
                    logger.error("Max retries reached, sync failed", extra={"attempts": attempt})
                    raise
                await self._sleep(self.config.delay_for(attempt))
        # range() is never empty because max_attempts >= 1
        raise AssertionError("unreachable")

    def _report(self, attempt: int, error: BaseException) -> None:
        if self._on_failure is None:
            return
        try:
            self._on_failure(attempt, error)
        except Exception:
            logger.exception("Retry failure hook raised", extra={"attempt": attempt})
