"""
Backoff and retry for store reads and batch applies.

The executor wraps every batch upsert in ``retry_async``; detection wraps
source scans the same way. Only exceptions listed in ``retryable_exceptions``
are retried. Anything else propagates on the first failure.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# StoreConnectionError subclasses ConnectionError, so it is covered here.
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)

MAX_RETRIES_LIMIT = 10


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff settings for one retried operation.

    Attempt ``n`` (0-based) waits ``initial_delay * exponential_base ** n``
    seconds, capped at ``max_delay`` and then spread by ``+/- jitter`` of
    itself. ``max_retries=0`` runs the operation once.

    Example:
        >>> ExecutionConfig(retry=RetryConfig(max_retries=5, max_delay=10.0))
    """

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        problems = []
        if not 0 <= self.max_retries <= MAX_RETRIES_LIMIT:
            problems.append(
                f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}, "
                f"got {self.max_retries}"
            )
        if self.initial_delay <= 0:
            problems.append(f"initial_delay must be positive, got {self.initial_delay}")
        elif self.max_delay < self.initial_delay:
            problems.append(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})"
            )
        if self.exponential_base <= 1.0:
            problems.append(f"exponential_base must be > 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter <= 1.0:
            problems.append(f"jitter must be between 0.0 and 1.0, got {self.jitter}")
        if problems:
            raise ValueError("; ".join(problems))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RetryStats:
    """Counters filled in by ``retry_async``; the executor copies them into BatchResult."""

    attempts: int = 0
    failures: int = 0
    total_delay_seconds: float = 0.0
    last_error: str | None = None


class RetryError(Exception):
    """
    The operation failed on every attempt.

    ``last_error`` is the exception from the final attempt and is also chained
    as ``__cause__``.
    """

    def __init__(self, message: str, attempts: int, last_error: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after failed attempt ``attempt`` (0-based)."""
    base = min(config.initial_delay * config.exponential_base**attempt, config.max_delay)
    spread = base * config.jitter
    return max(0.0, base + random.uniform(-spread, spread))  # nosec B311


def is_retryable_exception(
    exception: BaseException,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> bool:
    return isinstance(exception, retryable_exceptions)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
    operation_name: str = "operation",
    stats: RetryStats | None = None,
) -> T:
    """
    Await ``operation()`` until it succeeds or the retries run out.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        config: Backoff settings. Defaults to ``RetryConfig()``.
        retryable_exceptions: Exception types that trigger another attempt.
        operation_name: Label used in log records.
        stats: Filled in as attempts are made, when given.

    Returns:
        Whatever the first successful attempt returned.

    Raises:
        RetryError: Every attempt raised a retryable exception.

    Example:
        >>> mapping = await retry_async(
        ...     lambda: destination.upsert(entity, rows),
        ...     config=execution_config.retry,
        ...     operation_name="upsert offices batch 3",
        ... )
    """
    config = config or RetryConfig()
    stats = stats if stats is not None else RetryStats()
    total_attempts = config.max_retries + 1

    while True:
        stats.attempts += 1
        try:
            result = await operation()
        except retryable_exceptions as e:
            stats.failures += 1
            stats.last_error = str(e)
            if stats.attempts >= total_attempts:
                logger.error(
                    "%s failed on all %d attempts: %s",
                    operation_name,
                    stats.attempts,
                    e,
                    extra={
                        "operation": operation_name,
                        "attempts": stats.attempts,
                        "error_type": type(e).__name__,
                    },
                )
                raise RetryError(
                    f"{operation_name} failed after {stats.attempts} attempts: {e}",
                    attempts=stats.attempts,
                    last_error=e,
                ) from e

            delay = calculate_backoff(stats.attempts - 1, config)
            stats.total_delay_seconds += delay
            logger.warning(
                "%s failed (attempt %d of %d), retrying in %.3fs: %s",
                operation_name,
                stats.attempts,
                total_attempts,
                delay,
                e,
                extra={"operation": operation_name, "error_type": type(e).__name__},
            )
            await asyncio.sleep(delay)
            continue

        if stats.failures:
            logger.info(
                "%s succeeded on attempt %d",
                operation_name,
                stats.attempts,
                extra={"operation": operation_name, "attempts": stats.attempts},
            )
        return result


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryError",
    "calculate_backoff",
    "retry_async",
    "is_retryable_exception",
    "TRANSIENT_EXCEPTIONS",
]
