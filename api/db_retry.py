"""
Database retry utilities for transient ledger errors.

Ledger operations are short transactions, so a lost lock race or a dropped
pooled connection is retried in place with exponential backoff instead of
failing the whole publish job:

SQLite errors:
- "database is locked" - concurrent write contention between worker slots
- "SQLITE_BUSY" / "SQLITE_LOCKED"

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Connection errors
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

from api.errors import TransientInfraError

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0
DEFAULT_EXPONENTIAL_BASE = 2

_SQLITE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)

_POSTGRES_PATTERNS = (
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "connection was closed",
    "server closed the connection unexpectedly",
    "canceling statement due to lock timeout",
    "lock timeout",
)


class DatabaseRetryableError(TransientInfraError):
    """Raised when a database operation fails after all retries are exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """
    Check if an exception is a transient database error worth retrying.

    Looks at the message, the PostgreSQL sqlstate, and wrapped driver
    exceptions (the databases library re-raises driver errors).
    """
    error_str = str(exc).lower()

    if any(pattern in error_str for pattern in _SQLITE_PATTERNS):
        return True
    if any(pattern in error_str for pattern in _POSTGRES_PATTERNS):
        return True

    # asyncpg exposes the SQLSTATE code
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate in ("40P01", "40001"):
        return True

    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
    # Add jitter (±25%) to prevent thundering herd between worker slots
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + jitter)


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Execute an async database operation, retrying transient errors.

    The callable must be safe to re-run: every ledger operation wraps its own
    transaction, so a failed attempt has already been rolled back.

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            start_time = time.monotonic()
            result = await func(*args, **kwargs)
            elapsed = time.monotonic() - start_time
            if elapsed >= SLOW_QUERY_THRESHOLD:
                name = getattr(func, "__name__", repr(func))
                logger.warning(f"Slow database operation {name} ({elapsed:.2f}s)")
            return result
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = _backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(
        f"Database operation failed after {max_retries + 1} attempts: {last_exception}"
    ) from last_exception
