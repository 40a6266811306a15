"""
Retry policy for database operations.

Every database round-trip made by the migration goes through a RetryPolicy,
which applies a per-attempt timeout and retries transient failures with
bounded exponential backoff and jitter (see RetryConfig.get_delay_ms).

Transient failures are:
- connection resets and invalidated connections
- deadlocks and serialization failures
- connection pool timeouts and statement timeouts
- operational errors reported by the driver (e.g. "database is locked")

Anything else propagates unchanged on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from syn2mas.exceptions import TRANSIENT_RETRY_CONFIG, RetryConfig, TransientStorageError
from syn2mas.observability import ATTR_OPERATION, Tracer, create_tracer

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes that are worth retrying: serialization failure, deadlock,
# admin shutdown and the whole connection exception class.
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "57P01", "57P02", "57P03"})
TRANSIENT_SQLSTATE_CLASSES = ("08",)


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return str(code) if code else None


def is_transient(exc: BaseException) -> bool:
    """
    Decide whether an exception is a transient storage failure.

    Args:
        exc: Exception raised by a database operation

    Returns:
        True if the operation may succeed when retried
    """
    if isinstance(exc, TransientStorageError):
        return True
    if isinstance(exc, (PoolTimeoutError, TimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        code = _sqlstate(exc)
        if code is not None:
            return code in TRANSIENT_SQLSTATES or code.startswith(TRANSIENT_SQLSTATE_CLASSES)
        return isinstance(exc, OperationalError)
    if isinstance(exc, (ConnectionResetError, ConnectionRefusedError)):
        return True
    return False


class RetryPolicy:
    """
    Timeout plus bounded exponential backoff for database operations.

    Example:
        >>> policy = RetryPolicy(RetryConfig(max_attempts=3), timeout_s=30.0)
        >>> rows = await policy.run(lambda: fetch_rows(conn), "users.extract")
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        timeout_s: float | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the retry policy.

        Args:
            config: Backoff configuration (defaults to TRANSIENT_RETRY_CONFIG)
            timeout_s: Timeout for each attempt in seconds (None = no timeout)
            sleep: Coroutine used to wait between attempts (injectable for tests)
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._config = config or TRANSIENT_RETRY_CONFIG
        self._timeout_s = timeout_s
        self._sleep = sleep
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        *,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
    ) -> T:
        """
        Run an operation, retrying transient failures.

        The operation is called anew for every attempt, so it must open its
        own transaction; a failed attempt leaves nothing behind.

        Args:
            operation: Zero-argument callable returning an awaitable
            operation_name: Name for logging and tracing
            on_retry: Callback invoked before each retry (attempt, exception, delay_ms)

        Returns:
            The operation's result

        Raises:
            TransientStorageError: If every attempt failed transiently
            Exception: Any non-transient error, unchanged
        """
        attempt = 0
        max_attempts = self._config.max_attempts

        with self._tracer.span("syn2mas.retry.run", {ATTR_OPERATION: operation_name}):
            while True:
                try:
                    if self._timeout_s is None:
                        result = await operation()
                    else:
                        result = await asyncio.wait_for(operation(), timeout=self._timeout_s)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if not is_transient(e):
                        raise

                    attempt += 1
                    if attempt >= max_attempts:
                        logger.error(
                            "Exhausted %d attempts for '%s': %s",
                            max_attempts,
                            operation_name,
                            e,
                        )
                        raise TransientStorageError(
                            operation=operation_name,
                            reason=str(e) or type(e).__name__,
                            attempts=attempt,
                        ) from e

                    delay_ms = self._config.get_delay_ms(attempt - 1)
                    logger.warning(
                        "Transient error in '%s' (attempt %d/%d): %s. Retrying in %.1fs",
                        operation_name,
                        attempt,
                        max_attempts,
                        e,
                        delay_ms / 1000.0,
                    )
                    if on_retry is not None:
                        on_retry(attempt, e, delay_ms)
                    await self._sleep(delay_ms / 1000.0)
                    continue

                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result


__all__ = [
    "RetryPolicy",
    "TRANSIENT_SQLSTATES",
    "is_transient",
]
