"""
Unit tests for the retry policy.

Tests cover:
- Which exceptions count as transient
- Retrying with backoff until success
- Promotion to TransientStorageError once attempts are exhausted
- Per-attempt timeouts
"""

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from syn2mas.exceptions import RetryConfig, TransientStorageError, ValidationError
from syn2mas.observability import MockTracer
from syn2mas.retry import RetryPolicy, is_transient


class FakeDriverError(Exception):
    def __init__(self, sqlstate: str | None = None) -> None:
        super().__init__(f"driver error {sqlstate}")
        self.sqlstate = sqlstate


def operational(sqlstate: str | None = None) -> OperationalError:
    return OperationalError("SELECT 1", {}, FakeDriverError(sqlstate))


class TestIsTransient:
    def test_deadlock_and_serialization_failure(self):
        assert is_transient(operational("40P01"))
        assert is_transient(operational("40001"))

    def test_connection_exception_class(self):
        assert is_transient(operational("08006"))

    def test_operational_error_without_sqlstate(self):
        assert is_transient(operational())

    def test_integrity_error_is_not_transient(self):
        error = IntegrityError("INSERT", {}, FakeDriverError("23505"))
        assert not is_transient(error)

    def test_timeouts_and_resets(self):
        assert is_transient(TimeoutError())
        assert is_transient(ConnectionResetError())
        assert is_transient(TransientStorageError("op", "reset"))

    def test_other_errors(self):
        assert not is_transient(ValueError("boom"))
        assert not is_transient(ValidationError("users", "@a:b", "bad"))


class TestRetryPolicy:
    @pytest.fixture
    def sleeps(self) -> list[float]:
        return []

    @pytest.fixture
    def policy(self, sleeps: list[float]) -> RetryPolicy:
        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        return RetryPolicy(
            RetryConfig(max_attempts=3, base_delay_ms=10, max_delay_ms=100, jitter_factor=0.0),
            sleep=fake_sleep,
            enable_tracing=False,
        )

    @pytest.mark.asyncio
    async def test_returns_result_on_first_success(self, policy: RetryPolicy, sleeps):
        async def operation() -> int:
            return 42

        assert await policy.run(operation, "answer") == 42
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, policy: RetryPolicy, sleeps):
        calls = 0

        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise operational("40P01")
            return "ok"

        retries: list[int] = []
        result = await policy.run(flaky, "flaky", on_retry=lambda n, e, d: retries.append(n))

        assert result == "ok"
        assert calls == 3
        assert retries == [1, 2]
        assert sleeps == [0.01, 0.02]

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_transient_storage_error(self, policy: RetryPolicy):
        async def always_fails() -> None:
            raise operational("08006")

        with pytest.raises(TransientStorageError) as exc_info:
            await policy.run(always_fails, "users.commit")

        assert exc_info.value.attempts == 3
        assert exc_info.value.operation == "users.commit"
        assert isinstance(exc_info.value.__cause__, OperationalError)

    @pytest.mark.asyncio
    async def test_non_transient_errors_propagate_immediately(self, policy: RetryPolicy, sleeps):
        calls = 0

        async def broken() -> None:
            nonlocal calls
            calls += 1
            raise ValueError("not retryable")

        with pytest.raises(ValueError, match="not retryable"):
            await policy.run(broken, "broken")
        assert calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_transient(self, sleeps):
        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        policy = RetryPolicy(
            RetryConfig(max_attempts=2, base_delay_ms=1, max_delay_ms=1, jitter_factor=0.0),
            timeout_s=0.01,
            sleep=fake_sleep,
            enable_tracing=False,
        )

        async def hangs() -> None:
            await asyncio.sleep(10)

        with pytest.raises(TransientStorageError):
            await policy.run(hangs, "hangs")
        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_records_span(self):
        tracer = MockTracer()
        policy = RetryPolicy(tracer=tracer)

        async def operation() -> None:
            return None

        await policy.run(operation, "mapping.fetch.users")
        assert tracer.span_names == ["syn2mas.retry.run"]
        assert tracer.spans[0][1] == {"syn2mas.operation": "mapping.fetch.users"}
