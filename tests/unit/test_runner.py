"""
Unit tests for the PipelineRunner.

Tests cover:
- Keyset pagination from a checkpoint
- Chunking into batches
- Rejection of dangling rows before identifiers are allocated
- Order preservation with threaded transforms
- Cancellation between batches
- Re-opening the source cursor after transient failures
"""

from collections.abc import AsyncIterator, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any

import pytest
from sqlalchemy.exc import OperationalError

from syn2mas.config import MigratorConfig
from syn2mas.connections import ConnectionManager
from syn2mas.exceptions import (
    DanglingReferenceError,
    MigrationCancelledError,
    RetryConfig,
    TransientStorageError,
    ValidationError,
)
from syn2mas.identity import IdentityMapper
from syn2mas.pipelines import (
    CancellationToken,
    DevicesPipeline,
    EntityPipeline,
    PipelineRunner,
    UsersPipeline,
    keyset_query,
)
from syn2mas.pipelines.base import keyed
from syn2mas.repositories import InMemoryMappingRepository
from syn2mas.retry import RetryPolicy


async def collect(runner: PipelineRunner, after: Any = None) -> list:
    return [batch async for batch in runner.batches(after)]


class FlakySource:
    """
    Connection manager whose source cursors fail while ``failures`` remain.

    Each cursor hands out ``fail_after`` partitions before failing.
    """

    def __init__(self, connections: ConnectionManager, failures: int, fail_after: int) -> None:
        self._connections = connections
        self.failures = failures
        self.fail_after = fail_after
        self.opened = 0

    @asynccontextmanager
    async def acquire_source(self) -> AsyncIterator["FlakySource"]:
        async with self._connections.acquire_source() as source:
            self._source = source
            self.opened += 1
            yield self

    async def stream(self, statement: Any) -> "FlakySource":
        self._result = await self._source.stream(statement)
        return self

    def mappings(self) -> "FlakySource":
        return self

    async def partitions(self, size: int) -> AsyncIterator[Sequence[Any]]:
        handed_out = 0
        async for partition in self._result.mappings().partitions(size):
            if self.failures and handed_out == self.fail_after:
                self.failures -= 1
                await self._result.close()
                raise OperationalError("SELECT", {}, ConnectionResetError("connection reset"))
            handed_out += 1
            yield partition


def quick_retry(max_attempts: int) -> RetryPolicy:
    return RetryPolicy(
        RetryConfig(max_attempts=max_attempts, base_delay_ms=1, max_delay_ms=1),
        enable_tracing=False,
    )


@pytest.fixture
def make_runner(
    connections: ConnectionManager, mapper: IdentityMapper
) -> Callable[..., PipelineRunner]:
    def factory(pipeline: EntityPipeline, **kwargs: Any) -> PipelineRunner:
        kwargs.setdefault("batch_size", 2)
        return PipelineRunner(pipeline, connections, mapper, enable_tracing=False, **kwargs)

    return factory


class TestKeysetQuery:
    def test_single_column(self, config: MigratorConfig):
        sql = str(keyset_query(UsersPipeline(config), ("@bob:example.com",)))
        assert "source_rows.name >" in sql
        assert "ORDER BY source_rows.name" in sql

    def test_composite_key_uses_row_comparison(self, config: MigratorConfig):
        sql = str(keyset_query(DevicesPipeline(config), ("@a:example.com", "DEV1")))
        assert "(source_rows.user_id, source_rows.device_id) >" in sql

    def test_without_checkpoint(self, config: MigratorConfig):
        sql = str(keyset_query(UsersPipeline(config), None))
        assert "WHERE source_rows" not in sql


class TestBatches:
    @pytest.mark.asyncio
    async def test_chunks_in_order(self, make_runner, legacy, config: MigratorConfig):
        names = [f"@user{i}:example.com" for i in range(5)]
        await legacy.users(*names)

        batches = await collect(make_runner(UsersPipeline(config)))

        assert [batch.rows_read for batch in batches] == [2, 2, 1]
        assert [batch.sequence for batch in batches] == [0, 1, 2]
        assert [unit.legacy_key for batch in batches for unit in batch.units] == names
        assert batches[0].last_key == ("@user1:example.com",)
        assert batches[0].record_count == 4

    @pytest.mark.asyncio
    async def test_resumes_after_checkpoint(self, make_runner, legacy, config: MigratorConfig):
        await legacy.users("@a:example.com", "@b:example.com", "@c:example.com")

        batches = await collect(make_runner(UsersPipeline(config)), ("@a:example.com",))

        keys = [unit.legacy_key for batch in batches for unit in batch.units]
        assert keys == ["@b:example.com", "@c:example.com"]

    @pytest.mark.asyncio
    async def test_resumes_on_composite_key(self, make_runner, legacy, config: MigratorConfig):
        await legacy.user("@a:example.com")
        for device_id in ("D1", "D2", "D3"):
            await legacy.device("@a:example.com", device_id)
        await make_runner(UsersPipeline(config)).prepare(
            [{"name": "@a:example.com", "user_key": "@a:example.com"}], 0
        )

        batches = await collect(
            make_runner(DevicesPipeline(config)), ("@a:example.com", "D1")
        )

        device_ids = [unit.records[0].values["device_id"] for b in batches for unit in b.units]
        assert device_ids == ["D2", "D3"]

    @pytest.mark.asyncio
    async def test_empty_source(self, make_runner, config: MigratorConfig):
        assert await collect(make_runner(UsersPipeline(config))) == []

    @pytest.mark.asyncio
    async def test_threaded_transform_preserves_order(
        self, make_runner, legacy, config: MigratorConfig
    ):
        names = [f"@user{i:02d}:example.com" for i in range(20)]
        await legacy.users(*names)

        with ThreadPoolExecutor(max_workers=4) as executor:
            runner = make_runner(
                UsersPipeline(config), batch_size=20, executor=executor, transform_workers=4
            )
            (batch,) = await collect(runner)

        assert [unit.legacy_key for unit in batch.units] == names


class TestRejections:
    @pytest.mark.asyncio
    async def test_dangling_rows_allocate_nothing(
        self,
        make_runner,
        legacy,
        config: MigratorConfig,
        mapping_repo: InMemoryMappingRepository,
    ):
        await legacy.user("@alice:example.com")
        await legacy.device("@alice:example.com", "DEV1")
        await legacy.device("@ghost:example.com", "DEV2")
        await make_runner(UsersPipeline(config)).prepare(
            [{"name": "@alice:example.com", "user_key": "@alice:example.com"}], 0
        )

        (batch,) = await collect(make_runner(DevicesPipeline(config)))

        assert len(batch.units) == 1
        (rejected,) = batch.rejected
        assert isinstance(rejected.error, DanglingReferenceError)
        assert rejected.error.parent_key == "@ghost:example.com"
        assert batch.rows_read == 2
        assert await mapping_repo.count("devices") == 1

    @pytest.mark.asyncio
    async def test_invalid_rows_are_rejected_in_place(
        self, make_runner, legacy, config: MigratorConfig
    ):
        await legacy.users("@a:example.com", "@b:other.org", "@c:example.com")

        (batch,) = await collect(make_runner(UsersPipeline(config), batch_size=10))

        assert [unit.legacy_key for unit in batch.units] == ["@a:example.com", "@c:example.com"]
        (rejected,) = batch.rejected
        assert isinstance(rejected.error, ValidationError)
        assert rejected.ordering_key == ("@b:other.org",)
        assert batch.last_key == ("@c:example.com",)

    @pytest.mark.asyncio
    async def test_rejected_rows_carry_their_allocations(
        self, make_runner, legacy, config: MigratorConfig
    ):
        await legacy.users("@a:example.com", "@b:other.org")

        (batch,) = await collect(make_runner(UsersPipeline(config), batch_size=10))

        (unit,) = batch.units
        (rejected,) = batch.rejected
        assert {key for key, _ in unit.owned} == {
            keyed("users", "@a:example.com"),
            keyed("user_passwords", "@a:example.com"),
        }
        assert {key for key, _ in rejected.owned} == {
            keyed("users", "@b:other.org"),
            keyed("user_passwords", "@b:other.org"),
        }


class TestSourceRetries:
    @pytest.mark.asyncio
    async def test_cursor_reopens_after_last_batch(
        self,
        connections: ConnectionManager,
        mapper: IdentityMapper,
        legacy,
        config: MigratorConfig,
    ):
        names = [f"@user{i}:example.com" for i in range(5)]
        await legacy.users(*names)
        source = FlakySource(connections, failures=1, fail_after=1)
        runner = PipelineRunner(
            UsersPipeline(config),
            source,  # type: ignore[arg-type]
            mapper,
            batch_size=2,
            retry=quick_retry(3),
            enable_tracing=False,
        )

        batches = await collect(runner)

        assert source.opened == 2
        assert [unit.legacy_key for batch in batches for unit in batch.units] == names
        assert [batch.sequence for batch in batches] == [0, 1, 2]
        assert batches[1].units[0].legacy_key == "@user2:example.com"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(
        self,
        connections: ConnectionManager,
        mapper: IdentityMapper,
        legacy,
        config: MigratorConfig,
    ):
        await legacy.users("@a:example.com", "@b:example.com")
        source = FlakySource(connections, failures=10, fail_after=0)
        runner = PipelineRunner(
            UsersPipeline(config),
            source,  # type: ignore[arg-type]
            mapper,
            batch_size=2,
            retry=quick_retry(2),
            enable_tracing=False,
        )

        with pytest.raises(TransientStorageError) as exc_info:
            await collect(runner)

        assert exc_info.value.attempts == 2
        assert exc_info.value.operation == "users.extract"
        assert source.opened == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_between_batches(self, make_runner, legacy, config: MigratorConfig):
        await legacy.users("@a:example.com", "@b:example.com", "@c:example.com")
        token = CancellationToken()
        runner = make_runner(UsersPipeline(config), cancellation=token)

        seen = []
        with pytest.raises(MigrationCancelledError):
            async for batch in runner.batches():
                seen.append(batch)
                token.cancel("operator request")

        assert len(seen) == 1
        assert token.reason == "operator request"

    def test_first_reason_is_kept(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"
