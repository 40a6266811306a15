"""
Unit tests for the single-instance run lock.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from syn2mas.exceptions import MigrationLockError
from syn2mas.lock import MigrationLock, key_to_lock_id


def postgres_engine(acquired: bool) -> tuple[MagicMock, AsyncMock]:
    conn = AsyncMock()
    result = MagicMock()
    result.scalar.return_value = acquired
    conn.execute.return_value = result
    engine = MagicMock()
    engine.dialect.name = "postgresql"
    engine.connect = AsyncMock(return_value=conn)
    return engine, conn


class TestKeyToLockId:
    def test_stable(self):
        assert key_to_lock_id("syn2mas") == key_to_lock_id("syn2mas")
        assert key_to_lock_id("syn2mas") != key_to_lock_id("syn2mas-staging")

    def test_fits_signed_bigint(self):
        for key in ("syn2mas", "a", "", "x" * 1000):
            assert 0 <= key_to_lock_id(key) < 2**63


class TestMigrationLock:
    @pytest.mark.asyncio
    async def test_noop_on_sqlite(self, destination_engine: AsyncEngine):
        async with MigrationLock(destination_engine, enable_tracing=False).hold() as info:
            assert info.key == "syn2mas"
            assert info.lock_id is None

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        engine, conn = postgres_engine(acquired=True)

        async with MigrationLock(engine, "run", enable_tracing=False).hold() as info:
            assert info.lock_id == key_to_lock_id("run")
            conn.close.assert_not_awaited()

        statements = [str(call.args[0]) for call in conn.execute.await_args_list]
        assert "pg_try_advisory_lock" in statements[0]
        assert "pg_advisory_unlock" in statements[1]
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_held_elsewhere(self):
        engine, conn = postgres_engine(acquired=False)

        with pytest.raises(MigrationLockError):
            async with MigrationLock(engine, enable_tracing=False).hold():
                pytest.fail("lock should not be acquired")

        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_released_when_body_fails(self):
        engine, conn = postgres_engine(acquired=True)

        with pytest.raises(RuntimeError):
            async with MigrationLock(engine, enable_tracing=False).hold():
                raise RuntimeError("pipeline failed")

        assert conn.execute.await_count == 2
        conn.close.assert_awaited_once()
