"""
Single-instance run lock.

On PostgreSQL the migrator holds a session-level advisory lock on the
destination database for the whole run, so that two syn2mas processes can
never migrate into the same database concurrently. Advisory locks are
released automatically if the holding connection drops.

Other dialects have no equivalent; the lock is then a no-op.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from syn2mas.exceptions import MigrationLockError
from syn2mas.observability import Tracer, create_tracer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        key: The string key used to identify the lock
        lock_id: The numeric advisory lock id (None when locking is unsupported)
        acquired_at: When the lock was acquired
    """

    key: str
    lock_id: int | None
    acquired_at: datetime


def key_to_lock_id(key: str) -> int:
    """
    Convert a string key to a 63-bit advisory lock id.

    Uses the first 8 bytes of the SHA-256 digest, masked to fit a signed
    PostgreSQL bigint.
    """
    hash_bytes = hashlib.sha256(key.encode()).digest()
    return int.from_bytes(hash_bytes[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF


class MigrationLock:
    """
    Advisory lock held on a dedicated destination connection.

    Example:
        >>> lock = MigrationLock(destination_engine, "syn2mas")
        >>> async with lock.hold():
        ...     await run_pipelines()
    """

    def __init__(
        self,
        engine: AsyncEngine,
        key: str = "syn2mas",
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self._key = key
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[LockInfo]:
        """
        Acquire the lock without waiting and hold it until the block exits.

        Raises:
            MigrationLockError: If another session holds the lock
        """
        if self._engine.dialect.name != "postgresql":
            logger.debug(
                "Advisory locks are not supported on %s; running without a run lock",
                self._engine.dialect.name,
            )
            yield LockInfo(key=self._key, lock_id=None, acquired_at=datetime.now(UTC))
            return

        lock_id = key_to_lock_id(self._key)
        with self._tracer.span("syn2mas.lock.acquire", {"lock.key": self._key, "lock.id": lock_id}):
            conn = await self._engine.connect()
            try:
                # Session-level lock; commit so no transaction stays open.
                result = await conn.execute(
                    text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
                )
                acquired = bool(result.scalar())
                await conn.commit()
            except BaseException:
                await conn.close()
                raise
            if not acquired:
                await conn.close()
                raise MigrationLockError(self._key)

        logger.debug("Acquired advisory lock: key=%s, lock_id=%d", self._key, lock_id)
        try:
            yield LockInfo(key=self._key, lock_id=lock_id, acquired_at=datetime.now(UTC))
        finally:
            with self._tracer.span("syn2mas.lock.release", {"lock.key": self._key}):
                try:
                    await conn.execute(
                        text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": lock_id}
                    )
                    await conn.commit()
                finally:
                    await conn.close()
            logger.debug("Released advisory lock: key=%s", self._key)


__all__ = [
    "LockInfo",
    "MigrationLock",
    "key_to_lock_id",
]
