"""
Connection management for the source and destination databases.

The source database is only ever read. Every source connection is wrapped in
a ReadOnlyConnection that rejects anything but SELECT statements, opens a
read-only transaction where the database supports it, and always rolls back.

Destination connections are handed out inside a transaction that commits on
a clean exit and rolls back on any exception, including task cancellation.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncResult, create_async_engine
from sqlalchemy.sql import Select
from sqlalchemy.sql.elements import TextClause

from syn2mas.exceptions import ConnectivityError, ReadOnlyViolationError
from syn2mas.observability import ATTR_DB_SIDE, ATTR_DB_SYSTEM, Tracer, create_tracer

logger = logging.getLogger(__name__)

_READ_PREFIXES = ("select", "with")


def _check_read_only(statement: Any) -> None:
    if isinstance(statement, Select):
        return
    if isinstance(statement, TextClause):
        sql = statement.text.lstrip().lower()
        if sql.startswith(_READ_PREFIXES):
            return
        raise ReadOnlyViolationError(statement.text.strip())
    raise ReadOnlyViolationError(str(statement))


class ReadOnlyConnection:
    """
    Wrapper around an AsyncConnection that only runs SELECT statements.

    Only `execute`, `stream` and `scalar` are exposed; any other statement
    type raises ReadOnlyViolationError before reaching the database.
    """

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn

    @property
    def dialect(self) -> sa.Dialect:
        return self._conn.dialect

    async def execute(self, statement: Any, parameters: Any = None) -> sa.CursorResult[Any]:
        _check_read_only(statement)
        return await self._conn.execute(statement, parameters)

    async def scalar(self, statement: Any, parameters: Any = None) -> Any:
        _check_read_only(statement)
        return await self._conn.scalar(statement, parameters)

    async def stream(self, statement: Any, parameters: Any = None) -> AsyncResult[Any]:
        _check_read_only(statement)
        return await self._conn.stream(statement, parameters)


def _enable_foreign_keys(dbapi_connection: Any, _: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(url: str, pool_size: int, connect_timeout_s: float) -> AsyncEngine:
    parsed = make_url(url)
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if parsed.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"timeout": connect_timeout_s}
    else:
        kwargs.update(
            pool_size=pool_size,
            max_overflow=0,
            pool_timeout=connect_timeout_s,
        )
        if parsed.get_driver_name() == "asyncpg":
            kwargs["connect_args"] = {"timeout": connect_timeout_s}
    engine = create_async_engine(url, **kwargs)
    if parsed.get_backend_name() == "sqlite":
        # SQLite enforces foreign keys per connection.
        sa.event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    return engine


class ConnectionManager:
    """
    Owns the source and destination connection pools.

    Pools are bounded and shared by every pipeline of a run. Engines created
    by the manager are disposed by `dispose()`; engines passed in are left to
    their owner.

    Example:
        >>> manager = ConnectionManager(source_url, destination_url)
        >>> await manager.verify()
        >>> async with manager.acquire_source() as src:
        ...     result = await src.execute(select(users))
        >>> async with manager.acquire_destination() as dst:
        ...     await dst.execute(insert(mas_users), rows)
        >>> await manager.dispose()
    """

    def __init__(
        self,
        source: str | AsyncEngine,
        destination: str | AsyncEngine,
        *,
        source_pool_size: int = 4,
        destination_pool_size: int = 8,
        connect_timeout_s: float = 10.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the connection manager.

        Args:
            source: Source database URL or engine
            destination: Destination database URL or engine
            source_pool_size: Connections in the source pool
            destination_pool_size: Connections in the destination pool
            connect_timeout_s: Timeout for establishing connections
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._owned: list[AsyncEngine] = []
        self.source = self._engine(source, source_pool_size, connect_timeout_s)
        self.destination = self._engine(destination, destination_pool_size, connect_timeout_s)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def _engine(self, target: str | AsyncEngine, pool_size: int, timeout: float) -> AsyncEngine:
        if isinstance(target, AsyncEngine):
            return target
        engine = _build_engine(target, pool_size, timeout)
        self._owned.append(engine)
        return engine

    @asynccontextmanager
    async def acquire_source(self) -> AsyncIterator[ReadOnlyConnection]:
        """
        Acquire a read-only source connection.

        The transaction is always rolled back on exit.
        """
        async with self.source.connect() as conn:
            if conn.dialect.name == "postgresql":
                await conn.execute(
                    sa.text("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
                )
            try:
                yield ReadOnlyConnection(conn)
            finally:
                await conn.rollback()

    @asynccontextmanager
    async def acquire_destination(self) -> AsyncIterator[AsyncConnection]:
        """
        Acquire a destination connection inside a transaction.

        Commits on clean exit; rolls back on any exception, including
        asyncio.CancelledError.
        """
        async with self.destination.begin() as conn:
            yield conn

    async def _ping(self, side: str, engine: AsyncEngine) -> None:
        with self._tracer.span(
            "syn2mas.connections.ping",
            {ATTR_DB_SIDE: side, ATTR_DB_SYSTEM: engine.dialect.name},
        ):
            try:
                async with engine.connect() as conn:
                    await conn.execute(sa.text("SELECT 1"))
            except (DBAPIError, OSError, TimeoutError) as e:
                raise ConnectivityError(side, str(e).splitlines()[0] if str(e) else repr(e)) from e

    async def verify(self) -> None:
        """
        Check that both databases are reachable.

        Raises:
            ConnectivityError: If either database cannot be reached
        """
        await self._ping("source", self.source)
        await self._ping("destination", self.destination)
        logger.info(
            "Connected to source (%s) and destination (%s)",
            self.source.dialect.name,
            self.destination.dialect.name,
        )

    async def dispose(self) -> None:
        """Release the pools of engines created by this manager."""
        for engine in self._owned:
            await engine.dispose()
        self._owned.clear()


__all__ = [
    "ConnectionManager",
    "ReadOnlyConnection",
]
