"""
Connection handling helpers for repository implementations.

`execute_with_connection` lets repositories accept either an AsyncEngine
(open a connection or transaction per call) or an AsyncConnection (run on
the caller's transaction). `dialect_insert` picks the INSERT construct of
the connection's dialect so that ON CONFLICT clauses can be used on both
PostgreSQL and SQLite.
"""

from collections.abc import AsyncIterator, Iterable, Iterator, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

T = TypeVar("T")

# Keeps IN lists below SQLite's bound parameter limit.
IN_CLAUSE_CHUNK = 500


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in transaction (begin).
                       If False, use bare connection (connect).
                       Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection ready for execute() calls

    Note:
        When passing an existing AsyncConnection, the transactional parameter
        has no effect; the caller owns the transaction.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


def dialect_insert(conn: AsyncConnection | AsyncEngine, table: sa.Table) -> Any:
    """
    Build a dialect-specific INSERT for ``table``.

    Returns the PostgreSQL or SQLite insert construct, both of which support
    ``on_conflict_do_nothing`` / ``on_conflict_do_update``.
    """
    name = conn.dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Unsupported database dialect: {name}")


def chunked(items: Iterable[T], size: int = IN_CLAUSE_CHUNK) -> Iterator[Sequence[T]]:
    chunk: list[T] = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
