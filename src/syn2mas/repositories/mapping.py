"""
Persistent store of legacy -> destination identifier mappings.

Mappings live in the ``syn2mas_id_mappings`` table of the destination
database, keyed by ``(namespace, legacy_id)``. They are inserted with
"insert if absent" semantics: when two writers race on the same key, the
first insert wins and both read back the same destination identifier.
"""

import asyncio
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from syn2mas.observability import ATTR_BATCH_SIZE, ATTR_NAMESPACE, Tracer, create_tracer
from syn2mas.repositories._connection import chunked, dialect_insert, execute_with_connection
from syn2mas.tables import id_mappings


@runtime_checkable
class MappingRepository(Protocol):
    """Protocol for identifier mapping repositories."""

    async def fetch(self, namespace: str, legacy_ids: Iterable[str]) -> dict[str, UUID]:
        """Return the persisted mappings among ``legacy_ids``."""
        ...

    async def insert_missing(self, namespace: str, candidates: Mapping[str, UUID]) -> None:
        """Persist candidate mappings, leaving existing ones untouched."""
        ...

    async def delete(self, namespace: str, mappings: Mapping[str, UUID]) -> int:
        """Delete mappings whose destination identifier still matches; return the count."""
        ...

    async def max_destination_id(self) -> UUID | None:
        """Return the largest destination identifier ever persisted."""
        ...

    async def sample(self, namespace: str, size: int) -> list[tuple[str, UUID]]:
        """Return up to ``size`` random mappings of a namespace."""
        ...

    async def count(self, namespace: str) -> int:
        ...

    async def clear(self) -> None:
        """Delete every mapping."""
        ...


class SQLMappingRepository:
    """
    Mapping repository backed by the ``syn2mas_id_mappings`` table.

    Example:
        >>> repo = SQLMappingRepository(engine)
        >>> await repo.insert_missing("users", {"@alice:example.com": new_id})
        >>> await repo.fetch("users", ["@alice:example.com"])
        {'@alice:example.com': UUID('...')}
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    async def fetch(self, namespace: str, legacy_ids: Iterable[str]) -> dict[str, UUID]:
        keys = list(dict.fromkeys(legacy_ids))
        found: dict[str, UUID] = {}
        if not keys:
            return found
        with self._tracer.span(
            "syn2mas.mapping.fetch",
            {ATTR_NAMESPACE: namespace, ATTR_BATCH_SIZE: len(keys)},
        ):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                for chunk in chunked(keys):
                    result = await conn.execute(
                        sa.select(id_mappings.c.legacy_id, id_mappings.c.destination_id).where(
                            id_mappings.c.namespace == namespace,
                            id_mappings.c.legacy_id.in_(chunk),
                        )
                    )
                    for legacy_id, destination_id in result.fetchall():
                        found[legacy_id] = destination_id
        return found

    async def insert_missing(self, namespace: str, candidates: Mapping[str, UUID]) -> None:
        if not candidates:
            return
        with self._tracer.span(
            "syn2mas.mapping.insert_missing",
            {ATTR_NAMESPACE: namespace, ATTR_BATCH_SIZE: len(candidates)},
        ):
            now = datetime.now(UTC)
            rows = [
                {
                    "namespace": namespace,
                    "legacy_id": legacy_id,
                    "destination_id": destination_id,
                    "created_at": now,
                }
                for legacy_id, destination_id in candidates.items()
            ]
            async with execute_with_connection(self.conn, transactional=True) as conn:
                stmt = dialect_insert(conn, id_mappings).on_conflict_do_nothing(
                    index_elements=[id_mappings.c.namespace, id_mappings.c.legacy_id]
                )
                await conn.execute(stmt, rows)

    async def delete(self, namespace: str, mappings: Mapping[str, UUID]) -> int:
        if not mappings:
            return 0
        deleted = 0
        with self._tracer.span(
            "syn2mas.mapping.delete",
            {ATTR_NAMESPACE: namespace, ATTR_BATCH_SIZE: len(mappings)},
        ):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                for legacy_id, destination_id in mappings.items():
                    result = await conn.execute(
                        sa.delete(id_mappings).where(
                            id_mappings.c.namespace == namespace,
                            id_mappings.c.legacy_id == legacy_id,
                            id_mappings.c.destination_id == destination_id,
                        )
                    )
                    deleted += result.rowcount
        return deleted

    async def max_destination_id(self) -> UUID | None:
        # ORDER BY instead of MAX(): PostgreSQL has no max() aggregate for uuid.
        query = (
            sa.select(id_mappings.c.destination_id)
            .order_by(id_mappings.c.destination_id.desc())
            .limit(1)
        )
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            return result.scalar_one_or_none()

    async def sample(self, namespace: str, size: int) -> list[tuple[str, UUID]]:
        with self._tracer.span(
            "syn2mas.mapping.sample",
            {ATTR_NAMESPACE: namespace, ATTR_BATCH_SIZE: size},
        ):
            query = (
                sa.select(id_mappings.c.legacy_id, id_mappings.c.destination_id)
                .where(id_mappings.c.namespace == namespace)
                .order_by(sa.func.random())
                .limit(size)
            )
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query)
                return [(row[0], row[1]) for row in result.fetchall()]

    async def count(self, namespace: str) -> int:
        query = (
            sa.select(sa.func.count())
            .select_from(id_mappings)
            .where(id_mappings.c.namespace == namespace)
        )
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            return int(result.scalar_one())

    async def clear(self) -> None:
        with self._tracer.span("syn2mas.mapping.clear", {}):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(sa.delete(id_mappings))


class InMemoryMappingRepository:
    """
    In-memory mapping repository for tests and dry runs without state tables.
    """

    def __init__(self) -> None:
        self._mappings: dict[tuple[str, str], UUID] = {}
        self._lock = asyncio.Lock()

    async def fetch(self, namespace: str, legacy_ids: Iterable[str]) -> dict[str, UUID]:
        async with self._lock:
            return {
                legacy_id: self._mappings[(namespace, legacy_id)]
                for legacy_id in legacy_ids
                if (namespace, legacy_id) in self._mappings
            }

    async def insert_missing(self, namespace: str, candidates: Mapping[str, UUID]) -> None:
        async with self._lock:
            for legacy_id, destination_id in candidates.items():
                self._mappings.setdefault((namespace, legacy_id), destination_id)

    async def delete(self, namespace: str, mappings: Mapping[str, UUID]) -> int:
        deleted = 0
        async with self._lock:
            for legacy_id, destination_id in mappings.items():
                if self._mappings.get((namespace, legacy_id)) == destination_id:
                    del self._mappings[(namespace, legacy_id)]
                    deleted += 1
        return deleted

    async def max_destination_id(self) -> UUID | None:
        async with self._lock:
            return max(self._mappings.values(), default=None)

    async def sample(self, namespace: str, size: int) -> list[tuple[str, UUID]]:
        async with self._lock:
            entries = [
                (legacy_id, destination_id)
                for (ns, legacy_id), destination_id in self._mappings.items()
                if ns == namespace
            ]
        return entries[:size]

    async def count(self, namespace: str) -> int:
        async with self._lock:
            return sum(1 for ns, _ in self._mappings if ns == namespace)

    async def clear(self) -> None:
        async with self._lock:
            self._mappings.clear()


__all__ = [
    "InMemoryMappingRepository",
    "MappingRepository",
    "SQLMappingRepository",
]
