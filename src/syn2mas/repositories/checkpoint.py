"""
Checkpoint store for resumable entity pipelines.

A checkpoint records, per entity type, the ordering key of the last legacy
row whose destination rows are committed. It is written in the same
destination transaction as the rows it covers, so it can never get ahead of
committed work. A resumed run reads it and extracts only rows after it.
"""

import asyncio
import dataclasses
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from syn2mas.ids import decode_ordering_key, encode_ordering_key
from syn2mas.observability import ATTR_CHECKPOINT_KEY, ATTR_ENTITY_TYPE, Tracer, create_tracer
from syn2mas.repositories._connection import dialect_insert, execute_with_connection
from syn2mas.tables import checkpoints


@dataclass(frozen=True)
class Checkpoint:
    """
    Progress marker of one entity pipeline.

    Attributes:
        entity_type: Entity type the checkpoint belongs to
        last_key: Ordering key of the last committed legacy row (None = nothing yet)
        rows_committed: Legacy rows covered by the checkpoint so far
        committed_at: When the checkpoint was last advanced
        completed_at: When the pipeline finished (None while in progress)
    """

    entity_type: str
    last_key: tuple[Any, ...] | None = None
    rows_committed: int = 0
    committed_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def completed(self) -> bool:
        return self.completed_at is not None

    def advance(self, last_key: tuple[Any, ...] | None, rows: int) -> "Checkpoint":
        """Return the checkpoint moved past ``rows`` more legacy rows ending at ``last_key``."""
        return dataclasses.replace(
            self,
            last_key=last_key if last_key is not None else self.last_key,
            rows_committed=self.rows_committed + rows,
            committed_at=datetime.now(UTC),
        )


@runtime_checkable
class CheckpointStore(Protocol):
    """
    Protocol for checkpoint stores.

    `save` runs on a connection owned by the caller so that the checkpoint
    commits or rolls back together with the batch it covers.
    """

    async def load(self, entity_type: str) -> Checkpoint | None:
        """
        Load the checkpoint of an entity type.

        Returns:
            The checkpoint, or None if the entity type never committed a batch
        """
        ...

    async def save(self, conn: AsyncConnection | None, checkpoint: Checkpoint) -> None:
        """
        Persist a checkpoint on the caller's transaction.

        Args:
            conn: Connection holding the batch transaction
            checkpoint: Checkpoint to store (upsert)
        """
        ...

    async def mark_completed(self, entity_type: str) -> None:
        """Record that an entity pipeline extracted and committed every row."""
        ...

    async def list_all(self) -> list[Checkpoint]:
        """Return every stored checkpoint ordered by entity type."""
        ...

    async def clear(self, entity_type: str | None = None) -> None:
        """Delete one checkpoint, or all of them."""
        ...


def _from_row(row: Any) -> Checkpoint:
    return Checkpoint(
        entity_type=row.entity_type,
        last_key=decode_ordering_key(row.last_key),
        rows_committed=row.rows_committed or 0,
        committed_at=row.committed_at,
        completed_at=row.completed_at,
    )


class SQLCheckpointStore:
    """
    Checkpoint store backed by the ``syn2mas_checkpoints`` table.

    Works on PostgreSQL and SQLite.

    Example:
        >>> store = SQLCheckpointStore(engine)
        >>> async with engine.begin() as conn:
        ...     await write_rows(conn)
        ...     await store.save(conn, checkpoint.advance(last_key, 1000))
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        """
        Initialize the checkpoint store.

        Args:
            conn: Database connection or engine of the destination database
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    async def load(self, entity_type: str) -> Checkpoint | None:
        with self._tracer.span(
            "syn2mas.checkpoint.load",
            {ATTR_ENTITY_TYPE: entity_type},
        ):
            query = sa.select(checkpoints).where(checkpoints.c.entity_type == entity_type)
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query)
                row = result.fetchone()
            return _from_row(row) if row else None

    async def save(self, conn: AsyncConnection | None, checkpoint: Checkpoint) -> None:
        encoded = (
            encode_ordering_key(checkpoint.last_key) if checkpoint.last_key is not None else None
        )
        with self._tracer.span(
            "syn2mas.checkpoint.save",
            {
                ATTR_ENTITY_TYPE: checkpoint.entity_type,
                ATTR_CHECKPOINT_KEY: encoded or "",
            },
        ):
            target = conn if conn is not None else self.conn
            values = {
                "entity_type": checkpoint.entity_type,
                "last_key": encoded,
                "rows_committed": checkpoint.rows_committed,
                "committed_at": checkpoint.committed_at or datetime.now(UTC),
                "completed_at": checkpoint.completed_at,
            }
            stmt = dialect_insert(target, checkpoints).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[checkpoints.c.entity_type],
                set_={
                    "last_key": stmt.excluded.last_key,
                    "rows_committed": stmt.excluded.rows_committed,
                    "committed_at": stmt.excluded.committed_at,
                    "completed_at": stmt.excluded.completed_at,
                },
            )
            async with execute_with_connection(target, transactional=True) as c:
                await c.execute(stmt)

    async def mark_completed(self, entity_type: str) -> None:
        with self._tracer.span(
            "syn2mas.checkpoint.mark_completed",
            {ATTR_ENTITY_TYPE: entity_type},
        ):
            now = datetime.now(UTC)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    sa.update(checkpoints)
                    .where(checkpoints.c.entity_type == entity_type)
                    .values(completed_at=now)
                )
                if result.rowcount == 0:
                    # Nothing was ever extracted for this entity type.
                    await conn.execute(
                        dialect_insert(conn, checkpoints)
                        .values(
                            entity_type=entity_type,
                            last_key=None,
                            rows_committed=0,
                            committed_at=now,
                            completed_at=now,
                        )
                        .on_conflict_do_nothing(index_elements=[checkpoints.c.entity_type])
                    )

    async def list_all(self) -> list[Checkpoint]:
        with self._tracer.span("syn2mas.checkpoint.list_all", {}):
            query = sa.select(checkpoints).order_by(checkpoints.c.entity_type)
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query)
                return [_from_row(row) for row in result.fetchall()]

    async def clear(self, entity_type: str | None = None) -> None:
        with self._tracer.span(
            "syn2mas.checkpoint.clear",
            {ATTR_ENTITY_TYPE: entity_type or "*"},
        ):
            stmt = sa.delete(checkpoints)
            if entity_type is not None:
                stmt = stmt.where(checkpoints.c.entity_type == entity_type)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(stmt)


class InMemoryCheckpointStore:
    """
    In-memory checkpoint store for tests and dry runs.

    `save` ignores the connection argument, so a checkpoint saved here is
    not rolled back with the caller's transaction.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._checkpoints: dict[str, Checkpoint] = {}
        self._lock = asyncio.Lock()

    async def load(self, entity_type: str) -> Checkpoint | None:
        with self._tracer.span("syn2mas.checkpoint.load", {ATTR_ENTITY_TYPE: entity_type}):
            async with self._lock:
                return self._checkpoints.get(entity_type)

    async def save(self, conn: AsyncConnection | None, checkpoint: Checkpoint) -> None:
        with self._tracer.span(
            "syn2mas.checkpoint.save",
            {ATTR_ENTITY_TYPE: checkpoint.entity_type},
        ):
            async with self._lock:
                if checkpoint.committed_at is None:
                    checkpoint = dataclasses.replace(checkpoint, committed_at=datetime.now(UTC))
                self._checkpoints[checkpoint.entity_type] = checkpoint

    async def mark_completed(self, entity_type: str) -> None:
        async with self._lock:
            now = datetime.now(UTC)
            current = self._checkpoints.get(entity_type) or Checkpoint(
                entity_type=entity_type, committed_at=now
            )
            self._checkpoints[entity_type] = dataclasses.replace(current, completed_at=now)

    async def list_all(self) -> list[Checkpoint]:
        async with self._lock:
            return [self._checkpoints[name] for name in sorted(self._checkpoints)]

    async def clear(self, entity_type: str | None = None) -> None:
        async with self._lock:
            if entity_type is None:
                self._checkpoints.clear()
            else:
                self._checkpoints.pop(entity_type, None)


__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SQLCheckpointStore",
]
