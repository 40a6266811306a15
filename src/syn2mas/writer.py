"""
Batch writer: commits transformed batches to the destination database.

A batch is written in one destination transaction:

1. For every destination table (parents first), rows whose primary keys are
   already present are read back. Identical rows count as already applied;
   a differing row is a consistency violation and aborts the run.
2. The remaining rows are inserted with one executemany per table.
3. The entity's checkpoint is advanced in the same transaction.

If the destination rejects the batch with any other integrity error, the
transaction is rolled back and the batch is re-submitted one unit per
transaction, so that only the offending legacy rows are rejected. Each unit
advances the checkpoint with its own commit.

Identifier mappings owned by a rejected row are released before the
checkpoint moves past it, unless the destination already holds the row
they identify.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection

from syn2mas.connections import ConnectionManager
from syn2mas.exceptions import ConsistencyViolationError, ValidationError
from syn2mas.identity import IdentityMapper, MappingKey
from syn2mas.observability import (
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    ATTR_ROWS_SKIPPED,
    ATTR_ROWS_WRITTEN,
    Tracer,
    create_tracer,
)
from syn2mas.pipelines.base import Batch, RejectedRow, TransformedRecord, TransformedUnit
from syn2mas.repositories._connection import chunked
from syn2mas.repositories.checkpoint import Checkpoint, CheckpointStore
from syn2mas.retry import RetryPolicy
from syn2mas.tables import DESTINATION_WRITE_ORDER, NAMESPACE_TABLES, destination_table

logger = logging.getLogger(__name__)


def normalize_value(value: Any) -> Any:
    """
    Normalize a column value for comparison.

    Naive datetimes (as returned by SQLite) are taken to be UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return value


def normalize_key(values: Iterable[Any]) -> tuple[Any, ...]:
    return tuple(normalize_value(value) for value in values)


def diff_row(
    existing: Mapping[str, Any],
    expected: Mapping[str, Any],
) -> dict[str, tuple[Any, Any]]:
    """Return column -> (existing, expected) for every differing column of ``expected``."""
    differences: dict[str, tuple[Any, Any]] = {}
    for column, value in expected.items():
        current = existing.get(column)
        if normalize_value(current) != normalize_value(value):
            differences[column] = (current, value)
    return differences


async def fetch_existing(
    conn: AsyncConnection,
    table: sa.Table,
    keys: Sequence[tuple[Any, ...]],
) -> dict[tuple[Any, ...], Mapping[str, Any]]:
    """
    Read the rows of ``table`` whose primary keys are among ``keys``.

    Returns:
        Normalized primary key -> row mapping
    """
    pk_columns = list(table.primary_key.columns)
    found: dict[tuple[Any, ...], Mapping[str, Any]] = {}
    for chunk in chunked(dict.fromkeys(keys)):
        if len(pk_columns) == 1:
            condition = pk_columns[0].in_([key[0] for key in chunk])
        else:
            condition = sa.tuple_(*pk_columns).in_(list(chunk))
        result = await conn.execute(sa.select(table).where(condition))
        for row in result.mappings():
            found[normalize_key(row[column.name] for column in pk_columns)] = row
    return found


def group_by_table(units: Iterable[TransformedUnit]) -> dict[str, list[TransformedRecord]]:
    grouped: defaultdict[str, list[TransformedRecord]] = defaultdict(list)
    for unit in units:
        for record in unit.records:
            grouped[record.table].append(record)
    return {name: grouped[name] for name in DESTINATION_WRITE_ORDER if name in grouped}


@dataclass
class CommitResult:
    """
    Outcome of committing one batch.

    Attributes:
        checkpoint: The checkpoint after the batch
        rows_written: Destination rows inserted
        rows_already_applied: Destination rows found present and identical
        units_committed: Legacy rows whose destination rows are committed
        rejected: Units rejected by the destination during per-unit isolation
        isolated: Whether the batch fell back to per-unit transactions
    """

    checkpoint: Checkpoint
    rows_written: int = 0
    rows_already_applied: int = 0
    units_committed: int = 0
    rejected: list[RejectedRow] = field(default_factory=list)
    isolated: bool = False


class BatchWriter:
    """
    Writes batches to the destination in checkpointed transactions.

    Example:
        >>> writer = BatchWriter(connections, checkpoint_store, retry, mapper=mapper)
        >>> result = await writer.commit(batch, checkpoint, strict=False)
        >>> checkpoint = result.checkpoint
    """

    def __init__(
        self,
        connections: ConnectionManager,
        checkpoints: CheckpointStore,
        retry: RetryPolicy | None = None,
        *,
        mapper: IdentityMapper | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._connections = connections
        self._checkpoints = checkpoints
        self._retry = retry or RetryPolicy()
        self._mapper = mapper
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def commit(self, batch: Batch, checkpoint: Checkpoint, *, strict: bool) -> CommitResult:
        """
        Commit a batch and advance the checkpoint past it.

        Args:
            batch: The batch to write
            checkpoint: The entity's checkpoint before the batch
            strict: Abort on the first rejected row instead of skipping it

        Returns:
            The commit result, holding the new checkpoint

        Raises:
            RowError: In strict mode, for the first rejected row
            ConsistencyViolationError: If a present row differs from the batch
            TransientStorageError: If the destination keeps failing
        """
        owned = [entry for row in batch.rejected for entry in row.owned]
        if owned:
            await self._retry.run(
                lambda: self._release_unwritten(owned), f"{batch.entity_type}.release"
            )
        if strict and batch.rejected:
            # Nothing of the chunk is committed.
            raise batch.rejected[0].error

        with self._tracer.span(
            "syn2mas.writer.commit",
            {ATTR_ENTITY_TYPE: batch.entity_type, ATTR_BATCH_SIZE: len(batch.units)},
        ) as span:
            # Units rejected by an earlier attempt stay rejected on retries.
            rejected: dict[str, RejectedRow] = {}
            result = await self._retry.run(
                lambda: self._commit_once(batch, checkpoint, strict, rejected),
                f"{batch.entity_type}.commit",
            )
            if span is not None:
                span.set_attribute(ATTR_ROWS_WRITTEN, result.rows_written)
                span.set_attribute(ATTR_ROWS_SKIPPED, len(result.rejected))
            return result

    async def _commit_once(
        self,
        batch: Batch,
        checkpoint: Checkpoint,
        strict: bool,
        rejected: dict[str, RejectedRow],
    ) -> CommitResult:
        if rejected:
            return await self._commit_isolated(batch, checkpoint, strict, rejected)

        target = checkpoint.advance(batch.last_key, batch.rows_read)
        try:
            async with self._connections.acquire_destination() as conn:
                written, applied = await self._write_units(conn, batch.entity_type, batch.units)
                await self._checkpoints.save(conn, target)
        except IntegrityError as e:
            logger.warning(
                "Batch %d of %s rejected by the destination (%s); retrying row by row",
                batch.sequence,
                batch.entity_type,
                _constraint_message(e),
            )
            return await self._commit_isolated(batch, checkpoint, strict, rejected)

        return CommitResult(
            checkpoint=target,
            rows_written=written,
            rows_already_applied=applied,
            units_committed=len(batch.units),
        )

    async def _commit_isolated(
        self,
        batch: Batch,
        checkpoint: Checkpoint,
        strict: bool,
        rejected: dict[str, RejectedRow],
    ) -> CommitResult:
        result = CommitResult(checkpoint=checkpoint, isolated=True)
        current = checkpoint
        for unit in batch.units:
            if unit.legacy_key in rejected:
                result.rejected.append(rejected[unit.legacy_key])
                continue
            candidate = current.advance(unit.ordering_key, 1)
            try:
                async with self._connections.acquire_destination() as conn:
                    written, applied = await self._write_units(conn, batch.entity_type, [unit])
                    await self._checkpoints.save(conn, candidate)
            except IntegrityError as e:
                error = ValidationError(
                    batch.entity_type,
                    unit.legacy_key,
                    f"rejected by the destination: {_constraint_message(e)}",
                )
                row = RejectedRow(unit.legacy_key, unit.ordering_key, error, unit.owned)
                await self._release_unwritten(unit.owned)
                rejected[unit.legacy_key] = row
                if strict:
                    raise error from e
                logger.warning("Skipping %s row %s: %s", batch.entity_type, unit.legacy_key, error)
                result.rejected.append(row)
                continue
            current = candidate
            result.rows_written += written
            result.rows_already_applied += applied
            result.units_committed += 1

        # Covers rejected rows after the last committed unit.
        final = checkpoint.advance(batch.last_key, batch.rows_read)
        async with self._connections.acquire_destination() as conn:
            await self._checkpoints.save(conn, final)
        result.checkpoint = final
        return result

    async def _release_unwritten(self, owned: Sequence[tuple[MappingKey, UUID]]) -> None:
        """Release the mappings among ``owned`` whose destination row does not exist."""
        if self._mapper is None or not owned:
            return
        by_table: defaultdict[str, list[tuple[Any, ...]]] = defaultdict(list)
        for (namespace, _), value in owned:
            by_table[NAMESPACE_TABLES[namespace]].append((value,))
        present: set[Any] = set()
        async with self._connections.acquire_destination() as conn:
            for table_name, keys in by_table.items():
                existing = await fetch_existing(conn, destination_table(table_name), keys)
                present.update(key[0] for key in existing)
        unwritten = [(key, value) for key, value in owned if normalize_value(value) not in present]
        if unwritten:
            await self._mapper.release(unwritten)

    async def _write_units(
        self,
        conn: AsyncConnection,
        entity_type: str,
        units: Sequence[TransformedUnit],
    ) -> tuple[int, int]:
        written = 0
        applied = 0
        owner = {id(record): unit for unit in units for record in unit.records}
        for table_name, records in group_by_table(units).items():
            table = destination_table(table_name)
            existing = await fetch_existing(conn, table, [r.primary_key for r in records])
            new_rows: list[dict[str, Any]] = []
            for record in records:
                current = existing.get(normalize_key(record.primary_key))
                if current is None:
                    new_rows.append(record.values)
                    continue
                differences = diff_row(current, record.values)
                if differences:
                    raise ConsistencyViolationError(
                        entity_type,
                        table_name,
                        record.primary_key,
                        differences,
                        legacy_key=owner[id(record)].legacy_key,
                    )
                applied += 1
            if new_rows:
                await conn.execute(table.insert(), new_rows)
                written += len(new_rows)
        return written, applied


def _constraint_message(error: IntegrityError) -> str:
    return str(error.orig).splitlines()[0] if error.orig is not None else str(error)


__all__ = [
    "BatchWriter",
    "CommitResult",
    "diff_row",
    "fetch_existing",
    "group_by_table",
    "normalize_key",
    "normalize_value",
]
