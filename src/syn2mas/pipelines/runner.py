"""
Pipeline runner: streams legacy rows and turns them into batches.

`PipelineRunner.batches()` is a lazy async generator. It keeps a single
server-side cursor open on the source database, filtered by the checkpoint
with keyset pagination, and for every chunk of ``batch_size`` rows:

1. parses the rows into legacy records,
2. looks up the parent identifiers the records reference,
3. allocates (and persists) the identifiers the records own,
4. transforms the records on a bounded thread pool, preserving order,

then yields the batch. The next chunk is only pulled once the consumer asks
for it, i.e. after the previous batch was committed.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Mapping, Sequence
from concurrent.futures import Executor
from typing import Any

import sqlalchemy as sa

from syn2mas.connections import ConnectionManager
from syn2mas.exceptions import (
    DanglingReferenceError,
    MigrationCancelledError,
    RowError,
    TransientStorageError,
)
from syn2mas.identity import IdentityMapper, MappingKey, ResolvedIds
from syn2mas.observability import (
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    Tracer,
    create_tracer,
)
from syn2mas.pipelines.base import (
    Batch,
    EntityPipeline,
    LegacyRecord,
    RejectedRow,
    TransformedUnit,
)
from syn2mas.retry import RetryPolicy, is_transient

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Run-wide cancellation flag.

    Pipelines check it between batches; a batch that is being committed
    finishes (or rolls back) first.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, entity_type: str | None = None) -> None:
        if self._event.is_set():
            raise MigrationCancelledError(entity_type)

    async def wait(self) -> None:
        await self._event.wait()


def keyset_query(pipeline: EntityPipeline, after: Sequence[Any] | None) -> sa.Select[Any]:
    """Wrap a pipeline's source query with keyset pagination."""
    subq = pipeline.source_query().subquery("source_rows")
    order_columns = [subq.c[column] for column in pipeline.order_by]
    query = sa.select(subq).order_by(*order_columns)
    if after is not None:
        if len(order_columns) == 1:
            query = query.where(order_columns[0] > after[0])
        else:
            query = query.where(sa.tuple_(*order_columns) > sa.tuple_(*after))
    return query


class PipelineRunner:
    """
    Produces the batches of one entity pipeline.

    Example:
        >>> runner = PipelineRunner(pipeline, connections, mapper, batch_size=1000)
        >>> async for batch in runner.batches(checkpoint.last_key):
        ...     await writer.commit(batch)
    """

    def __init__(
        self,
        pipeline: EntityPipeline,
        connections: ConnectionManager,
        mapper: IdentityMapper,
        *,
        batch_size: int = 1000,
        executor: Executor | None = None,
        transform_workers: int = 1,
        retry: RetryPolicy | None = None,
        cancellation: CancellationToken | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the runner.

        Args:
            pipeline: The entity pipeline to run
            connections: Connection manager for source access
            mapper: Identity mapper for identifier resolution
            batch_size: Rows per chunk
            executor: Thread pool for transforms (None = transform inline)
            transform_workers: Number of slices a chunk is split into
            retry: Retry policy for re-opening the source cursor after transient errors
            cancellation: Run-wide cancellation token
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self.pipeline = pipeline
        self._connections = connections
        self._mapper = mapper
        self._batch_size = batch_size
        self._executor = executor
        self._workers = max(1, transform_workers)
        self._retry = retry or RetryPolicy()
        self._cancellation = cancellation or CancellationToken()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def batches(self, after: Sequence[Any] | None = None) -> AsyncIterator[Batch]:
        """
        Stream the batches of rows after the ordering key ``after``.

        A transient failure of the source cursor re-opens it after the last
        batch handed out, which the consumer has committed by then.

        Raises:
            MigrationCancelledError: If cancellation was requested between batches
            TransientStorageError: If the source keeps failing
        """
        entity_type = self.pipeline.entity_type
        position: tuple[Any, ...] | None = tuple(after) if after is not None else None
        sequence = 0
        attempt = 0
        config = self._retry.config

        while True:
            try:
                async with self._connections.acquire_source() as source:
                    stmt = keyset_query(self.pipeline, position).execution_options(
                        yield_per=self._batch_size
                    )
                    result = await source.stream(stmt)
                    async for partition in result.mappings().partitions(self._batch_size):
                        self._cancellation.raise_if_cancelled(entity_type)
                        batch = await self.prepare(partition, sequence)
                        attempt = 0
                        yield batch
                        position = batch.last_key
                        sequence += 1
                return
            except Exception as e:
                if isinstance(e, RowError) or not is_transient(e):
                    raise
                attempt += 1
                if attempt >= config.max_attempts:
                    raise TransientStorageError(
                        operation=f"{entity_type}.extract",
                        reason=str(e),
                        attempts=attempt,
                    ) from e
                delay_ms = config.get_delay_ms(attempt - 1)
                logger.warning(
                    "Source cursor for %s failed (attempt %d/%d): %s. Re-opening in %.1fs",
                    entity_type,
                    attempt,
                    config.max_attempts,
                    e,
                    delay_ms / 1000.0,
                )
                await asyncio.sleep(delay_ms / 1000.0)

    async def prepare(self, rows: Sequence[Mapping[str, Any]], sequence: int) -> Batch:
        """Turn one chunk of source rows into a batch."""
        pipeline = self.pipeline
        with self._tracer.span(
            "syn2mas.pipeline.prepare",
            {ATTR_ENTITY_TYPE: pipeline.entity_type, ATTR_BATCH_SIZE: len(rows)},
        ):
            order: list[tuple[int, LegacyRecord | RejectedRow]] = []
            parsed: list[tuple[int, LegacyRecord, tuple[Any, ...]]] = []
            for index, row in enumerate(rows):
                ordering_key = pipeline.ordering_key(row)
                try:
                    record = pipeline.parse(row)
                    parsed.append((index, record, ordering_key))
                except RowError as e:
                    order.append(
                        (index, RejectedRow(pipeline.row_legacy_key(row), ordering_key, e))
                    )

            ids, accepted = await self._resolve(parsed, order)
            transformed = await self._transform([record for _, record, _ in accepted], ids)
            for (index, record, ordering_key), outcome in zip(accepted, transformed, strict=True):
                owned = tuple((key, ids[key]) for key in pipeline.allocations(record))
                if isinstance(outcome, RowError):
                    outcome = RejectedRow(
                        pipeline.record_legacy_key(record), ordering_key, outcome, owned
                    )
                else:
                    outcome = dataclasses.replace(outcome, owned=owned)
                order.append((index, outcome))

            order.sort(key=lambda item: item[0])
            units = [item for _, item in order if isinstance(item, TransformedUnit)]
            rejected = [item for _, item in order if isinstance(item, RejectedRow)]
            return Batch(
                entity_type=pipeline.entity_type,
                sequence=sequence,
                units=units,
                rejected=rejected,
                last_key=pipeline.ordering_key(rows[-1]),
                rows_read=len(rows),
            )

    async def _resolve(
        self,
        parsed: list[tuple[int, LegacyRecord, tuple[Any, ...]]],
        order: list[tuple[int, LegacyRecord | RejectedRow]],
    ) -> tuple[ResolvedIds, list[tuple[int, LegacyRecord, tuple[Any, ...]]]]:
        """
        Look up parents, then allocate owned identifiers for records whose
        parents all exist. Records with missing parents are rejected without
        allocating anything.
        """
        pipeline = self.pipeline
        wanted_parents: dict[int, list[MappingKey]] = {}
        by_namespace: defaultdict[str, set[str]] = defaultdict(set)
        candidates: list[tuple[int, LegacyRecord, tuple[Any, ...]]] = []
        for item in parsed:
            index, record, ordering_key = item
            try:
                keys = pipeline.parents(record)
            except RowError as e:
                order.append(
                    (index, RejectedRow(pipeline.record_legacy_key(record), ordering_key, e))
                )
                continue
            wanted_parents[index] = keys
            for namespace, key in keys:
                by_namespace[namespace].add(key)
            candidates.append(item)

        resolved: dict[MappingKey, Any] = {}
        for namespace, keys in by_namespace.items():
            found = await self._mapper.lookup_many(namespace, sorted(keys))
            resolved.update({(namespace, key): value for key, value in found.items()})

        accepted: list[tuple[int, LegacyRecord, tuple[Any, ...]]] = []
        allocations: defaultdict[str, list[str]] = defaultdict(list)
        for item in candidates:
            index, record, ordering_key = item
            missing = [key for key in wanted_parents[index] if key not in resolved]
            if missing:
                namespace, key = missing[0]
                error = DanglingReferenceError(
                    pipeline.entity_type,
                    pipeline.record_legacy_key(record),
                    parent_namespace=namespace,
                    parent_key=key,
                )
                order.append(
                    (index, RejectedRow(pipeline.record_legacy_key(record), ordering_key, error))
                )
                continue
            for namespace, key in pipeline.allocations(record):
                allocations[namespace].append(key)
            accepted.append(item)

        # One mapping write per namespace per chunk.
        for namespace, keys in allocations.items():
            allocated = await self._mapper.resolve_many(namespace, keys)
            resolved.update({(namespace, key): value for key, value in allocated.items()})

        return ResolvedIds(resolved), accepted

    async def _transform(
        self,
        records: list[LegacyRecord],
        ids: ResolvedIds,
    ) -> list[TransformedUnit | RowError]:
        if not records:
            return []
        if self._executor is None or self._workers == 1 or len(records) < 2:
            return _transform_slice(self.pipeline, records, ids)

        size = -(-len(records) // self._workers)
        slices = [records[i : i + size] for i in range(0, len(records), size)]
        loop = asyncio.get_running_loop()
        results = await asyncio.gather(
            *[
                loop.run_in_executor(self._executor, _transform_slice, self.pipeline, part, ids)
                for part in slices
            ]
        )
        return [outcome for part in results for outcome in part]


def _transform_slice(
    pipeline: EntityPipeline,
    records: list[LegacyRecord],
    ids: ResolvedIds,
) -> list[TransformedUnit | RowError]:
    outcomes: list[TransformedUnit | RowError] = []
    for record in records:
        try:
            outcomes.append(pipeline.transform(record, ids))
        except RowError as e:
            outcomes.append(e)
    return outcomes


__all__ = [
    "CancellationToken",
    "PipelineRunner",
    "keyset_query",
]
