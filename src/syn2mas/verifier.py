"""
Verification of migrated data.

- `compare_batch` is the dry-run path: a batch is compared with the
  destination instead of being written.
- `count_checks` compares, per entity type, the number of eligible legacy
  rows with the number of destination rows reachable through the mapping.
- `sample` re-reads random mapped rows from both databases and compares the
  transformed legacy row with what the destination holds.

None of these write to either database.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection

from syn2mas.connections import ConnectionManager
from syn2mas.exceptions import RowError
from syn2mas.identity import IdentityMapper, ResolvedIds
from syn2mas.observability import ATTR_ENTITY_TYPE, Tracer, create_tracer
from syn2mas.pipelines.base import Batch, EntityPipeline, TransformedUnit
from syn2mas.report import CountCheck, Discrepancy, DiscrepancyKind
from syn2mas.repositories.mapping import MappingRepository
from syn2mas.tables import destination_table, id_mappings
from syn2mas.writer import diff_row, fetch_existing, group_by_table, normalize_key

logger = logging.getLogger(__name__)


class Verifier:
    """
    Compares legacy data with the destination.

    Example:
        >>> verifier = Verifier(connections, mapper, mappings)
        >>> checks = await verifier.count_checks(pipelines.values())
        >>> discrepancies = await verifier.sample(pipelines["users"], 100)
    """

    def __init__(
        self,
        connections: ConnectionManager,
        mapper: IdentityMapper,
        mappings: MappingRepository,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._connections = connections
        self._mapper = mapper
        self._mappings = mappings
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def _compare_units(
        self,
        conn: AsyncConnection,
        entity_type: str,
        units: Iterable[TransformedUnit],
    ) -> list[Discrepancy]:
        units = list(units)
        owner = {id(record): unit for unit in units for record in unit.records}
        discrepancies: list[Discrepancy] = []
        for table_name, records in group_by_table(units).items():
            table = destination_table(table_name)
            existing = await fetch_existing(conn, table, [r.primary_key for r in records])
            for record in records:
                legacy_key = owner[id(record)].legacy_key
                current = existing.get(normalize_key(record.primary_key))
                if current is None:
                    discrepancies.append(
                        Discrepancy(
                            entity_type=entity_type,
                            table=table_name,
                            kind=DiscrepancyKind.MISSING,
                            legacy_key=legacy_key,
                            primary_key=record.primary_key,
                        )
                    )
                    continue
                differences = diff_row(current, record.values)
                if differences:
                    discrepancies.append(
                        Discrepancy(
                            entity_type=entity_type,
                            table=table_name,
                            kind=DiscrepancyKind.MISMATCHED,
                            legacy_key=legacy_key,
                            primary_key=record.primary_key,
                            details=differences,
                        )
                    )
        return discrepancies

    async def compare_batch(self, batch: Batch) -> list[Discrepancy]:
        """
        Compare a batch with the destination without writing it.

        Returns:
            One `missing` discrepancy per row that would be inserted and one
            `mismatched` discrepancy per present row that differs
        """
        with self._tracer.span(
            "syn2mas.verifier.compare_batch",
            {ATTR_ENTITY_TYPE: batch.entity_type},
        ):
            async with self._connections.destination.connect() as conn:
                discrepancies = await self._compare_units(conn, batch.entity_type, batch.units)
                await conn.rollback()
            return discrepancies

    async def count_checks(self, pipelines: Iterable[EntityPipeline]) -> list[CountCheck]:
        """Compare eligible source rows with mapped destination rows, per entity type."""
        checks: list[CountCheck] = []
        for pipeline in pipelines:
            with self._tracer.span(
                "syn2mas.verifier.count_check",
                {ATTR_ENTITY_TYPE: pipeline.entity_type},
            ):
                async with self._connections.acquire_source() as source:
                    source_count = (await source.execute(pipeline.count_query())).scalar_one()

                table = destination_table(pipeline.primary_table)
                (pk,) = table.primary_key.columns
                query = (
                    sa.select(sa.func.count())
                    .select_from(table.join(id_mappings, id_mappings.c.destination_id == pk))
                    .where(id_mappings.c.namespace == pipeline.primary_namespace)
                )
                async with self._connections.destination.connect() as conn:
                    destination_count = (await conn.execute(query)).scalar_one()
                    await conn.rollback()

            check = CountCheck(
                entity_type=pipeline.entity_type,
                table=pipeline.primary_table,
                source_count=int(source_count),
                destination_count=int(destination_count),
            )
            if not check.ok:
                logger.warning(
                    "Count mismatch for %s: %d eligible legacy rows, %d rows in %s",
                    pipeline.entity_type,
                    check.source_count,
                    check.destination_count,
                    check.table,
                )
            checks.append(check)
        return checks

    async def sample(self, pipeline: EntityPipeline, size: int) -> list[Discrepancy]:
        """
        Re-read random mapped rows from both databases and compare them.

        Returns:
            `extra` for mapped rows no longer eligible in the source, `missing`
            and `mismatched` for destination rows that do not match
        """
        if size <= 0:
            return []
        with self._tracer.span(
            "syn2mas.verifier.sample",
            {ATTR_ENTITY_TYPE: pipeline.entity_type},
        ):
            entries = await self._mappings.sample(pipeline.primary_namespace, size)
            discrepancies: list[Discrepancy] = []
            for legacy_id, destination_id in entries:
                discrepancies.extend(await self._sample_one(pipeline, legacy_id, destination_id))
            logger.info(
                "Sampled %d %s row(s): %d discrepancies",
                len(entries),
                pipeline.entity_type,
                len(discrepancies),
            )
            return discrepancies

    async def _sample_one(
        self,
        pipeline: EntityPipeline,
        legacy_id: str,
        destination_id: UUID,
    ) -> list[Discrepancy]:
        async with self._connections.acquire_source() as source:
            row = (await source.execute(pipeline.lookup_query(legacy_id))).mappings().first()

        if row is None:
            return [
                Discrepancy(
                    entity_type=pipeline.entity_type,
                    table=pipeline.primary_table,
                    kind=DiscrepancyKind.EXTRA,
                    legacy_key=legacy_id,
                    primary_key=(destination_id,),
                )
            ]

        unit: TransformedUnit | None
        error: RowError | None = None
        try:
            record = pipeline.parse(row)
            wanted = pipeline.allocations(record) + pipeline.parents(record)
            found: dict[tuple[str, str], Any] = {}
            for namespace, key in wanted:
                value = await self._mapper.lookup(namespace, key)
                if value is not None:
                    found[(namespace, key)] = value
            unit = pipeline.transform(record, ResolvedIds(found))
        except (RowError, KeyError) as e:
            unit = None
            error = e if isinstance(e, RowError) else None

        table = destination_table(pipeline.primary_table)
        async with self._connections.destination.connect() as conn:
            if unit is not None:
                discrepancies = await self._compare_units(conn, pipeline.entity_type, [unit])
            else:
                # A rejected row must not have reached the destination.
                existing = await fetch_existing(conn, table, [(destination_id,)])
                discrepancies = []
                if existing:
                    discrepancies.append(
                        Discrepancy(
                            entity_type=pipeline.entity_type,
                            table=pipeline.primary_table,
                            kind=DiscrepancyKind.MISMATCHED,
                            legacy_key=legacy_id,
                            primary_key=(destination_id,),
                            details={"error": str(error) if error else "unresolved identifiers"},
                        )
                    )
            await conn.rollback()
        return discrepancies


__all__ = ["Verifier"]
