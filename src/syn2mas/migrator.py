"""
Migration orchestrator.

The Migrator runs the entity pipelines in dependency order:

1. both databases are pinged and their schema versions checked,
2. the preflight checks run; any error refuses the run,
3. the run lock is taken and the state tables created,
4. pipelines are scheduled with a topological sorter, parents before
   children, with at most ``max_concurrent_pipelines`` running at once,
5. optionally the result is verified with count checks and sampling.

A pipeline that stops on a row error under the strict policy blocks every
pipeline depending on it; any other failure cancels the whole run. A
cancelled or failed run resumes from its checkpoints.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from graphlib import TopologicalSorter
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from syn2mas.config import MigratorConfig
from syn2mas.connections import ConnectionManager
from syn2mas.exceptions import (
    MigrationCancelledError,
    MigrationError,
    PreflightError,
    RowError,
    UnsupportedSchemaError,
    classify_exception,
)
from syn2mas.identity import IdentityMapper
from syn2mas.lock import MigrationLock
from syn2mas.observability import ATTR_DRY_RUN, ATTR_ENTITY_TYPE, Tracer, create_tracer
from syn2mas.pipelines import CancellationToken, EntityPipeline, PipelineRunner, build_pipelines
from syn2mas.pipelines.base import RejectedRow
from syn2mas.report import (
    CheckReport,
    DiscrepancyKind,
    EntityReport,
    EntityStatus,
    ExitStatus,
    MigrationReport,
    ProgressEvent,
    ProgressLogger,
    RowFailure,
)
from syn2mas.repositories import (
    Checkpoint,
    CheckpointStore,
    InMemoryCheckpointStore,
    InMemoryMappingRepository,
    MappingRepository,
    SQLCheckpointStore,
    SQLMappingRepository,
)
from syn2mas.retry import RetryPolicy
from syn2mas.schema import PreflightChecker, SchemaCompatibilityChecker
from syn2mas.tables import STATE_TABLES, state_metadata
from syn2mas.verifier import Verifier
from syn2mas.writer import BatchWriter

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Awaitable[None] | None]


@dataclass
class _RunContext:
    connections: ConnectionManager
    mapper: IdentityMapper
    checkpoints: CheckpointStore
    writer: BatchWriter
    verifier: Verifier
    retry: RetryPolicy
    executor: Executor
    report: MigrationReport


def _describe(error: BaseException) -> dict[str, Any]:
    if isinstance(error, MigrationError):
        return error.to_dict()
    classification = classify_exception(error)
    return {
        "message": str(error) or type(error).__name__,
        "entity_type": None,
        "legacy_key": None,
        "error_code": classification.error_code,
        "classification": classification.to_dict(),
    }


def _dependents(pipelines: Mapping[str, EntityPipeline], entity_type: str) -> list[str]:
    """Every pipeline depending on ``entity_type``, directly or transitively."""
    found: list[str] = []
    frontier = [entity_type]
    while frontier:
        parent = frontier.pop()
        for name, pipeline in pipelines.items():
            if parent in pipeline.depends_on and name not in found:
                found.append(name)
                frontier.append(name)
    return found


class Migrator:
    """
    Runs a migration from a resolved configuration.

    Engines may be passed in (tests, embedding applications); they are not
    disposed by the migrator. Otherwise engines are created from the
    configured URLs for each operation.

    Example:
        >>> migrator = Migrator(config)
        >>> if await migrator.check() != ExitStatus.CHECK_ERRORS:
        ...     report = await migrator.run()
        >>> report.exit_status
        <ExitStatus.SUCCESS: 0>
    """

    def __init__(
        self,
        config: MigratorConfig,
        *,
        source_engine: AsyncEngine | None = None,
        destination_engine: AsyncEngine | None = None,
        tracer: Tracer | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """
        Initialize the migrator.

        Args:
            config: Resolved migration configuration
            source_engine: Engine of the legacy database (created from source_url if None)
            destination_engine: Engine of the destination database (created if None)
            tracer: Optional tracer for tracing
            progress_callback: Called with a ProgressEvent after every batch
        """
        self.config = config
        self._source_engine = source_engine
        self._destination_engine = destination_engine
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._progress_callback = progress_callback
        self._cancellation = CancellationToken()

    def cancel(self, reason: str = "cancelled by operator") -> None:
        """
        Request cancellation of the current run.

        Pipelines stop before their next batch; the batch being committed
        finishes or rolls back first.
        """
        logger.warning("Cancellation requested: %s", reason)
        self._cancellation.cancel(reason)

    @contextlib.asynccontextmanager
    async def _open(self) -> AsyncIterator[ConnectionManager]:
        config = self.config
        connections = ConnectionManager(
            self._source_engine or config.source_url,
            self._destination_engine or config.destination_url,
            source_pool_size=config.source_pool_size,
            destination_pool_size=config.destination_pool_size,
            connect_timeout_s=config.connect_timeout_s,
            tracer=self._tracer,
        )
        try:
            yield connections
        finally:
            await connections.dispose()

    def _retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            self.config.retry_config(),
            self.config.statement_timeout_s,
            tracer=self._tracer,
        )

    async def _has_state(self, connections: ConnectionManager) -> bool:
        async with connections.destination.connect() as conn:
            present = await conn.run_sync(
                lambda sync_conn: all(
                    sa.inspect(sync_conn).has_table(name) for name in STATE_TABLES
                )
            )
            await conn.rollback()
        return present

    async def _state(
        self, connections: ConnectionManager
    ) -> tuple[MappingRepository, CheckpointStore]:
        """
        Open the mapping and checkpoint stores.

        Outside dry-run the state tables are created if missing. A dry run
        reads existing mappings but keeps its checkpoints in memory, so it
        always compares every eligible row.
        """
        destination = connections.destination
        if not self.config.dry_run:
            async with connections.acquire_destination() as conn:
                await conn.run_sync(state_metadata.create_all)
            return (
                SQLMappingRepository(destination, tracer=self._tracer),
                SQLCheckpointStore(destination, tracer=self._tracer),
            )

        checkpoint_store = InMemoryCheckpointStore(tracer=self._tracer)
        if await self._has_state(connections):
            return SQLMappingRepository(destination, tracer=self._tracer), checkpoint_store
        logger.info("No migration state in the destination; dry run starts from scratch")
        return InMemoryMappingRepository(), checkpoint_store

    async def preflight(self) -> CheckReport:
        """
        Run the connectivity, schema and preflight checks.

        Returns:
            The check report; an unsupported schema is reported as an error

        Raises:
            ConnectivityError: If either database cannot be reached
        """
        report = CheckReport()
        async with self._open() as connections:
            await connections.verify()
            try:
                await SchemaCompatibilityChecker.from_config(
                    connections, self.config, self._tracer
                ).check()
            except UnsupportedSchemaError as e:
                report.error(str(e))
                return report
            await PreflightChecker(connections, self.config, tracer=self._tracer).run(report)
        return report

    async def check(self) -> ExitStatus:
        """Run the preflight checks and return CHECK_ERRORS, CHECK_WARNINGS or SUCCESS."""
        report = await self.preflight()
        logger.info(
            "Check finished with %d error(s) and %d warning(s)",
            len(report.errors),
            len(report.warnings),
        )
        return report.exit_status

    async def run(self) -> MigrationReport:
        """
        Run the migration.

        Fatal errors are not raised; they are recorded in the report, whose
        exit status tells the outcome.

        Returns:
            The migration report
        """
        config = self.config
        report = MigrationReport(dry_run=config.dry_run)
        pipelines = build_pipelines(config)
        for entity_type in pipelines:
            report.entity(entity_type)

        logger.info(
            "Starting %smigration of %s",
            "dry-run " if config.dry_run else "",
            ", ".join(pipelines) or "nothing",
        )
        with self._tracer.span("syn2mas.migrator.run", {ATTR_DRY_RUN: config.dry_run}):
            try:
                async with self._open() as connections:
                    await self._run(connections, pipelines, report)
            except MigrationError as e:
                report.fatal_error = _describe(e)
                logger.error("Migration aborted: %s", e)
            finally:
                report.finished_at = datetime.now(UTC)
                # A cancellation applies to one run only.
                self._cancellation = CancellationToken()

        logger.info("Migration finished with status %s", report.exit_status.name)
        return report

    async def _run(
        self,
        connections: ConnectionManager,
        pipelines: dict[str, EntityPipeline],
        report: MigrationReport,
    ) -> None:
        config = self.config
        await connections.verify()
        await SchemaCompatibilityChecker.from_config(connections, config, self._tracer).check()
        report.check = await PreflightChecker(connections, config, tracer=self._tracer).run()
        if report.check.errors:
            raise PreflightError(report.check.errors)

        lock = MigrationLock(connections.destination, config.lock_key, tracer=self._tracer)
        async with lock.hold():
            mappings, checkpoint_store = await self._state(connections)
            retry = self._retry_policy()
            mapper = IdentityMapper(
                mappings,
                cache_size=config.mapping_cache_size,
                dry_run=config.dry_run,
                retry=retry,
                tracer=self._tracer,
            )
            await mapper.initialize()
            verifier = Verifier(connections, mapper, mappings, tracer=self._tracer)

            with ThreadPoolExecutor(
                max_workers=config.transform_workers,
                thread_name_prefix="syn2mas-transform",
            ) as executor:
                context = _RunContext(
                    connections=connections,
                    mapper=mapper,
                    checkpoints=checkpoint_store,
                    writer=BatchWriter(
                        connections, checkpoint_store, retry, mapper=mapper, tracer=self._tracer
                    ),
                    verifier=verifier,
                    retry=retry,
                    executor=executor,
                    report=report,
                )
                async with ProgressLogger(report, config.progress_log_interval_s):
                    await self._schedule(pipelines, context)

            completed = all(
                entity.status is EntityStatus.COMPLETED for entity in report.entities.values()
            )
            if config.verify_after and not config.dry_run and completed:
                await self._verify(verifier, pipelines, report)

    async def _schedule(self, pipelines: dict[str, EntityPipeline], context: _RunContext) -> None:
        report = context.report
        sorter: TopologicalSorter[str] = TopologicalSorter(
            {
                name: [parent for parent in pipeline.depends_on if parent in pipelines]
                for name, pipeline in pipelines.items()
            }
        )
        sorter.prepare()
        ready: deque[str] = deque()
        running: dict[asyncio.Task[None], str] = {}
        limit = self.config.max_concurrent_pipelines

        try:
            while sorter.is_active():
                ready.extend(sorter.get_ready())
                while ready and len(running) < limit:
                    entity_type = ready.popleft()
                    entity = report.entity(entity_type)
                    if entity.status.is_terminal:
                        sorter.done(entity_type)
                        continue
                    if self._cancellation.cancelled:
                        entity.status = EntityStatus.CANCELLED
                        entity.message = self._cancellation.reason
                        sorter.done(entity_type)
                        continue
                    task = asyncio.create_task(
                        self._run_pipeline(pipelines[entity_type], context),
                        name=f"syn2mas-{entity_type}",
                    )
                    running[task] = entity_type
                if not running:
                    continue

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    entity_type = running.pop(task)
                    task.result()
                    entity = report.entity(entity_type)
                    if entity.status is not EntityStatus.COMPLETED:
                        self._block_dependents(pipelines, entity_type, report)
                    sorter.done(entity_type)
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

    def _block_dependents(
        self,
        pipelines: Mapping[str, EntityPipeline],
        entity_type: str,
        report: MigrationReport,
    ) -> None:
        # Dependents of an aborted pipeline are blocked; anything else stopping
        # a pipeline also stops the run.
        parent = report.entity(entity_type)
        if parent.status is EntityStatus.ABORTED:
            status = EntityStatus.BLOCKED
            message = f"parent pipeline {entity_type} was aborted"
        else:
            status = EntityStatus.CANCELLED
            message = f"parent pipeline {entity_type} {parent.status.value}"
        for name in _dependents(pipelines, entity_type):
            entity = report.entity(name)
            if entity.status is EntityStatus.PENDING:
                entity.status = status
                entity.message = message
                logger.warning("Pipeline %s %s: %s", name, status.value, message)

    async def _run_pipeline(self, pipeline: EntityPipeline, context: _RunContext) -> None:
        config = self.config
        entity_type = pipeline.entity_type
        entity = context.report.entity(entity_type)
        entity.status = EntityStatus.RUNNING
        entity.started_at = datetime.now(UTC)

        try:
            with self._tracer.span(
                "syn2mas.migrator.pipeline",
                {ATTR_ENTITY_TYPE: entity_type, ATTR_DRY_RUN: config.dry_run},
            ):
                checkpoint = await context.checkpoints.load(entity_type)
                if checkpoint is not None and checkpoint.completed:
                    entity.status = EntityStatus.COMPLETED
                    entity.resumed_from = checkpoint.last_key
                    entity.message = "already completed"
                    logger.info("Pipeline %s already completed; skipping", entity_type)
                    return
                if checkpoint is None:
                    checkpoint = Checkpoint(entity_type=entity_type)
                elif checkpoint.last_key is not None:
                    entity.resumed_from = checkpoint.last_key
                    logger.info(
                        "Resuming %s after %s (%d rows already committed)",
                        entity_type,
                        checkpoint.last_key,
                        checkpoint.rows_committed,
                    )

                await self._drain(pipeline, checkpoint, entity, context)

                if not config.dry_run:
                    await context.checkpoints.mark_completed(entity_type)
                entity.status = EntityStatus.COMPLETED
                logger.info(
                    "Pipeline %s completed: read=%d written=%d already_applied=%d skipped=%d",
                    entity_type,
                    entity.rows_read,
                    entity.rows_written,
                    entity.rows_already_applied,
                    entity.rows_skipped,
                )
        except RowError as e:
            entity.status = EntityStatus.ABORTED
            entity.message = str(e)
            entity.errors.append(
                RowFailure(entity_type, e.legacy_key or "", e.error_code, e.message)
            )
            logger.error("Pipeline %s aborted on row error: %s", entity_type, e)
        except MigrationCancelledError:
            entity.status = EntityStatus.CANCELLED
            entity.message = self._cancellation.reason
            logger.warning("Pipeline %s cancelled", entity_type)
        except Exception as e:
            entity.status = EntityStatus.FAILED
            entity.message = str(e)
            if context.report.fatal_error is None:
                context.report.fatal_error = _describe(e)
            logger.error("Pipeline %s failed: %s", entity_type, e, exc_info=True)
            self._cancellation.cancel(f"pipeline {entity_type} failed")
        finally:
            entity.finished_at = datetime.now(UTC)

    async def _drain(
        self,
        pipeline: EntityPipeline,
        checkpoint: Checkpoint,
        entity: EntityReport,
        context: _RunContext,
    ) -> None:
        config = self.config
        strict = pipeline.is_strict
        runner = PipelineRunner(
            pipeline,
            context.connections,
            context.mapper,
            batch_size=config.batch_size,
            executor=context.executor,
            transform_workers=config.transform_workers,
            retry=context.retry,
            cancellation=self._cancellation,
            tracer=self._tracer,
        )

        async with contextlib.aclosing(runner.batches(checkpoint.last_key)) as batches:
            async for batch in batches:
                entity.rows_read += batch.rows_read
                if config.dry_run:
                    await context.mapper.release(
                        entry for row in batch.rejected for entry in row.owned
                    )
                    if strict and batch.rejected:
                        raise batch.rejected[0].error
                    discrepancies = await context.verifier.compare_batch(batch)
                    context.report.discrepancies.extend(discrepancies)
                    # Missing rows are the ones a real run would write.
                    entity.rows_written += sum(
                        1 for d in discrepancies if d.kind is DiscrepancyKind.MISSING
                    )
                    entity.rows_already_applied += batch.record_count - len(discrepancies)
                    checkpoint = checkpoint.advance(batch.last_key, batch.rows_read)
                    rejected = list(batch.rejected)
                else:
                    result = await context.writer.commit(batch, checkpoint, strict=strict)
                    checkpoint = result.checkpoint
                    entity.rows_written += result.rows_written
                    entity.rows_already_applied += result.rows_already_applied
                    entity.batches_committed += 1
                    rejected = batch.rejected + result.rejected

                self._record_rejections(entity, rejected)
                await self._emit(
                    ProgressEvent.from_report(entity, checkpoint.last_key, config.dry_run)
                )

    def _record_rejections(self, entity: EntityReport, rejected: list[RejectedRow]) -> None:
        for row in rejected:
            error = row.error
            entity.rows_skipped += 1
            entity.errors.append(
                RowFailure(entity.entity_type, row.legacy_key, error.error_code, error.message)
            )
            logger.log(
                error.severity.log_level,
                "Skipped %s row %s: %s",
                entity.entity_type,
                row.legacy_key,
                error.message,
            )

    async def _emit(self, event: ProgressEvent) -> None:
        logger.debug(
            "Batch committed for %s: read=%d written=%d skipped=%d checkpoint=%s",
            event.entity_type,
            event.rows_read,
            event.rows_written,
            event.rows_skipped,
            event.checkpoint,
        )
        if self._progress_callback is None:
            return
        outcome = self._progress_callback(event)
        if outcome is not None:
            await outcome

    async def _verify(
        self,
        verifier: Verifier,
        pipelines: Mapping[str, EntityPipeline],
        report: MigrationReport,
    ) -> None:
        report.count_checks = await verifier.count_checks(pipelines.values())
        for pipeline in pipelines.values():
            report.discrepancies.extend(await verifier.sample(pipeline, self.config.sample_size))

    async def verify(self, sample_size: int | None = None) -> MigrationReport:
        """
        Verify a finished migration with count checks and sampling.

        Args:
            sample_size: Mapping entries re-read per entity (config.sample_size if None)

        Returns:
            A report holding only count checks and discrepancies
        """
        report = MigrationReport()
        pipelines = build_pipelines(self.config)
        size = self.config.sample_size if sample_size is None else sample_size
        with self._tracer.span("syn2mas.migrator.verify", {}):
            try:
                async with self._open() as connections:
                    await connections.verify()
                    if not await self._has_state(connections):
                        raise MigrationError(
                            "No migration state in the destination database",
                            suggested_action="Run the migration before verifying it",
                        )
                    mappings = SQLMappingRepository(connections.destination, tracer=self._tracer)
                    mapper = IdentityMapper(
                        mappings,
                        cache_size=self.config.mapping_cache_size,
                        dry_run=True,
                        retry=self._retry_policy(),
                        tracer=self._tracer,
                    )
                    verifier = Verifier(connections, mapper, mappings, tracer=self._tracer)
                    report.count_checks = await verifier.count_checks(pipelines.values())
                    for pipeline in pipelines.values():
                        report.discrepancies.extend(await verifier.sample(pipeline, size))
            except MigrationError as e:
                report.fatal_error = _describe(e)
                logger.error("Verification aborted: %s", e)
            finally:
                report.finished_at = datetime.now(UTC)
        return report

    async def reset_state(self) -> None:
        """
        Drop the identifier mappings and checkpoints.

        Only meant for after a verified migration: a later run would allocate
        new identifiers for rows that are already migrated.

        Raises:
            MigrationLockError: If a migration is running
        """
        async with self._open() as connections:
            await connections.verify()
            lock = MigrationLock(connections.destination, self.config.lock_key, tracer=self._tracer)
            async with lock.hold():
                async with connections.acquire_destination() as conn:
                    await conn.run_sync(state_metadata.drop_all)
        logger.warning("Migration state dropped from the destination database")


__all__ = ["Migrator", "ProgressCallback"]
