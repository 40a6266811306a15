"""
Run reports, progress events and exit statuses.

A MigrationReport is built up while the migrator runs: one EntityReport per
pipeline, plus verification results. Its exit status is derived from its
contents, so callers never have to interpret the counters themselves.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

logger = logging.getLogger(__name__)


class ExitStatus(IntEnum):
    """Process exit statuses of a migration or check run."""

    SUCCESS = 0
    FATAL = 1
    COMPLETED_WITH_SKIPS = 2
    PARTIAL_FAILURE = 3
    CHECK_ERRORS = 10
    CHECK_WARNINGS = 11


class EntityStatus(Enum):
    """
    Lifecycle of one entity pipeline within a run.

    Attributes:
        PENDING: Not started yet.
        RUNNING: Extracting and committing batches.
        COMPLETED: Every eligible row was committed or skipped.
        ABORTED: Stopped by a row error under the strict error policy.
        BLOCKED: Not run because a parent pipeline did not complete.
        CANCELLED: Stopped between batches by a cancellation request.
        FAILED: Stopped by a fatal error.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (EntityStatus.PENDING, EntityStatus.RUNNING)


@dataclass(frozen=True)
class RowFailure:
    """A legacy row that was not migrated."""

    entity_type: str
    legacy_key: str
    error_code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "legacy_key": self.legacy_key,
            "error_code": self.error_code,
            "message": self.message,
        }


@dataclass
class EntityReport:
    """
    Counters and outcome of one entity pipeline.

    Attributes:
        entity_type: Entity type of the pipeline
        status: Current status
        rows_read: Legacy rows extracted in this run
        rows_written: Destination rows inserted in this run
        rows_already_applied: Destination rows found already present and identical
        rows_skipped: Legacy rows rejected under the skip-and-report policy
        batches_committed: Destination transactions committed in this run
        errors: Rejected rows with their reasons
        resumed_from: Checkpoint ordering key the run resumed from
        message: Reason for an aborted, blocked or failed status
    """

    entity_type: str
    status: EntityStatus = EntityStatus.PENDING
    rows_read: int = 0
    rows_written: int = 0
    rows_already_applied: int = 0
    rows_skipped: int = 0
    batches_committed: int = 0
    errors: list[RowFailure] = field(default_factory=list)
    resumed_from: tuple[Any, ...] | None = None
    message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "status": self.status.value,
            "rows_read": self.rows_read,
            "rows_written": self.rows_written,
            "rows_already_applied": self.rows_already_applied,
            "rows_skipped": self.rows_skipped,
            "batches_committed": self.batches_committed,
            "errors": [error.to_dict() for error in self.errors],
            "resumed_from": list(self.resumed_from) if self.resumed_from is not None else None,
            "message": self.message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class DiscrepancyKind(Enum):
    MISSING = "missing"
    """Expected destination row is absent."""

    EXTRA = "extra"
    """Mapped legacy row no longer exists in the source."""

    MISMATCHED = "mismatched"
    """Destination row differs from the transformed legacy row."""


@dataclass(frozen=True)
class Discrepancy:
    """One difference found by the verifier."""

    entity_type: str
    table: str
    kind: DiscrepancyKind
    legacy_key: str | None = None
    primary_key: tuple[Any, ...] | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "table": self.table,
            "kind": self.kind.value,
            "legacy_key": self.legacy_key,
            "primary_key": [str(v) for v in self.primary_key] if self.primary_key else None,
            "details": {key: repr(value) for key, value in self.details.items()},
        }


@dataclass(frozen=True)
class CountCheck:
    """
    Row count comparison of one entity type.

    ``expected`` is the number of eligible source rows times the multiplier;
    ``actual`` the number of destination rows reachable through the mapping.
    """

    entity_type: str
    table: str
    source_count: int
    destination_count: int
    multiplier: int = 1

    @property
    def expected(self) -> int:
        return self.source_count * self.multiplier

    @property
    def ok(self) -> bool:
        return self.destination_count == self.expected

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "table": self.table,
            "source_count": self.source_count,
            "destination_count": self.destination_count,
            "multiplier": self.multiplier,
            "ok": self.ok,
        }


@dataclass
class CheckReport:
    """
    Outcome of the preflight checks.

    Errors block a migration; warnings describe data that will not be
    migrated, or migrated in a degraded form.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def error(self, message: str) -> None:
        logger.error("Check failed: %s", message)
        self.errors.append(message)

    def warn(self, message: str) -> None:
        logger.warning("Check warning: %s", message)
        self.warnings.append(message)

    @property
    def exit_status(self) -> ExitStatus:
        if self.errors:
            return ExitStatus.CHECK_ERRORS
        if self.warnings:
            return ExitStatus.CHECK_WARNINGS
        return ExitStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "exit_status": int(self.exit_status),
        }


@dataclass
class MigrationReport:
    """
    Report of a whole run.

    Example:
        >>> report = await migrator.run()
        >>> report.exit_status
        <ExitStatus.SUCCESS: 0>
        >>> report.entities["users"].rows_written
        3
    """

    dry_run: bool = False
    entities: dict[str, EntityReport] = field(default_factory=dict)
    discrepancies: list[Discrepancy] = field(default_factory=list)
    count_checks: list[CountCheck] = field(default_factory=list)
    check: CheckReport | None = None
    fatal_error: dict[str, Any] | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def entity(self, entity_type: str) -> EntityReport:
        if entity_type not in self.entities:
            self.entities[entity_type] = EntityReport(entity_type=entity_type)
        return self.entities[entity_type]

    @property
    def exit_status(self) -> ExitStatus:
        """
        Derive the exit status.

        A fatal error (including cancellation) wins; then any pipeline that did
        not complete, or a verification failure outside dry-run, makes the run
        a partial failure; then any skipped row.
        """
        if self.fatal_error is not None:
            return ExitStatus.FATAL
        statuses = {entity.status for entity in self.entities.values()}
        if statuses & {EntityStatus.ABORTED, EntityStatus.BLOCKED, EntityStatus.FAILED}:
            return ExitStatus.PARTIAL_FAILURE
        if EntityStatus.CANCELLED in statuses:
            return ExitStatus.FATAL
        if not self.dry_run and (
            self.discrepancies or any(not check.ok for check in self.count_checks)
        ):
            return ExitStatus.PARTIAL_FAILURE
        if any(entity.rows_skipped for entity in self.entities.values()):
            return ExitStatus.COMPLETED_WITH_SKIPS
        return ExitStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "exit_status": int(self.exit_status),
            "entities": {name: entity.to_dict() for name, entity in self.entities.items()},
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "count_checks": [c.to_dict() for c in self.count_checks],
            "check": self.check.to_dict() if self.check else None,
            "fatal_error": self.fatal_error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of one entity pipeline, emitted after every batch."""

    entity_type: str
    rows_read: int
    rows_written: int
    rows_already_applied: int
    rows_skipped: int
    errors: int
    batches_committed: int
    checkpoint: tuple[Any, ...] | None
    dry_run: bool = False

    @classmethod
    def from_report(
        cls,
        report: EntityReport,
        checkpoint: tuple[Any, ...] | None,
        dry_run: bool = False,
    ) -> ProgressEvent:
        return cls(
            entity_type=report.entity_type,
            rows_read=report.rows_read,
            rows_written=report.rows_written,
            rows_already_applied=report.rows_already_applied,
            rows_skipped=report.rows_skipped,
            errors=len(report.errors),
            batches_committed=report.batches_committed,
            checkpoint=checkpoint,
            dry_run=dry_run,
        )


class ProgressLogger:
    """
    Periodically logs the progress of every running pipeline.

    Example:
        >>> async with ProgressLogger(report, interval_s=30.0):
        ...     await run_pipelines()
    """

    def __init__(self, report: MigrationReport, interval_s: float = 30.0) -> None:
        self._report = report
        self._interval_s = interval_s
        self._task: asyncio.Task[None] | None = None
        self._started = time.monotonic()

    async def __aenter__(self) -> ProgressLogger:
        self._started = time.monotonic()
        self._task = asyncio.create_task(self._loop(), name="syn2mas-progress")
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def log_once(self) -> None:
        elapsed = time.monotonic() - self._started
        for entity in self._report.entities.values():
            if entity.status is not EntityStatus.RUNNING:
                continue
            rate = entity.rows_read / elapsed if elapsed > 0 else 0.0
            logger.info(
                "Progress %s: read=%d written=%d already_applied=%d skipped=%d (%.0f rows/s)",
                entity.entity_type,
                entity.rows_read,
                entity.rows_written,
                entity.rows_already_applied,
                entity.rows_skipped,
                rate,
            )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            self.log_once()


__all__ = [
    "CheckReport",
    "CountCheck",
    "Discrepancy",
    "DiscrepancyKind",
    "EntityReport",
    "EntityStatus",
    "ExitStatus",
    "MigrationReport",
    "ProgressEvent",
    "ProgressLogger",
    "RowFailure",
]
