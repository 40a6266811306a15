"""
Exceptions raised by the syn2mas migration engine.

Exception Hierarchy:
    MigrationError (base)
    +-- ConnectivityError
    +-- UnsupportedSchemaError
    +-- PreflightError
    +-- MigrationLockError
    +-- ReadOnlyViolationError
    +-- RowError
    |   +-- DanglingReferenceError
    |   +-- ValidationError
    +-- ConsistencyViolationError
    +-- TransientStorageError
    +-- MigrationCancelledError

Error Classification:
    Every exception carries an ErrorClassification describing its severity,
    whether it may be retried, and what an operator should do about it.
    Row-level errors (RowError subclasses) are routed through the entity
    pipeline's error policy; everything else aborts the run.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: Correctness hazard requiring immediate attention.
            Examples: Content drift between runs.
        ERROR: Failure that stops the run or a pipeline.
            Examples: Unreachable database, unsupported schema.
        WARNING: Row-level problem that was skipped and reported.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    """Correctness hazard requiring immediate attention."""

    ERROR = "error"
    """Failure that stops the run or a pipeline."""

    WARNING = "warning"
    """Row-level problem that was skipped and reported."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        ROW: The error concerns a single legacy row; the pipeline's error
            policy decides whether to skip it or abort.
        TRANSIENT: Temporary error that may resolve on retry.
        FATAL: Unrecoverable error; the run stops at its last checkpoint.
    """

    ROW = "row"
    """Single-row problem handled by the error policy."""

    TRANSIENT = "transient"
    """Temporary error that may resolve on retry."""

    FATAL = "fatal"
    """Unrecoverable error requiring the run to stop."""

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic retry of transient errors.

    Implements exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts (including the first one).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff (default 2.0).
        jitter_factor: Random jitter factor (0.0 to 1.0, default 0.1).

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=3)  # ~800ms plus jitter
    """

    max_attempts: int = 5
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)

        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter, not security
            delay = delay + jitter

        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=100.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)

CONNECTIVITY_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=500.0,
    max_delay_ms=10000.0,
    exponential_base=2.0,
    jitter_factor=0.2,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class MigrationError(Exception):
    """
    Base exception for all migration errors.

    Attributes:
        message: Human-readable error description.
        entity_type: Entity type being migrated when the error occurred.
        legacy_key: Legacy identifier of the offending row, if any.
        suggested_action: Suggested action for recovery.
        classification: Error classification metadata.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs and resume once the cause is fixed",
    )

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        legacy_key: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.entity_type = entity_type
        self.legacy_key = legacy_key
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.entity_type:
            parts.append(f"entity_type={self.entity_type}")
        if self.legacy_key is not None:
            parts.append(f"legacy_key={self.legacy_key}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Get the error classification for this exception."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        """Get the severity level of this error."""
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        """Get the recoverability classification of this error."""
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        """Get the unique error code for this exception."""
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        """Get the retry configuration for this error, if applicable."""
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "entity_type": self.entity_type,
            "legacy_key": self.legacy_key,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class ConnectivityError(MigrationError):
    """
    Raised when a database cannot be reached or rejects the credentials.

    Always fatal, and always raised before any data is touched.

    Attributes:
        side: Which database failed ("source" or "destination").
        reason: Underlying driver message.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CONNECTIVITY_ERROR",
        category="connectivity",
        suggested_action="Check the database URL, credentials and network reachability",
    )

    def __init__(self, side: str, reason: str) -> None:
        self.side = side
        self.reason = reason
        super().__init__(
            message=f"Cannot connect to {side} database: {reason}",
            suggested_action="Check connection settings for the " + side + " database",
        )


class UnsupportedSchemaError(MigrationError):
    """
    Raised when a database schema version is outside the supported range.

    Attributes:
        side: Which database was checked.
        detected: Detected schema version (None if no marker was found).
        supported_min: Lowest supported version (inclusive).
        supported_max: Highest supported version (inclusive).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNSUPPORTED_SCHEMA",
        category="preflight",
        suggested_action=(
            "Upgrade the database to a supported schema version, or use a release "
            "of syn2mas that supports the detected version"
        ),
    )

    def __init__(
        self,
        side: str,
        detected: int | None,
        supported_min: int,
        supported_max: int,
    ) -> None:
        self.side = side
        self.detected = detected
        self.supported_min = supported_min
        self.supported_max = supported_max
        found = "no schema version marker" if detected is None else f"version {detected}"
        super().__init__(
            message=(
                f"Unsupported {side} schema: found {found}, "
                f"supported range is {supported_min}..{supported_max}"
            ),
        )


class PreflightError(MigrationError):
    """
    Raised when preflight checks report errors that block a migration.

    Attributes:
        errors: Individual error descriptions.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="PREFLIGHT_FAILED",
        category="preflight",
        suggested_action="Run the preflight check and fix every reported error",
    )

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(message=f"Preflight checks failed with {len(errors)} error(s)")


class MigrationLockError(MigrationError):
    """
    Raised when another migration already holds the run lock.

    Attributes:
        lock_key: Key of the lock that could not be acquired.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_LOCKED",
        category="preflight",
        suggested_action="Wait for the other syn2mas instance to finish, or stop it",
    )

    def __init__(self, lock_key: str) -> None:
        self.lock_key = lock_key
        super().__init__(
            message=f"Could not acquire migration lock '{lock_key}'; another run is active",
        )


class ReadOnlyViolationError(MigrationError):
    """
    Raised when a non-SELECT statement is issued on the source connection.

    Attributes:
        statement: The offending statement (truncated).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="SOURCE_WRITE_REJECTED",
        category="safety",
        suggested_action="This is a bug in syn2mas; report it with the statement shown",
    )

    def __init__(self, statement: str) -> None:
        self.statement = statement[:200]
        super().__init__(
            message=(
                "Refusing to run a non-read statement on the source database: "
                f"{self.statement}"
            ),
        )


class RowError(MigrationError):
    """
    Base class for errors concerning a single legacy row.

    Row errors are handled by the owning pipeline's error policy: recorded and
    skipped by default, or aborting the pipeline in strict mode.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.ROW,
        error_code="ROW_ERROR",
        category="row",
        suggested_action="Inspect the reported legacy row",
    )


class DanglingReferenceError(RowError):
    """
    Raised when a child row references a parent without a resolved mapping.

    Attributes:
        parent_namespace: Mapping namespace of the missing parent.
        parent_key: Legacy identifier of the missing parent.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.ROW,
        error_code="DANGLING_REFERENCE",
        category="row",
        suggested_action=(
            "The legacy row references a parent that was not migrated; "
            "check the parent for earlier errors or corrupt legacy data"
        ),
    )

    def __init__(
        self,
        entity_type: str,
        legacy_key: str,
        parent_namespace: str,
        parent_key: str,
    ) -> None:
        self.parent_namespace = parent_namespace
        self.parent_key = parent_key
        super().__init__(
            message=f"Row references missing {parent_namespace} parent {parent_key}",
            entity_type=entity_type,
            legacy_key=legacy_key,
        )


class ValidationError(RowError):
    """
    Raised when a legacy row cannot become a valid destination row.

    Covers rows that fail to parse into their schema adapter, rows whose data
    violates a destination constraint detectable before the write, and rows
    isolated by the batch writer after a constraint violation.

    Attributes:
        reason: Why the row was rejected.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.ROW,
        error_code="ROW_VALIDATION_FAILED",
        category="row",
        suggested_action="Fix or remove the reported legacy row, then resume",
    )

    def __init__(self, entity_type: str, legacy_key: str, reason: str) -> None:
        self.reason = reason
        super().__init__(
            message=f"Invalid row: {reason}",
            entity_type=entity_type,
            legacy_key=legacy_key,
        )


class ConsistencyViolationError(MigrationError):
    """
    Raised when an already-present destination row differs from the
    transformed row that would replace it.

    This indicates a non-deterministic transformation or legacy data that
    changed between runs, never a routine replay, so it is always fatal.

    Attributes:
        table: Destination table holding the conflicting row.
        primary_key: Primary key values of the conflicting row.
        differences: Column name -> (existing value, expected value).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CONSISTENCY_VIOLATION",
        category="consistency",
        suggested_action=(
            "The destination already holds a different version of this row. "
            "Investigate whether the legacy data changed since the previous run."
        ),
    )

    def __init__(
        self,
        entity_type: str,
        table: str,
        primary_key: tuple[Any, ...],
        differences: dict[str, tuple[Any, Any]],
        legacy_key: str | None = None,
    ) -> None:
        self.table = table
        self.primary_key = primary_key
        self.differences = differences
        columns = ", ".join(sorted(differences))
        super().__init__(
            message=f"Existing row {table}{list(primary_key)} differs in: {columns}",
            entity_type=entity_type,
            legacy_key=legacy_key,
        )


class TransientStorageError(MigrationError):
    """
    Raised for timeouts, deadlocks, serialization failures and dropped
    connections. Retried with backoff; fatal once retries are exhausted.

    Attributes:
        operation: Name of the failed operation.
        reason: Underlying error message.
        attempts: Number of attempts made so far.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="TRANSIENT_STORAGE_ERROR",
        category="storage",
        suggested_action="Check database load and connectivity; the run can be resumed",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )

    def __init__(self, operation: str, reason: str, attempts: int = 1) -> None:
        self.operation = operation
        self.reason = reason
        self.attempts = attempts
        super().__init__(message=f"Transient storage failure in '{operation}': {reason}")


class MigrationCancelledError(MigrationError):
    """Raised inside a pipeline when the run-wide cancellation was requested."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_CANCELLED",
        category="lifecycle",
        suggested_action="Resume the migration; it continues from the last checkpoint",
    )

    def __init__(self, entity_type: str | None = None) -> None:
        super().__init__(message="Migration cancelled", entity_type=entity_type)


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    Args:
        exc: The exception to classify.

    Returns:
        The exception's own classification for MigrationError subclasses,
        a generic fatal classification otherwise.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs before resuming.",
    )


__all__ = [
    "CONNECTIVITY_RETRY_CONFIG",
    "TRANSIENT_RETRY_CONFIG",
    "ConnectivityError",
    "ConsistencyViolationError",
    "DanglingReferenceError",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "MigrationCancelledError",
    "MigrationError",
    "MigrationLockError",
    "PreflightError",
    "ReadOnlyViolationError",
    "RetryConfig",
    "RowError",
    "TransientStorageError",
    "UnsupportedSchemaError",
    "ValidationError",
    "classify_exception",
]
