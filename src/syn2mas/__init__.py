"""
syn2mas - migrates users, credentials and sessions from a Synapse database
into a Matrix Authentication Service database.

This library provides:
- A resumable, idempotent Migrator running one pipeline per entity type
- Stable legacy -> destination identifier mappings
- Checkpointed batch commits with per-row error isolation
- Preflight checks and post-migration verification
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("syn2mas")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from syn2mas.config import ENTITY_TYPES, EntityOverrides, MigratorConfig
from syn2mas.connections import ConnectionManager, ReadOnlyConnection
from syn2mas.exceptions import (
    ConnectivityError,
    ConsistencyViolationError,
    DanglingReferenceError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    MigrationCancelledError,
    MigrationError,
    MigrationLockError,
    PreflightError,
    ReadOnlyViolationError,
    RetryConfig,
    RowError,
    TransientStorageError,
    UnsupportedSchemaError,
    ValidationError,
)
from syn2mas.identity import IdentityMapper
from syn2mas.ids import IdGenerator
from syn2mas.lock import MigrationLock
from syn2mas.migrator import Migrator, ProgressCallback
from syn2mas.report import (
    CheckReport,
    CountCheck,
    Discrepancy,
    DiscrepancyKind,
    EntityReport,
    EntityStatus,
    ExitStatus,
    MigrationReport,
    ProgressEvent,
)
from syn2mas.retry import RetryPolicy
from syn2mas.schema import PreflightChecker, SchemaCompatibilityChecker, SchemaRange
from syn2mas.verifier import Verifier
from syn2mas.writer import BatchWriter, CommitResult

__all__ = [
    "ENTITY_TYPES",
    "BatchWriter",
    "CheckReport",
    "CommitResult",
    "ConnectionManager",
    "ConnectivityError",
    "ConsistencyViolationError",
    "CountCheck",
    "DanglingReferenceError",
    "Discrepancy",
    "DiscrepancyKind",
    "EntityOverrides",
    "EntityReport",
    "EntityStatus",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "ExitStatus",
    "IdGenerator",
    "IdentityMapper",
    "MigrationCancelledError",
    "MigrationError",
    "MigrationLock",
    "MigrationLockError",
    "MigrationReport",
    "Migrator",
    "MigratorConfig",
    "PreflightChecker",
    "PreflightError",
    "ProgressCallback",
    "ProgressEvent",
    "ReadOnlyConnection",
    "ReadOnlyViolationError",
    "RetryConfig",
    "RetryPolicy",
    "RowError",
    "SchemaCompatibilityChecker",
    "SchemaRange",
    "TransientStorageError",
    "UnsupportedSchemaError",
    "ValidationError",
    "Verifier",
    "__version__",
]
