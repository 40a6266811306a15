"""
Standard span attributes for syn2mas.

Attribute constants used across the migration engine for consistent span
naming. Database attributes follow OpenTelemetry semantic conventions.

Example:
    >>> from syn2mas.observability.attributes import ATTR_ENTITY_TYPE
    >>>
    >>> with tracer.span(
    ...     "syn2mas.writer.commit",
    ...     {ATTR_ENTITY_TYPE: "users", ATTR_BATCH_SIZE: 500},
    ... ):
    ...     pass
"""

# =============================================================================
# Entity Attributes
# =============================================================================

ATTR_ENTITY_TYPE = "syn2mas.entity.type"
"""Entity type being migrated (e.g., 'users', 'devices')."""

ATTR_NAMESPACE = "syn2mas.mapping.namespace"
"""Identifier mapping namespace (e.g., 'users', 'user_passwords')."""

ATTR_LEGACY_KEY = "syn2mas.legacy.key"
"""Legacy identifier of a single row (string)."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_BATCH_SIZE = "syn2mas.batch.size"
"""Number of legacy rows in a batch (integer)."""

ATTR_ROWS_WRITTEN = "syn2mas.rows.written"
"""Destination rows inserted by an operation (integer)."""

ATTR_ROWS_SKIPPED = "syn2mas.rows.skipped"
"""Legacy rows skipped by an operation (integer)."""

ATTR_CHECKPOINT_KEY = "syn2mas.checkpoint.key"
"""Ordering key the checkpoint points at (JSON string)."""

ATTR_DRY_RUN = "syn2mas.dry_run"
"""Whether the operation runs in dry-run mode (boolean)."""

# =============================================================================
# Retry Attributes
# =============================================================================

ATTR_OPERATION = "syn2mas.operation"
"""Name of a retried database operation."""

ATTR_RETRY_ATTEMPT = "syn2mas.retry.attempt"
"""Current attempt number of a retried operation (integer)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation being performed (e.g., 'SELECT', 'INSERT')."""

ATTR_DB_SIDE = "syn2mas.db.side"
"""Which database an operation targets ('source' or 'destination')."""


__all__ = [
    "ATTR_ENTITY_TYPE",
    "ATTR_NAMESPACE",
    "ATTR_LEGACY_KEY",
    "ATTR_BATCH_SIZE",
    "ATTR_ROWS_WRITTEN",
    "ATTR_ROWS_SKIPPED",
    "ATTR_CHECKPOINT_KEY",
    "ATTR_DRY_RUN",
    "ATTR_OPERATION",
    "ATTR_RETRY_ATTEMPT",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SIDE",
]
