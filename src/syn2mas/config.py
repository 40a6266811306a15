"""
Configuration for a syn2mas run.

The migrator consumes a fully resolved MigratorConfig; loading it from YAML,
environment variables or command-line flags is left to the caller. Both
classes here are immutable (frozen) and validated on construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from syn2mas.exceptions import RetryConfig

ENTITY_TYPES: tuple[str, ...] = (
    "users",
    "threepids",
    "external_ids",
    "devices",
    "access_tokens",
    "refresh_tokens",
)
"""Every entity type the migrator knows, in dependency order."""


@dataclass(frozen=True)
class EntityOverrides:
    """
    Selection of the entity types to migrate.

    Attributes:
        include: If set, only these entity types run.
        exclude: Entity types that never run.

    Excluding a parent does not exclude its children; a child whose parent
    was never migrated reports every row as a dangling reference.
    """

    include: tuple[str, ...] | None = None
    exclude: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in (self.include or ()) + self.exclude:
            if name not in ENTITY_TYPES:
                raise ValueError(
                    f"Unknown entity type '{name}' in entity_overrides. "
                    f"Known entity types: {', '.join(ENTITY_TYPES)}"
                )

    def selects(self, entity_type: str) -> bool:
        if self.include is not None and entity_type not in self.include:
            return False
        return entity_type not in self.exclude


@dataclass(frozen=True)
class MigratorConfig:
    """
    Configuration for a migration run.

    Attributes:
        source_url: SQLAlchemy URL of the legacy (Synapse) database.
        destination_url: SQLAlchemy URL of the destination (MAS) database.
        server_name: Homeserver name; every migrated user id must end with it.
        batch_size: Rows per extracted chunk and per destination transaction.
        dry_run: Compare instead of write; no destination state is changed.
        strict_mode: Per-entity override of the error policy. True aborts the
            entity on its first row error, False records and skips the row.
        entity_overrides: Which entity types to run.
        provider_mappings: Legacy SSO provider id -> destination provider id.
        transform_workers: Threads used for record transformation.
        max_concurrent_pipelines: Independent pipelines allowed to run at once.
        source_pool_size: Connections in the source pool.
        destination_pool_size: Connections in the destination pool.
        statement_timeout_s: Timeout for each database attempt.
        connect_timeout_s: Timeout for establishing connections.
        retry_max_attempts: Attempts for transient failures (including the first).
        retry_base_delay_ms: Base backoff delay.
        retry_max_delay_ms: Backoff ceiling.
        retry_jitter: Random jitter factor applied to backoff delays.
        mapping_cache_size: Entries held by the identifier mapping cache.
        verify_after: Run count checks and sampling after a successful run.
        sample_size: Mapping entries re-read per entity during sampling.
        progress_log_interval_s: Seconds between periodic progress log lines.
        source_schema_range: Override of the supported legacy schema range.
        destination_schema_range: Override of the supported destination range.
        lock_key: Advisory lock key held for the whole run.
        enable_tracing: Whether to create OpenTelemetry spans.

    Example:
        >>> config = MigratorConfig(
        ...     source_url="postgresql+asyncpg://synapse@db/synapse",
        ...     destination_url="postgresql+asyncpg://mas@db/mas",
        ...     server_name="example.com",
        ...     strict_mode={"users": True},
        ... )
        >>> config.is_strict("users")
        True
    """

    source_url: str
    destination_url: str
    server_name: str
    batch_size: int = 1000
    dry_run: bool = False
    strict_mode: dict[str, bool] = field(default_factory=dict)
    entity_overrides: EntityOverrides = field(default_factory=EntityOverrides)
    provider_mappings: dict[str, str] = field(default_factory=dict)

    # Concurrency
    transform_workers: int = 4
    max_concurrent_pipelines: int = 2
    source_pool_size: int = 4
    destination_pool_size: int = 8

    # Timeouts and retry
    statement_timeout_s: float = 60.0
    connect_timeout_s: float = 10.0
    retry_max_attempts: int = 5
    retry_base_delay_ms: float = 100.0
    retry_max_delay_ms: float = 30000.0
    retry_jitter: float = 0.1

    mapping_cache_size: int = 100_000

    # Verification
    verify_after: bool = False
    sample_size: int = 100

    progress_log_interval_s: float = 30.0

    source_schema_range: tuple[int, int] | None = None
    destination_schema_range: tuple[int, int] | None = None

    lock_key: str = "syn2mas"
    enable_tracing: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.source_url:
            raise ValueError("source_url must not be empty")
        if not self.destination_url:
            raise ValueError("destination_url must not be empty")
        if not self.server_name:
            raise ValueError("server_name must not be empty")

        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        for name in self.strict_mode:
            if name not in ENTITY_TYPES:
                raise ValueError(f"Unknown entity type '{name}' in strict_mode")

        for legacy_provider, provider_id in self.provider_mappings.items():
            try:
                UUID(str(provider_id))
            except ValueError:
                raise ValueError(
                    f"provider_mappings['{legacy_provider}'] must be a UUID, got {provider_id!r}"
                ) from None

        if self.transform_workers < 1:
            raise ValueError(f"transform_workers must be >= 1, got {self.transform_workers}")
        if self.max_concurrent_pipelines < 1:
            raise ValueError(
                f"max_concurrent_pipelines must be >= 1, got {self.max_concurrent_pipelines}"
            )
        if self.source_pool_size < 1:
            raise ValueError(f"source_pool_size must be >= 1, got {self.source_pool_size}")
        # One connection per running pipeline plus one for the run lock.
        if self.destination_pool_size < 2:
            raise ValueError(
                f"destination_pool_size must be >= 2, got {self.destination_pool_size}"
            )

        if self.statement_timeout_s <= 0:
            raise ValueError(
                f"statement_timeout_s must be positive, got {self.statement_timeout_s}"
            )
        if self.connect_timeout_s <= 0:
            raise ValueError(f"connect_timeout_s must be positive, got {self.connect_timeout_s}")

        # Delegates validation of the retry settings.
        self.retry_config()

        if self.mapping_cache_size < 1:
            raise ValueError(f"mapping_cache_size must be >= 1, got {self.mapping_cache_size}")
        if self.sample_size < 0:
            raise ValueError(f"sample_size must be >= 0, got {self.sample_size}")
        if self.progress_log_interval_s <= 0:
            raise ValueError(
                f"progress_log_interval_s must be positive, got {self.progress_log_interval_s}"
            )

        for label, schema_range in (
            ("source_schema_range", self.source_schema_range),
            ("destination_schema_range", self.destination_schema_range),
        ):
            if schema_range is not None and schema_range[0] > schema_range[1]:
                raise ValueError(f"{label} must be (min, max) with min <= max, got {schema_range}")

    def is_strict(self, entity_type: str, default: bool = False) -> bool:
        """Return the error policy for an entity type (True = abort on first error)."""
        return self.strict_mode.get(entity_type, default)

    def retry_config(self) -> RetryConfig:
        """Build the RetryConfig used for every database operation."""
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            jitter_factor=self.retry_jitter,
        )

    def provider_id(self, legacy_provider: str) -> UUID | None:
        value = self.provider_mappings.get(legacy_provider)
        return UUID(str(value)) if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to a dictionary.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "source_url": self.source_url,
            "destination_url": self.destination_url,
            "server_name": self.server_name,
            "batch_size": self.batch_size,
            "dry_run": self.dry_run,
            "strict_mode": dict(self.strict_mode),
            "entity_overrides": {
                "include": list(self.entity_overrides.include)
                if self.entity_overrides.include is not None
                else None,
                "exclude": list(self.entity_overrides.exclude),
            },
            "provider_mappings": dict(self.provider_mappings),
            "transform_workers": self.transform_workers,
            "max_concurrent_pipelines": self.max_concurrent_pipelines,
            "source_pool_size": self.source_pool_size,
            "destination_pool_size": self.destination_pool_size,
            "statement_timeout_s": self.statement_timeout_s,
            "connect_timeout_s": self.connect_timeout_s,
            "retry_max_attempts": self.retry_max_attempts,
            "retry_base_delay_ms": self.retry_base_delay_ms,
            "retry_max_delay_ms": self.retry_max_delay_ms,
            "retry_jitter": self.retry_jitter,
            "mapping_cache_size": self.mapping_cache_size,
            "verify_after": self.verify_after,
            "sample_size": self.sample_size,
            "progress_log_interval_s": self.progress_log_interval_s,
            "source_schema_range": list(self.source_schema_range)
            if self.source_schema_range
            else None,
            "destination_schema_range": list(self.destination_schema_range)
            if self.destination_schema_range
            else None,
            "lock_key": self.lock_key,
            "enable_tracing": self.enable_tracing,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigratorConfig:
        """
        Create from a dictionary.

        Unknown keys are rejected so that typos in configuration files are
        reported instead of silently ignored.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            MigratorConfig instance.
        """
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        values = dict(data)
        overrides = values.pop("entity_overrides", None) or {}
        include = overrides.get("include")
        values["entity_overrides"] = EntityOverrides(
            include=tuple(include) if include is not None else None,
            exclude=tuple(overrides.get("exclude") or ()),
        )
        for key in ("source_schema_range", "destination_schema_range"):
            if values.get(key) is not None:
                low, high = values[key]
                values[key] = (int(low), int(high))
        for key in ("strict_mode", "provider_mappings"):
            if values.get(key) is None:
                values.pop(key, None)
            else:
                values[key] = dict(values[key])
        return cls(**values)


__all__ = [
    "ENTITY_TYPES",
    "EntityOverrides",
    "MigratorConfig",
]
