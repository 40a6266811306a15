"""
Schema compatibility and preflight checks.

Both run before any pipeline and never modify either database.

- SchemaCompatibilityChecker compares the schema versions of both databases
  with the ranges this release was written against.
- PreflightChecker looks for data that cannot be migrated as configured
  (errors) or will be migrated in a degraded form or not at all (warnings).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import sqlalchemy as sa
from sqlalchemy.exc import OperationalError, ProgrammingError

from syn2mas.config import MigratorConfig
from syn2mas.connections import ConnectionManager
from syn2mas.exceptions import UnsupportedSchemaError
from syn2mas.observability import Tracer, create_tracer
from syn2mas.pipelines.eligibility import eligible_user, owned_by_eligible_user
from syn2mas.report import CheckReport
from syn2mas.tables import (
    id_mappings,
    mas_upstream_oauth_providers,
    mas_users,
    synapse_user_external_ids,
    synapse_user_threepids,
    synapse_users,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchemaRange:
    """Inclusive range of supported schema versions."""

    minimum: int
    maximum: int

    def __contains__(self, version: object) -> bool:
        return isinstance(version, int) and self.minimum <= version <= self.maximum


# Synapse schema versions (schema_version.version).
SOURCE_SCHEMA_RANGE = SchemaRange(78, 92)
# MAS sqlx migration versions (timestamps of the migration files).
DESTINATION_SCHEMA_RANGE = SchemaRange(20240301000000, 20261231235959)


@dataclass(frozen=True)
class SchemaVersions:
    source: int | None
    destination: int | None


class SchemaCompatibilityChecker:
    """
    Verifies that both databases run a supported schema version.

    Example:
        >>> checker = SchemaCompatibilityChecker(connections)
        >>> versions = await checker.check()
    """

    def __init__(
        self,
        connections: ConnectionManager,
        source_range: SchemaRange | None = None,
        destination_range: SchemaRange | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._connections = connections
        self.source_range = source_range or SOURCE_SCHEMA_RANGE
        self.destination_range = destination_range or DESTINATION_SCHEMA_RANGE
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @classmethod
    def from_config(
        cls, connections: ConnectionManager, config: MigratorConfig, tracer: Tracer | None = None
    ) -> SchemaCompatibilityChecker:
        return cls(
            connections,
            SchemaRange(*config.source_schema_range) if config.source_schema_range else None,
            SchemaRange(*config.destination_schema_range)
            if config.destination_schema_range
            else None,
            tracer=tracer,
            enable_tracing=config.enable_tracing,
        )

    async def source_version(self) -> int | None:
        async with self._connections.acquire_source() as conn:
            try:
                result = await conn.execute(sa.text("SELECT version FROM schema_version"))
            except (OperationalError, ProgrammingError) as e:
                logger.debug("No schema_version table in the source database: %s", e)
                return None
            value = result.scalar()
        return int(value) if value is not None else None

    async def destination_version(self) -> int | None:
        async with self._connections.destination.connect() as conn:
            try:
                result = await conn.execute(
                    sa.text("SELECT MAX(version) FROM _sqlx_migrations WHERE success")
                )
            except (OperationalError, ProgrammingError) as e:
                logger.debug("No _sqlx_migrations table in the destination database: %s", e)
                return None
            value = result.scalar()
        return int(value) if value is not None else None

    async def check(self) -> SchemaVersions:
        """
        Check both schema versions.

        Returns:
            The detected versions

        Raises:
            UnsupportedSchemaError: If either version is missing or out of range
        """
        with self._tracer.span("syn2mas.schema.check", {}):
            versions = SchemaVersions(
                source=await self.source_version(),
                destination=await self.destination_version(),
            )
            if versions.source not in self.source_range:
                raise UnsupportedSchemaError(
                    "source",
                    versions.source,
                    self.source_range.minimum,
                    self.source_range.maximum,
                )
            if versions.destination not in self.destination_range:
                raise UnsupportedSchemaError(
                    "destination",
                    versions.destination,
                    self.destination_range.minimum,
                    self.destination_range.maximum,
                )
            logger.info(
                "Schema versions: source=%s destination=%s",
                versions.source,
                versions.destination,
            )
            return versions


class PreflightChecker:
    """
    Looks for data problems before a migration starts.

    Example:
        >>> report = await PreflightChecker(connections, config).run()
        >>> report.exit_status
        <ExitStatus.SUCCESS: 0>
    """

    def __init__(
        self,
        connections: ConnectionManager,
        config: MigratorConfig,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._connections = connections
        self._config = config
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def run(self, report: CheckReport | None = None) -> CheckReport:
        """Run every check, adding findings to ``report`` (a new one if None)."""
        report = report if report is not None else CheckReport()
        with self._tracer.span("syn2mas.schema.preflight", {}):
            await self._check_source(report)
            await self._check_destination(report)
        return report

    async def _check_source(self, report: CheckReport) -> None:
        u = synapse_users
        config = self._config
        async with self._connections.acquire_source() as conn:
            providers = (
                await conn.execute(
                    sa.select(synapse_user_external_ids.c.auth_provider)
                    .where(owned_by_eligible_user(synapse_user_external_ids.c.user_id))
                    .distinct()
                    .order_by(synapse_user_external_ids.c.auth_provider)
                )
            ).scalars().all()
            for provider in providers:
                if provider not in config.provider_mappings:
                    report.error(
                        f"SSO provider {provider!r} is used by legacy users but has no "
                        "provider mapping configured"
                    )

            foreign = (
                await conn.execute(
                    sa.select(sa.func.count())
                    .select_from(u)
                    .where(
                        eligible_user(u),
                        ~u.c.name.endswith(":" + config.server_name, autoescape=True),
                    )
                )
            ).scalar_one()
            if foreign:
                report.error(
                    f"{foreign} user(s) do not belong to server name {config.server_name!r}"
                )

            guests = (
                await conn.execute(
                    sa.select(sa.func.count()).select_from(u).where(u.c.is_guest != 0)
                )
            ).scalar_one()
            if guests:
                report.warn(f"{guests} guest user(s) will not be migrated")

            appservice_users = (
                await conn.execute(
                    sa.select(sa.func.count())
                    .select_from(u)
                    .where(u.c.appservice_id.is_not(None))
                )
            ).scalar_one()
            if appservice_users:
                report.warn(
                    f"{appservice_users} application service user(s) will not be migrated"
                )

            t = synapse_user_threepids
            unsupported = (
                await conn.execute(
                    sa.select(sa.func.count())
                    .select_from(t)
                    .where(t.c.medium != "email", owned_by_eligible_user(t.c.user_id))
                )
            ).scalar_one()
            if unsupported:
                report.warn(
                    f"{unsupported} non-email third-party id(s) (e.g. phone numbers) will be "
                    "kept as unsupported third-party ids"
                )

    async def _check_destination(self, report: CheckReport) -> None:
        config = self._config
        async with self._connections.destination.connect() as conn:
            if config.provider_mappings:
                present = set(
                    (
                        await conn.execute(
                            sa.select(mas_upstream_oauth_providers.c.upstream_oauth_provider_id)
                        )
                    ).scalars()
                )
                for name in sorted(config.provider_mappings):
                    provider_id = config.provider_id(name)
                    if provider_id not in present:
                        report.error(
                            f"Provider mapping {name!r} -> {provider_id} points to an "
                            "upstream provider that does not exist in the destination"
                        )

            has_state = await conn.run_sync(
                lambda sync_conn: sa.inspect(sync_conn).has_table(id_mappings.name)
            )
            query = sa.select(sa.func.count()).select_from(mas_users)
            if has_state:
                query = query.where(
                    ~sa.exists().where(
                        id_mappings.c.namespace == "users",
                        id_mappings.c.destination_id == mas_users.c.user_id,
                    )
                )
            existing = (await conn.execute(query)).scalar_one()
            if existing:
                report.warn(
                    f"The destination already holds {existing} user(s) not created by syn2mas"
                )
            await conn.rollback()


__all__ = [
    "DESTINATION_SCHEMA_RANGE",
    "PreflightChecker",
    "SOURCE_SCHEMA_RANGE",
    "SchemaCompatibilityChecker",
    "SchemaRange",
    "SchemaVersions",
]
