"""
Unit tests for the schema compatibility and preflight checks.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from syn2mas.config import MigratorConfig
from syn2mas.connections import ConnectionManager
from syn2mas.exceptions import UnsupportedSchemaError
from syn2mas.report import ExitStatus
from syn2mas.schema import (
    PreflightChecker,
    SchemaCompatibilityChecker,
    SchemaRange,
)
from syn2mas.tables import mas_users


class TestSchemaRange:
    def test_inclusive(self):
        supported = SchemaRange(78, 92)
        assert 78 in supported
        assert 92 in supported
        assert 93 not in supported
        assert None not in supported


class TestSchemaCompatibilityChecker:
    @pytest.mark.asyncio
    async def test_supported_versions(self, connections: ConnectionManager):
        versions = await SchemaCompatibilityChecker(connections, enable_tracing=False).check()
        assert versions.source == 80
        assert versions.destination == 20250101000000

    @pytest.mark.asyncio
    async def test_source_out_of_range(self, connections: ConnectionManager):
        checker = SchemaCompatibilityChecker(
            connections, source_range=SchemaRange(81, 90), enable_tracing=False
        )
        with pytest.raises(UnsupportedSchemaError) as exc_info:
            await checker.check()
        assert exc_info.value.side == "source"
        assert exc_info.value.detected == 80

    @pytest.mark.asyncio
    async def test_destination_out_of_range(self, connections: ConnectionManager):
        checker = SchemaCompatibilityChecker(
            connections, destination_range=SchemaRange(1, 2), enable_tracing=False
        )
        with pytest.raises(UnsupportedSchemaError) as exc_info:
            await checker.check()
        assert exc_info.value.side == "destination"

    @pytest.mark.asyncio
    async def test_missing_version_marker(self, tmp_path: Path, destination_engine: AsyncEngine):
        empty = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        manager = ConnectionManager(empty, destination_engine, enable_tracing=False)
        try:
            with pytest.raises(UnsupportedSchemaError, match="no schema version marker"):
                await SchemaCompatibilityChecker(manager, enable_tracing=False).check()
        finally:
            await empty.dispose()

    @pytest.mark.asyncio
    async def test_ranges_from_config(
        self, connections: ConnectionManager, make_config: Callable[..., MigratorConfig]
    ):
        config = make_config(source_schema_range=(80, 80))
        checker = SchemaCompatibilityChecker.from_config(connections, config)
        assert checker.source_range == SchemaRange(80, 80)
        await checker.check()


class TestPreflightChecker:
    @pytest.mark.asyncio
    async def test_clean_databases(
        self, connections: ConnectionManager, legacy, config: MigratorConfig
    ):
        await legacy.users("@alice:example.com", "@bob:example.com")
        await legacy.external_id("@alice:example.com", "sub-alice")

        report = await PreflightChecker(connections, config, enable_tracing=False).run()

        assert report.errors == []
        assert report.warnings == []
        assert report.exit_status is ExitStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_unmapped_provider(
        self, connections: ConnectionManager, legacy, config: MigratorConfig
    ):
        await legacy.user("@alice:example.com")
        await legacy.external_id("@alice:example.com", "sub-alice", provider="saml")

        report = await PreflightChecker(connections, config, enable_tracing=False).run()

        assert len(report.errors) == 1
        assert "'saml'" in report.errors[0]

    @pytest.mark.asyncio
    async def test_provider_of_erased_user_is_ignored(
        self, connections: ConnectionManager, legacy, config: MigratorConfig
    ):
        await legacy.user("@alice:example.com")
        await legacy.erase("@alice:example.com")
        await legacy.external_id("@alice:example.com", "sub-alice", provider="saml")

        report = await PreflightChecker(connections, config, enable_tracing=False).run()
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_foreign_users(
        self, connections: ConnectionManager, legacy, config: MigratorConfig
    ):
        await legacy.users("@alice:example.com", "@bob:other.org")

        report = await PreflightChecker(connections, config, enable_tracing=False).run()

        assert report.errors == ["1 user(s) do not belong to server name 'example.com'"]

    @pytest.mark.asyncio
    async def test_warnings(self, connections: ConnectionManager, legacy, config: MigratorConfig):
        await legacy.user("@alice:example.com")
        await legacy.user("@guest:example.com", is_guest=1)
        await legacy.user("@irc_bob:example.com", appservice_id="irc")
        await legacy.threepid("@alice:example.com", "447700900000", medium="msisdn")

        report = await PreflightChecker(connections, config, enable_tracing=False).run()

        assert report.errors == []
        assert len(report.warnings) == 3
        assert report.exit_status is ExitStatus.CHECK_WARNINGS

    @pytest.mark.asyncio
    async def test_provider_mapping_to_unknown_upstream(
        self, connections: ConnectionManager, make_config: Callable[..., MigratorConfig]
    ):
        config = make_config(provider_mappings={"oidc-example": str(uuid4())})

        report = await PreflightChecker(connections, config, enable_tracing=False).run()

        assert len(report.errors) == 1
        assert "does not exist in the destination" in report.errors[0]

    @pytest.mark.asyncio
    async def test_existing_destination_users(
        self,
        connections: ConnectionManager,
        destination_engine: AsyncEngine,
        config: MigratorConfig,
    ):
        async with destination_engine.begin() as conn:
            await conn.execute(
                mas_users.insert().values(
                    user_id=uuid4(), username="preexisting", created_at=datetime.now(UTC)
                )
            )

        report = await PreflightChecker(connections, config, enable_tracing=False).run()

        assert report.warnings == [
            "The destination already holds 1 user(s) not created by syn2mas"
        ]
