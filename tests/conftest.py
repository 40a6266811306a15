"""
Shared pytest fixtures for the syn2mas tests.

This module provides:
- File-backed SQLite source (Synapse) and destination (MAS) databases with
  the schemas of syn2mas.tables and supported schema version markers
- A configuration factory with test-friendly defaults
- Seeding helpers for legacy rows
- Connection manager and in-memory repository fixtures
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from syn2mas.config import EntityOverrides, MigratorConfig
from syn2mas.connections import ConnectionManager
from syn2mas.identity import IdentityMapper
from syn2mas.observability import MockTracer
from syn2mas.repositories import InMemoryCheckpointStore, InMemoryMappingRepository
from syn2mas.tables import (
    destination_metadata,
    mas_migrations,
    mas_upstream_oauth_providers,
    source_metadata,
    state_metadata,
    synapse_access_tokens,
    synapse_devices,
    synapse_erased_users,
    synapse_refresh_tokens,
    synapse_schema_version,
    synapse_user_external_ids,
    synapse_user_threepids,
    synapse_users,
)

SERVER_NAME = "example.com"
SOURCE_SCHEMA_VERSION = 80
DESTINATION_SCHEMA_VERSION = 20250101000000
OIDC_PROVIDER_ID = UUID("01890000-0000-7000-8000-000000000001")


# ============================================================================
# Database fixtures
# ============================================================================


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


@pytest_asyncio.fixture
async def source_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Legacy database with the Synapse tables and schema version 80."""
    engine = create_async_engine(sqlite_url(tmp_path / "synapse.db"))
    async with engine.begin() as conn:
        await conn.run_sync(source_metadata.create_all)
        await conn.execute(
            synapse_schema_version.insert().values(
                lock="X", version=SOURCE_SCHEMA_VERSION, upgraded=True
            )
        )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def destination_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Destination database with the MAS tables and one upstream provider."""
    engine = create_async_engine(sqlite_url(tmp_path / "mas.db"))
    async with engine.begin() as conn:
        await conn.run_sync(destination_metadata.create_all)
        await conn.execute(
            mas_migrations.insert().values(
                version=DESTINATION_SCHEMA_VERSION, description="baseline", success=True
            )
        )
        await conn.execute(
            mas_upstream_oauth_providers.insert().values(
                upstream_oauth_provider_id=OIDC_PROVIDER_ID,
                issuer="https://sso.example.com",
                human_name="Example SSO",
                created_at=sa.func.current_timestamp(),
            )
        )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def state_engine(destination_engine: AsyncEngine) -> AsyncEngine:
    """The destination engine with the migration state tables created."""
    async with destination_engine.begin() as conn:
        await conn.run_sync(state_metadata.create_all)
    return destination_engine


@pytest_asyncio.fixture
async def connections(
    source_engine: AsyncEngine, destination_engine: AsyncEngine
) -> AsyncGenerator[ConnectionManager, None]:
    manager = ConnectionManager(source_engine, destination_engine, enable_tracing=False)
    yield manager
    await manager.dispose()


# ============================================================================
# Configuration
# ============================================================================


@pytest.fixture
def make_config() -> Callable[..., MigratorConfig]:
    """
    Factory for MigratorConfig with test defaults.

    Engines are passed to the Migrator directly, so the URLs are placeholders.
    ``include`` is a shortcut for entity_overrides.
    """

    def factory(include: tuple[str, ...] | None = None, **overrides: Any) -> MigratorConfig:
        values: dict[str, Any] = {
            "source_url": "sqlite+aiosqlite:///synapse.db",
            "destination_url": "sqlite+aiosqlite:///mas.db",
            "server_name": SERVER_NAME,
            "batch_size": 100,
            "transform_workers": 2,
            "max_concurrent_pipelines": 1,
            "retry_max_attempts": 3,
            "retry_base_delay_ms": 1.0,
            "retry_max_delay_ms": 5.0,
            "provider_mappings": {"oidc-example": str(OIDC_PROVIDER_ID)},
            "enable_tracing": False,
        }
        if include is not None:
            values["entity_overrides"] = EntityOverrides(include=include)
        values.update(overrides)
        return MigratorConfig(**values)

    return factory


@pytest.fixture
def config(make_config: Callable[..., MigratorConfig]) -> MigratorConfig:
    return make_config()


# ============================================================================
# Repositories
# ============================================================================


@pytest.fixture
def mapping_repo() -> InMemoryMappingRepository:
    return InMemoryMappingRepository()


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore(enable_tracing=False)


@pytest_asyncio.fixture
async def mapper(mapping_repo: InMemoryMappingRepository) -> IdentityMapper:
    identity_mapper = IdentityMapper(mapping_repo, enable_tracing=False)
    await identity_mapper.initialize()
    return identity_mapper


@pytest.fixture
def mock_tracer() -> MockTracer:
    return MockTracer()


# ============================================================================
# Legacy data
# ============================================================================


class LegacySeeder:
    """Inserts legacy rows with sensible defaults."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def _insert(self, table: sa.Table, rows: list[dict[str, Any]]) -> None:
        if rows:
            async with self.engine.begin() as conn:
                await conn.execute(table.insert(), rows)

    async def users(self, *names: str, **defaults: Any) -> None:
        rows = []
        for index, name in enumerate(names):
            row = {
                "name": name,
                "password_hash": f"$2b$12$hash{index}",
                "creation_ts": 1_700_000_000 + index,
                "admin": 0,
                "is_guest": 0,
                "appservice_id": None,
                "deactivated": 0,
                "locked": False,
            }
            row.update(defaults)
            rows.append(row)
        await self._insert(synapse_users, rows)

    async def user(self, name: str, **values: Any) -> None:
        await self.users(name, **values)

    async def erase(self, *user_ids: str) -> None:
        await self._insert(synapse_erased_users, [{"user_id": u} for u in user_ids])

    async def threepid(
        self, user_id: str, address: str, medium: str = "email", added_at: int = 1_700_000_000_000
    ) -> None:
        await self._insert(
            synapse_user_threepids,
            [
                {
                    "user_id": user_id,
                    "medium": medium,
                    "address": address,
                    "validated_at": added_at,
                    "added_at": added_at,
                }
            ],
        )

    async def external_id(
        self, user_id: str, external_id: str, provider: str = "oidc-example"
    ) -> None:
        await self._insert(
            synapse_user_external_ids,
            [{"auth_provider": provider, "external_id": external_id, "user_id": user_id}],
        )

    async def device(self, user_id: str, device_id: str, **values: Any) -> None:
        row = {
            "user_id": user_id,
            "device_id": device_id,
            "display_name": f"Device {device_id}",
            "last_seen": 1_700_000_100_000,
            "ip": "10.0.0.1",
            "user_agent": "Element",
            "hidden": False,
        }
        row.update(values)
        await self._insert(synapse_devices, [row])

    async def access_token(
        self, token_id: int, user_id: str, device_id: str | None, **values: Any
    ) -> None:
        row = {
            "id": token_id,
            "user_id": user_id,
            "device_id": device_id,
            "token": f"syt_token_{token_id}",
            "valid_until_ms": None,
            "puppets_user_id": None,
            "last_validated": 1_700_000_200_000,
            "refresh_token_id": None,
            "used": False,
        }
        row.update(values)
        await self._insert(synapse_access_tokens, [row])

    async def refresh_token(
        self, token_id: int, user_id: str, device_id: str, next_token_id: int | None = None
    ) -> None:
        await self._insert(
            synapse_refresh_tokens,
            [
                {
                    "id": token_id,
                    "user_id": user_id,
                    "device_id": device_id,
                    "token": f"syr_token_{token_id}",
                    "next_token_id": next_token_id,
                }
            ],
        )


@pytest.fixture
def legacy(source_engine: AsyncEngine) -> LegacySeeder:
    return LegacySeeder(source_engine)


async def count_rows(engine: AsyncEngine, table: sa.Table, *where: Any) -> int:
    async with engine.connect() as conn:
        query = sa.select(sa.func.count()).select_from(table)
        if where:
            query = query.where(*where)
        return (await conn.execute(query)).scalar_one()


@pytest.fixture
def count() -> Callable[..., Any]:
    """Count rows of a table: ``await count(engine, table, *where)``."""
    return count_rows
