"""
Unit tests for the entity pipelines.

Tests cover:
- Pure transforms of every pipeline
- Row-level rejections (validation and dangling references)
- Extraction-boundary filtering of the source queries
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from syn2mas.config import MigratorConfig
from syn2mas.exceptions import DanglingReferenceError, ValidationError
from syn2mas.identity import MappingKey, ResolvedIds
from syn2mas.ids import IdGenerator, legacy_key
from syn2mas.pipelines import (
    AccessTokensPipeline,
    DevicesPipeline,
    EntityPipeline,
    ExternalIdsPipeline,
    RefreshTokensPipeline,
    ThreepidsPipeline,
    UsersPipeline,
    build_pipelines,
)
from syn2mas.pipelines.base import keyed


def resolve(pipeline: EntityPipeline, record: Any, *, skip: tuple[str, ...] = ()) -> ResolvedIds:
    """Allocate identifiers for everything a record needs, except namespaces in ``skip``."""
    generator = IdGenerator()
    keys: list[MappingKey] = pipeline.allocations(record) + pipeline.parents(record)
    return ResolvedIds({key: generator.new() for key in keys if key[0] not in skip})


async def extract(engine: AsyncEngine, pipeline: EntityPipeline) -> list[dict[str, Any]]:
    async with engine.connect() as conn:
        query = pipeline.source_query().order_by(*pipeline.order_by)
        result = await conn.execute(query)
        return [dict(row) for row in result.mappings().all()]


class TestBuildPipelines:
    def test_all_pipelines_in_dependency_order(self, config: MigratorConfig):
        pipelines = build_pipelines(config)
        assert list(pipelines) == [
            "users",
            "threepids",
            "external_ids",
            "devices",
            "access_tokens",
            "refresh_tokens",
        ]

    def test_selection(self, make_config: Callable[..., MigratorConfig]):
        pipelines = build_pipelines(make_config(include=("users", "devices")))
        assert list(pipelines) == ["users", "devices"]


class TestUsersPipeline:
    @pytest.fixture
    def pipeline(self, config: MigratorConfig) -> UsersPipeline:
        return UsersPipeline(config)

    def test_user_with_password_fans_out(self, pipeline: UsersPipeline):
        record = pipeline.parse(
            {
                "name": "@Alice:example.com",
                "user_key": "@alice:example.com",
                "password_hash": "$2b$12$abc",
                "creation_ts": 1_700_000_000,
                "admin": 1,
                "deactivated": 0,
                "locked": False,
            }
        )
        ids = resolve(pipeline, record)
        unit = pipeline.transform(record, ids)

        assert unit.legacy_key == "@alice:example.com"
        assert unit.ordering_key == ("@Alice:example.com",)
        assert [r.table for r in unit.records] == ["users", "user_passwords"]

        user, password = (r.values for r in unit.records)
        assert user["user_id"] == ids[("users", "@alice:example.com")]
        assert user["username"] == "Alice"
        assert user["created_at"] == datetime.fromtimestamp(1_700_000_000, tz=UTC)
        assert user["locked_at"] is None
        assert user["can_request_admin"] is True
        assert password["user_id"] == user["user_id"]
        assert password["hashed_password"] == "$2b$12$abc"

    def test_user_without_password(self, pipeline: UsersPipeline):
        record = pipeline.parse({"name": "@sso:example.com", "user_key": "@sso:example.com"})
        assert pipeline.allocations(record) == [("users", "@sso:example.com")]

        unit = pipeline.transform(record, resolve(pipeline, record))
        assert [r.table for r in unit.records] == ["users"]

    def test_deactivated_user_is_locked(self, pipeline: UsersPipeline):
        record = pipeline.parse(
            {"name": "@gone:example.com", "user_key": "@gone:example.com", "deactivated": 1}
        )
        unit = pipeline.transform(record, resolve(pipeline, record))
        assert unit.records[0].values["locked_at"] is not None

    def test_user_of_other_server_rejected(self, pipeline: UsersPipeline):
        record = pipeline.parse({"name": "@bob:other.org", "user_key": "@bob:other.org"})
        with pytest.raises(ValidationError, match="other.org"):
            pipeline.transform(record, resolve(pipeline, record))

    def test_malformed_user_id_rejected(self, pipeline: UsersPipeline):
        record = pipeline.parse({"name": "bob", "user_key": "bob"})
        with pytest.raises(ValidationError, match="not a user id"):
            pipeline.transform(record, resolve(pipeline, record))

    def test_parse_failure_is_validation_error(self, pipeline: UsersPipeline):
        with pytest.raises(ValidationError) as exc_info:
            pipeline.parse({"name": None, "user_key": "@x:example.com"})
        assert exc_info.value.legacy_key == "@x:example.com"
        assert "name" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_source_query_filters_and_deduplicates(
        self, pipeline: UsersPipeline, legacy: Any, source_engine: AsyncEngine
    ):
        await legacy.users("@alice:example.com", "@bob:example.com")
        await legacy.user("@ALICE:example.com", creation_ts=1_800_000_000)
        await legacy.user("@guest:example.com", is_guest=1)
        await legacy.user("@bridge:example.com", appservice_id="irc")
        await legacy.user("@erased:example.com")
        await legacy.erase("@erased:example.com")

        rows = await extract(source_engine, pipeline)

        assert [row["name"] for row in rows] == ["@ALICE:example.com", "@bob:example.com"]
        assert rows[0]["user_key"] == "@alice:example.com"
        assert "dup_rank" not in rows[0]


class TestThreepidsPipeline:
    @pytest.fixture
    def pipeline(self, config: MigratorConfig) -> ThreepidsPipeline:
        return ThreepidsPipeline(config)

    def row(self, **values: Any) -> dict[str, Any]:
        row = {
            "user_id": "@alice:example.com",
            "medium": "email",
            "address": "Alice@Example.com",
            "address_key": "alice@example.com",
            "validated_at": 1_700_000_000_000,
            "added_at": 1_700_000_000_000,
            "primary_rank": 1,
        }
        row.update(values)
        return row

    def test_email_becomes_user_email(self, pipeline: ThreepidsPipeline):
        record = pipeline.parse(self.row())
        ids = resolve(pipeline, record)
        unit = pipeline.transform(record, ids)

        assert unit.legacy_key == legacy_key("email", "alice@example.com")
        (row,) = unit.records
        assert row.table == "user_emails"
        assert row.values["email"] == "Alice@Example.com"
        assert row.values["user_id"] == ids[("users", "@alice:example.com")]
        assert row.values["is_primary"] is True
        assert row.values["confirmed_at"] is not None

    def test_secondary_email(self, pipeline: ThreepidsPipeline):
        record = pipeline.parse(self.row(primary_rank=2))
        unit = pipeline.transform(record, resolve(pipeline, record))
        assert unit.records[0].values["is_primary"] is False

    def test_phone_number_is_unsupported_threepid(self, pipeline: ThreepidsPipeline):
        record = pipeline.parse(
            self.row(medium="msisdn", address="447700900000", address_key="447700900000")
        )
        assert pipeline.allocations(record) == []

        unit = pipeline.transform(record, resolve(pipeline, record))
        (row,) = unit.records
        assert row.table == "user_unsupported_third_party_ids"
        assert row.values["medium"] == "msisdn"

    def test_missing_user_is_dangling(self, pipeline: ThreepidsPipeline):
        record = pipeline.parse(self.row())
        with pytest.raises(DanglingReferenceError) as exc_info:
            pipeline.transform(record, resolve(pipeline, record, skip=("users",)))
        assert exc_info.value.parent_namespace == "users"

    @pytest.mark.asyncio
    async def test_primary_is_earliest_address(
        self, pipeline: ThreepidsPipeline, legacy: Any, source_engine: AsyncEngine
    ):
        await legacy.user("@alice:example.com")
        await legacy.threepid("@alice:example.com", "late@example.com", added_at=2_000)
        await legacy.threepid("@alice:example.com", "early@example.com", added_at=1_000)

        rows = {row["address"]: row for row in await extract(source_engine, pipeline)}
        assert rows["early@example.com"]["primary_rank"] == 1
        assert rows["late@example.com"]["primary_rank"] == 2

    @pytest.mark.asyncio
    async def test_duplicate_addresses_collapse(
        self, pipeline: ThreepidsPipeline, legacy: Any, source_engine: AsyncEngine
    ):
        await legacy.users("@alice:example.com", "@bob:example.com")
        await legacy.threepid("@alice:example.com", "shared@example.com", added_at=1_000)
        await legacy.threepid("@bob:example.com", "SHARED@example.com", added_at=2_000)

        rows = await extract(source_engine, pipeline)
        assert len(rows) == 1
        assert rows[0]["user_id"] == "@bob:example.com"

    @pytest.mark.asyncio
    async def test_erased_owner_filtered(
        self, pipeline: ThreepidsPipeline, legacy: Any, source_engine: AsyncEngine
    ):
        await legacy.user("@erased:example.com")
        await legacy.erase("@erased:example.com")
        await legacy.threepid("@erased:example.com", "erased@example.com")

        assert await extract(source_engine, pipeline) == []


class TestExternalIdsPipeline:
    @pytest.fixture
    def pipeline(self, config: MigratorConfig) -> ExternalIdsPipeline:
        return ExternalIdsPipeline(config)

    def test_link_uses_mapped_provider(self, pipeline: ExternalIdsPipeline):
        record = pipeline.parse(
            {"auth_provider": "oidc-example", "external_id": "sub-1", "user_id": "@a:example.com"}
        )
        unit = pipeline.transform(record, resolve(pipeline, record))

        (row,) = unit.records
        assert row.table == "upstream_oauth_links"
        provider_id = pipeline.config.provider_id("oidc-example")
        assert row.values["upstream_oauth_provider_id"] == provider_id
        assert row.values["subject"] == "sub-1"

    def test_unmapped_provider_rejected(self, pipeline: ExternalIdsPipeline):
        record = pipeline.parse(
            {"auth_provider": "saml", "external_id": "sub-1", "user_id": "@a:example.com"}
        )
        with pytest.raises(ValidationError, match="saml"):
            pipeline.transform(record, resolve(pipeline, record))


class TestDevicesPipeline:
    @pytest.fixture
    def pipeline(self, config: MigratorConfig) -> DevicesPipeline:
        return DevicesPipeline(config)

    def test_device_becomes_compat_session(self, pipeline: DevicesPipeline):
        record = pipeline.parse(
            {
                "user_id": "@Alice:example.com",
                "user_key": "@alice:example.com",
                "device_id": "DEV1",
                "display_name": "Phone",
                "last_seen": 1_700_000_100_000,
                "ip": "10.0.0.1",
                "user_agent": "Element",
                "admin": 0,
            }
        )
        ids = resolve(pipeline, record)
        unit = pipeline.transform(record, ids)

        assert unit.legacy_key == legacy_key("@alice:example.com", "DEV1")
        (row,) = unit.records
        assert row.table == "compat_sessions"
        session_key = keyed("devices", "@alice:example.com", "DEV1")
        assert row.values["compat_session_id"] == ids[session_key]
        assert row.values["user_id"] == ids[("users", "@alice:example.com")]
        assert row.values["last_active_at"] == datetime.fromtimestamp(1_700_000_100, tz=UTC)
        assert row.values["created_at"] == row.values["last_active_at"]

    def test_missing_user_is_dangling(self, pipeline: DevicesPipeline):
        record = pipeline.parse(
            {"user_id": "@ghost:example.com", "user_key": "@ghost:example.com", "device_id": "D"}
        )
        with pytest.raises(DanglingReferenceError):
            pipeline.transform(record, resolve(pipeline, record, skip=("users",)))

    @pytest.mark.asyncio
    async def test_hidden_devices_filtered(
        self, pipeline: DevicesPipeline, legacy: Any, source_engine: AsyncEngine
    ):
        await legacy.user("@alice:example.com", admin=1)
        await legacy.device("@alice:example.com", "VISIBLE")
        await legacy.device("@alice:example.com", "HIDDEN", hidden=True)

        rows = await extract(source_engine, pipeline)
        assert [row["device_id"] for row in rows] == ["VISIBLE"]
        assert rows[0]["admin"] == 1

    def test_lookup_query_uses_composite_key(self, pipeline: DevicesPipeline):
        query = pipeline.lookup_query(legacy_key("@alice:example.com", "DEV1"))
        compiled = query.compile(compile_kwargs={"literal_binds": True})
        assert "'DEV1'" in str(compiled)


class TestAccessTokensPipeline:
    @pytest.fixture
    def pipeline(self, config: MigratorConfig) -> AccessTokensPipeline:
        return AccessTokensPipeline(config)

    def test_device_token_joins_device_session(self, pipeline: AccessTokensPipeline):
        record = pipeline.parse(
            {"id": 7, "user_id": "@a:example.com", "device_id": "DEV1", "token": "syt_7"}
        )
        ids = resolve(pipeline, record)
        unit = pipeline.transform(record, ids)

        (row,) = unit.records
        assert row.table == "compat_access_tokens"
        assert row.values["compat_session_id"] == ids[keyed("devices", "@a:example.com", "DEV1")]
        assert row.values["access_token"] == "syt_7"

    def test_deviceless_token_gets_its_own_session(self, pipeline: AccessTokensPipeline):
        record = pipeline.parse(
            {"id": 8, "user_id": "@a:example.com", "device_id": None, "token": "syt_8"}
        )
        assert keyed("token_sessions", 8) in pipeline.allocations(record)

        ids = resolve(pipeline, record)
        unit = pipeline.transform(record, ids)

        session, token = unit.records
        assert session.table == "compat_sessions"
        assert session.values["device_id"] is None
        assert token.values["compat_session_id"] == session.values["compat_session_id"]
        assert session.values["compat_session_id"] == ids[keyed("token_sessions", 8)]

    def test_missing_device_is_dangling(self, pipeline: AccessTokensPipeline):
        record = pipeline.parse(
            {"id": 9, "user_id": "@a:example.com", "device_id": "GONE", "token": "syt_9"}
        )
        with pytest.raises(DanglingReferenceError) as exc_info:
            pipeline.transform(record, resolve(pipeline, record, skip=("devices",)))
        assert exc_info.value.parent_namespace == "devices"

    @pytest.mark.asyncio
    async def test_puppet_tokens_filtered(
        self, pipeline: AccessTokensPipeline, legacy: Any, source_engine: AsyncEngine
    ):
        await legacy.users("@admin:example.com", "@alice:example.com")
        await legacy.access_token(1, "@admin:example.com", None)
        await legacy.access_token(
            2, "@admin:example.com", None, puppets_user_id="@alice:example.com"
        )

        rows = await extract(source_engine, pipeline)
        assert [row["id"] for row in rows] == [1]


class TestRefreshTokensPipeline:
    @pytest.fixture
    def pipeline(self, config: MigratorConfig) -> RefreshTokensPipeline:
        return RefreshTokensPipeline(config)

    def test_paired_refresh_token(self, pipeline: RefreshTokensPipeline):
        record = pipeline.parse(
            {
                "id": 3,
                "user_id": "@a:example.com",
                "device_id": "DEV1",
                "token": "syr_3",
                "access_token_id": 7,
                "access_device_id": "DEV1",
            }
        )
        generator = IdGenerator()
        ids = ResolvedIds(
            {
                keyed("refresh_tokens", 3): generator.new(),
                keyed("users", "@a:example.com"): generator.new(),
                keyed("access_tokens", 7): generator.new(),
                keyed("devices", "@a:example.com", "DEV1"): generator.new(),
            }
        )
        unit = pipeline.transform(record, ids)

        (row,) = unit.records
        assert row.values["compat_access_token_id"] == ids[keyed("access_tokens", 7)]
        assert row.values["compat_session_id"] == ids[keyed("devices", "@a:example.com", "DEV1")]
        assert row.values["refresh_token"] == "syr_3"

    def test_unpaired_refresh_token_rejected(self, pipeline: RefreshTokensPipeline):
        record = pipeline.parse(
            {"id": 4, "user_id": "@a:example.com", "device_id": "DEV1", "token": "syr_4"}
        )
        with pytest.raises(ValidationError, match="not paired"):
            pipeline.parents(record)

    def test_unpaired_refresh_token_transform_rejected(self, pipeline: RefreshTokensPipeline):
        record = pipeline.parse(
            {"id": 4, "user_id": "@a:example.com", "device_id": "DEV1", "token": "syr_4"}
        )
        ids = ResolvedIds({keyed("refresh_tokens", 4): IdGenerator().new()})

        with pytest.raises(ValidationError, match="not paired") as exc_info:
            pipeline.transform(record, ids)
        assert exc_info.value.entity_type == "refresh_tokens"

    @pytest.mark.asyncio
    async def test_only_chain_heads_extracted(
        self, pipeline: RefreshTokensPipeline, legacy: Any, source_engine: AsyncEngine
    ):
        await legacy.user("@alice:example.com")
        await legacy.device("@alice:example.com", "DEV1")
        await legacy.refresh_token(1, "@alice:example.com", "DEV1", next_token_id=2)
        await legacy.refresh_token(2, "@alice:example.com", "DEV1")
        await legacy.access_token(10, "@alice:example.com", "DEV1", refresh_token_id=2)
        await legacy.access_token(11, "@alice:example.com", "DEV1", refresh_token_id=2)

        rows = await extract(source_engine, pipeline)
        assert len(rows) == 1
        assert rows[0]["id"] == 2
        assert rows[0]["access_token_id"] == 11
        assert rows[0]["access_device_id"] == "DEV1"
