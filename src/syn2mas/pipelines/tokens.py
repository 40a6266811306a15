"""
Token pipelines.

- ``access_tokens``: legacy ``access_tokens`` -> ``compat_access_tokens``.
  A token bound to a device joins that device's session; a token without a
  device gets a session of its own (namespace "token_sessions", keyed by the
  token id). Puppet tokens (issued by an admin to act as another user) are
  not migrated, nor are tokens of hidden devices.
- ``refresh_tokens``: legacy ``refresh_tokens`` -> ``compat_refresh_tokens``.
  Only the head of each refresh chain is migrated; superseded tokens (those
  with a successor) are filtered out.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa

from syn2mas.exceptions import ValidationError
from syn2mas.identity import MappingKey, ResolvedIds
from syn2mas.ids import uuid_timestamp
from syn2mas.pipelines.base import (
    EntityPipeline,
    LegacyRecord,
    TransformedRecord,
    TransformedUnit,
    keyed,
    ms_to_datetime,
    user_key,
)
from syn2mas.pipelines.devices import device_key
from syn2mas.pipelines.eligibility import is_admin, owned_by_eligible_user
from syn2mas.tables import synapse_access_tokens, synapse_devices, synapse_refresh_tokens


class LegacyAccessToken(LegacyRecord):
    SCHEMA_VERSION = 1

    id: int
    user_id: str
    device_id: str | None = None
    token: str
    valid_until_ms: int | None = None
    last_validated: int | None = None
    admin: bool = False

    @property
    def user_key(self) -> str:
        return user_key(self.user_id)


class LegacyRefreshToken(LegacyRecord):
    SCHEMA_VERSION = 1

    id: int
    user_id: str
    device_id: str
    token: str
    access_token_id: int | None = None
    access_device_id: str | None = None

    @property
    def user_key(self) -> str:
        return user_key(self.user_id)


def session_key(user_key: str, device_id: str | None, access_token_id: int) -> MappingKey:
    """Mapping key of the session an access token belongs to."""
    if device_id is not None:
        return device_key(user_key, device_id)
    return keyed("token_sessions", access_token_id)


class AccessTokensPipeline(EntityPipeline):
    entity_type = "access_tokens"
    depends_on = ("users", "devices")
    order_by = ("id",)
    natural_key = ("id",)
    primary_table = "compat_access_tokens"
    primary_namespace = "access_tokens"
    record_model = LegacyAccessToken

    def source_query(self) -> sa.Select[Any]:
        at = synapse_access_tokens
        hidden_device = (
            sa.exists()
            .where(synapse_devices.c.user_id == at.c.user_id)
            .where(synapse_devices.c.device_id == at.c.device_id)
            .where(synapse_devices.c.hidden)
        )
        return sa.select(
            at.c.id,
            at.c.user_id,
            at.c.device_id,
            at.c.token,
            at.c.valid_until_ms,
            at.c.last_validated,
            is_admin(at.c.user_id).label("admin"),
        ).where(
            at.c.puppets_user_id.is_(None),
            ~hidden_device,
            owned_by_eligible_user(at.c.user_id),
        )

    def allocations(self, record: LegacyRecord) -> list[MappingKey]:
        assert isinstance(record, LegacyAccessToken)
        keys = [keyed("access_tokens", record.id)]
        if record.device_id is None:
            keys.append(keyed("token_sessions", record.id))
        return keys

    def parents(self, record: LegacyRecord) -> list[MappingKey]:
        assert isinstance(record, LegacyAccessToken)
        keys = [keyed("users", record.user_key)]
        if record.device_id is not None:
            keys.append(device_key(record.user_key, record.device_id))
        return keys

    def transform(self, record: LegacyRecord, ids: ResolvedIds) -> TransformedUnit:
        assert isinstance(record, LegacyAccessToken)
        token_id = ids[keyed("access_tokens", record.id)]
        user_id = self.require(ids, keyed("users", record.user_key), record)
        session_id = self.require(
            ids, session_key(record.user_key, record.device_id, record.id), record
        )
        last_validated = ms_to_datetime(record.last_validated)
        created_at = last_validated or uuid_timestamp(token_id)

        records = []
        if record.device_id is None:
            records.append(
                TransformedRecord(
                    "compat_sessions",
                    {
                        "compat_session_id": session_id,
                        "user_id": user_id,
                        "device_id": None,
                        "human_name": None,
                        "created_at": created_at,
                        "finished_at": None,
                        "is_synapse_admin": record.admin,
                        "last_active_at": last_validated,
                        "last_active_ip": None,
                        "user_agent": None,
                    },
                )
            )
        records.append(
            TransformedRecord(
                "compat_access_tokens",
                {
                    "compat_access_token_id": token_id,
                    "compat_session_id": session_id,
                    "access_token": record.token,
                    "created_at": created_at,
                    "expires_at": ms_to_datetime(record.valid_until_ms),
                },
            )
        )
        return self.unit(record, records)


class RefreshTokensPipeline(EntityPipeline):
    entity_type = "refresh_tokens"
    depends_on = ("access_tokens",)
    order_by = ("id",)
    natural_key = ("id",)
    primary_table = "compat_refresh_tokens"
    primary_namespace = "refresh_tokens"
    record_model = LegacyRefreshToken

    def source_query(self) -> sa.Select[Any]:
        rt = synapse_refresh_tokens
        at = synapse_access_tokens
        latest = (
            sa.select(
                at.c.refresh_token_id,
                sa.func.max(at.c.id).label("access_token_id"),
            )
            .where(at.c.refresh_token_id.is_not(None), at.c.puppets_user_id.is_(None))
            .group_by(at.c.refresh_token_id)
            .subquery("latest_access_tokens")
        )
        paired = at.alias("paired_access_tokens")
        return (
            sa.select(
                rt.c.id,
                rt.c.user_id,
                rt.c.device_id,
                rt.c.token,
                latest.c.access_token_id,
                paired.c.device_id.label("access_device_id"),
            )
            .select_from(
                rt.outerjoin(latest, latest.c.refresh_token_id == rt.c.id).outerjoin(
                    paired, paired.c.id == latest.c.access_token_id
                )
            )
            .where(rt.c.next_token_id.is_(None), owned_by_eligible_user(rt.c.user_id))
        )

    def parents(self, record: LegacyRecord) -> list[MappingKey]:
        assert isinstance(record, LegacyRefreshToken)
        if record.access_token_id is None:
            raise ValidationError(
                self.entity_type,
                self.record_legacy_key(record),
                "refresh token is not paired with any access token",
            )
        return [
            keyed("users", record.user_key),
            keyed("access_tokens", record.access_token_id),
            session_key(record.user_key, record.access_device_id, record.access_token_id),
        ]

    def transform(self, record: LegacyRecord, ids: ResolvedIds) -> TransformedUnit:
        assert isinstance(record, LegacyRefreshToken)
        if record.access_token_id is None:
            raise ValidationError(
                self.entity_type,
                self.record_legacy_key(record),
                "refresh token is not paired with any access token",
            )
        refresh_id = ids[keyed("refresh_tokens", record.id)]
        return self.unit(
            record,
            [
                TransformedRecord(
                    "compat_refresh_tokens",
                    {
                        "compat_refresh_token_id": refresh_id,
                        "compat_session_id": self.require(
                            ids,
                            session_key(
                                record.user_key, record.access_device_id, record.access_token_id
                            ),
                            record,
                        ),
                        "compat_access_token_id": self.require(
                            ids, keyed("access_tokens", record.access_token_id), record
                        ),
                        "refresh_token": record.token,
                        "created_at": uuid_timestamp(refresh_id),
                    },
                )
            ],
        )
