"""
Users pipeline: legacy ``users`` -> ``users`` + ``user_passwords``.

User ids differing only in letter case are one user for the destination;
the most recently created row wins and the others collapse into it. The
mapping namespace "users" is keyed by the lower-cased user id, which is
also how every child pipeline references its user.
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
    s_to_datetime,
)
from syn2mas.pipelines.eligibility import eligible_user
from syn2mas.tables import synapse_users


class LegacyUser(LegacyRecord):
    SCHEMA_VERSION = 1

    name: str
    user_key: str
    password_hash: str | None = None
    creation_ts: int | None = None
    admin: bool = False
    deactivated: bool = False
    locked: bool = False


def split_user_id(user_id: str) -> tuple[str, str]:
    """
    Split ``@localpart:server`` into its parts.

    Raises:
        ValueError: If the value is not a user id
    """
    if not user_id.startswith("@") or ":" not in user_id:
        raise ValueError(f"not a user id: {user_id!r}")
    localpart, _, server = user_id[1:].partition(":")
    if not localpart:
        raise ValueError(f"empty localpart in {user_id!r}")
    return localpart, server


class UsersPipeline(EntityPipeline):
    entity_type = "users"
    order_by = ("name",)
    natural_key = ("user_key",)
    primary_table = "users"
    primary_namespace = "users"
    record_model = LegacyUser

    def source_query(self) -> sa.Select[Any]:
        u = synapse_users
        user_key = sa.func.lower(u.c.name)
        ranked = (
            sa.select(
                u.c.name,
                user_key.label("user_key"),
                u.c.password_hash,
                u.c.creation_ts,
                u.c.admin,
                u.c.deactivated,
                u.c.locked,
                sa.func.row_number()
                .over(
                    partition_by=user_key,
                    order_by=(u.c.creation_ts.desc().nulls_last(), u.c.name.asc()),
                )
                .label("dup_rank"),
            )
            .where(eligible_user(u))
            .subquery("ranked_users")
        )
        return sa.select(*[c for c in ranked.c if c.name != "dup_rank"]).where(
            ranked.c.dup_rank == 1
        )

    def allocations(self, record: LegacyRecord) -> list[MappingKey]:
        assert isinstance(record, LegacyUser)
        keys = [keyed("users", record.user_key)]
        if record.password_hash:
            keys.append(keyed("user_passwords", record.user_key))
        return keys

    def transform(self, record: LegacyRecord, ids: ResolvedIds) -> TransformedUnit:
        assert isinstance(record, LegacyUser)
        try:
            localpart, server = split_user_id(record.name)
        except ValueError as e:
            raise ValidationError(self.entity_type, record.user_key, str(e)) from None
        if server != self.config.server_name:
            raise ValidationError(
                self.entity_type,
                record.user_key,
                f"user belongs to server {server!r}, expected {self.config.server_name!r}",
            )

        user_id = ids[keyed("users", record.user_key)]
        created_at = s_to_datetime(record.creation_ts) or uuid_timestamp(user_id)
        locked_at = uuid_timestamp(user_id) if record.deactivated or record.locked else None

        records = [
            TransformedRecord(
                "users",
                {
                    "user_id": user_id,
                    "username": localpart,
                    "created_at": created_at,
                    "locked_at": locked_at,
                    "can_request_admin": record.admin,
                },
            )
        ]
        if record.password_hash:
            records.append(
                TransformedRecord(
                    "user_passwords",
                    {
                        "user_password_id": ids[keyed("user_passwords", record.user_key)],
                        "user_id": user_id,
                        "hashed_password": record.password_hash,
                        "version": 1,
                        "upgraded_from_id": None,
                        "created_at": created_at,
                    },
                )
            )
        return self.unit(record, records)
