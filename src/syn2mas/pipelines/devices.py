"""
Devices pipeline: legacy ``devices`` -> ``compat_sessions``.

Every visible device becomes a compatibility session. Hidden devices are
internal to the legacy server and are not migrated.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa

from syn2mas.identity import MappingKey, ResolvedIds
from syn2mas.ids import uuid_timestamp
from syn2mas.pipelines.base import (
    EntityPipeline,
    LegacyRecord,
    TransformedRecord,
    TransformedUnit,
    keyed,
    ms_to_datetime,
)
from syn2mas.pipelines.eligibility import is_admin, owned_by_eligible_user
from syn2mas.tables import synapse_devices


class LegacyDevice(LegacyRecord):
    SCHEMA_VERSION = 1

    user_id: str
    user_key: str
    device_id: str
    display_name: str | None = None
    last_seen: int | None = None
    ip: str | None = None
    user_agent: str | None = None
    admin: bool = False


def device_key(user_key: str, device_id: str) -> MappingKey:
    return keyed("devices", user_key, device_id)


class DevicesPipeline(EntityPipeline):
    entity_type = "devices"
    depends_on = ("users",)
    order_by = ("user_id", "device_id")
    natural_key = ("user_key", "device_id")
    primary_table = "compat_sessions"
    primary_namespace = "devices"
    record_model = LegacyDevice

    def source_query(self) -> sa.Select[Any]:
        d = synapse_devices
        user_key = sa.func.lower(d.c.user_id)
        ranked = (
            sa.select(
                d.c.user_id,
                user_key.label("user_key"),
                d.c.device_id,
                d.c.display_name,
                d.c.last_seen,
                d.c.ip,
                d.c.user_agent,
                is_admin(d.c.user_id).label("admin"),
                sa.func.row_number()
                .over(
                    partition_by=(user_key, d.c.device_id),
                    order_by=(d.c.last_seen.desc().nulls_last(), d.c.user_id.asc()),
                )
                .label("dup_rank"),
            )
            .where(sa.not_(d.c.hidden), owned_by_eligible_user(d.c.user_id))
            .subquery("ranked_devices")
        )
        return sa.select(*[c for c in ranked.c if c.name != "dup_rank"]).where(
            ranked.c.dup_rank == 1
        )

    def parents(self, record: LegacyRecord) -> list[MappingKey]:
        assert isinstance(record, LegacyDevice)
        return [keyed("users", record.user_key)]

    def transform(self, record: LegacyRecord, ids: ResolvedIds) -> TransformedUnit:
        assert isinstance(record, LegacyDevice)
        session_id = ids[device_key(record.user_key, record.device_id)]
        last_active_at = ms_to_datetime(record.last_seen)
        return self.unit(
            record,
            [
                TransformedRecord(
                    "compat_sessions",
                    {
                        "compat_session_id": session_id,
                        "user_id": self.require(ids, keyed("users", record.user_key), record),
                        "device_id": record.device_id,
                        "human_name": record.display_name,
                        "created_at": last_active_at or uuid_timestamp(session_id),
                        "finished_at": None,
                        "is_synapse_admin": record.admin,
                        "last_active_at": last_active_at,
                        "last_active_ip": record.ip,
                        "user_agent": record.user_agent,
                    },
                )
            ],
        )
