"""
Third-party identifier pipeline: legacy ``user_threepids`` ->
``user_emails`` or ``user_unsupported_third_party_ids``.

E-mail addresses become user emails; the earliest added address of a user
is the primary one. Other media (phone numbers) have no destination
equivalent and are kept as unsupported third-party ids.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa

from syn2mas.identity import MappingKey, ResolvedIds
from syn2mas.pipelines.base import (
    EntityPipeline,
    LegacyRecord,
    TransformedRecord,
    TransformedUnit,
    keyed,
    ms_to_datetime,
    user_key,
)
from syn2mas.pipelines.eligibility import owned_by_eligible_user
from syn2mas.tables import synapse_user_threepids

EMAIL_MEDIUM = "email"


class LegacyThreepid(LegacyRecord):
    SCHEMA_VERSION = 1

    user_id: str
    medium: str
    address: str
    address_key: str
    validated_at: int | None = None
    added_at: int
    primary_rank: int = 1

    @property
    def user_key(self) -> str:
        return user_key(self.user_id)


class ThreepidsPipeline(EntityPipeline):
    entity_type = "threepids"
    depends_on = ("users",)
    order_by = ("medium", "address")
    natural_key = ("medium", "address_key")
    primary_table = "user_emails"
    primary_namespace = "user_emails"
    record_model = LegacyThreepid

    def source_query(self) -> sa.Select[Any]:
        t = synapse_user_threepids
        address_key = sa.func.lower(t.c.address)
        ranked = (
            sa.select(
                t.c.user_id,
                t.c.medium,
                t.c.address,
                address_key.label("address_key"),
                t.c.validated_at,
                t.c.added_at,
                sa.func.row_number()
                .over(
                    partition_by=(t.c.medium, address_key),
                    order_by=(t.c.added_at.desc(), t.c.address.asc()),
                )
                .label("dup_rank"),
            )
            .where(owned_by_eligible_user(t.c.user_id))
            .subquery("ranked_threepids")
        )
        return sa.select(
            ranked.c.user_id,
            ranked.c.medium,
            ranked.c.address,
            ranked.c.address_key,
            ranked.c.validated_at,
            ranked.c.added_at,
            sa.func.row_number()
            .over(
                partition_by=(sa.func.lower(ranked.c.user_id), ranked.c.medium),
                order_by=(ranked.c.added_at.asc(), ranked.c.address.asc()),
            )
            .label("primary_rank"),
        ).where(ranked.c.dup_rank == 1)

    def count_query(self) -> sa.Select[Any]:
        subq = self.source_query().subquery()
        return sa.select(sa.func.count()).select_from(subq).where(subq.c.medium == EMAIL_MEDIUM)

    def allocations(self, record: LegacyRecord) -> list[MappingKey]:
        assert isinstance(record, LegacyThreepid)
        if record.medium != EMAIL_MEDIUM:
            return []
        return [keyed("user_emails", record.medium, record.address_key)]

    def parents(self, record: LegacyRecord) -> list[MappingKey]:
        assert isinstance(record, LegacyThreepid)
        return [keyed("users", record.user_key)]

    def transform(self, record: LegacyRecord, ids: ResolvedIds) -> TransformedUnit:
        assert isinstance(record, LegacyThreepid)
        user_id = self.require(ids, keyed("users", record.user_key), record)
        created_at = ms_to_datetime(record.added_at)

        if record.medium == EMAIL_MEDIUM:
            row = TransformedRecord(
                "user_emails",
                {
                    "user_email_id": ids[keyed("user_emails", record.medium, record.address_key)],
                    "user_id": user_id,
                    "email": record.address,
                    "created_at": created_at,
                    "confirmed_at": ms_to_datetime(record.validated_at),
                    "is_primary": record.primary_rank == 1,
                },
            )
        else:
            row = TransformedRecord(
                "user_unsupported_third_party_ids",
                {
                    "user_id": user_id,
                    "medium": record.medium,
                    "address": record.address,
                    "created_at": created_at,
                },
            )
        return self.unit(record, [row])
