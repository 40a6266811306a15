"""
External identifier pipeline: legacy ``user_external_ids`` ->
``upstream_oauth_links``.

Each legacy SSO provider id must be mapped to a destination upstream
provider in the configuration (``provider_mappings``); rows of unmapped
providers are rejected. The preflight check reports unmapped providers
before anything is migrated.
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
    user_key,
)
from syn2mas.pipelines.eligibility import owned_by_eligible_user
from syn2mas.tables import synapse_user_external_ids


class LegacyExternalId(LegacyRecord):
    SCHEMA_VERSION = 1

    auth_provider: str
    external_id: str
    user_id: str

    @property
    def user_key(self) -> str:
        return user_key(self.user_id)


class ExternalIdsPipeline(EntityPipeline):
    entity_type = "external_ids"
    depends_on = ("users",)
    order_by = ("auth_provider", "external_id")
    natural_key = ("auth_provider", "external_id")
    primary_table = "upstream_oauth_links"
    primary_namespace = "upstream_oauth_links"
    record_model = LegacyExternalId

    def source_query(self) -> sa.Select[Any]:
        e = synapse_user_external_ids
        return sa.select(e.c.auth_provider, e.c.external_id, e.c.user_id).where(
            owned_by_eligible_user(e.c.user_id)
        )

    def parents(self, record: LegacyRecord) -> list[MappingKey]:
        assert isinstance(record, LegacyExternalId)
        return [keyed("users", record.user_key)]

    def transform(self, record: LegacyRecord, ids: ResolvedIds) -> TransformedUnit:
        assert isinstance(record, LegacyExternalId)
        provider_id = self.config.provider_id(record.auth_provider)
        if provider_id is None:
            raise ValidationError(
                self.entity_type,
                self.record_legacy_key(record),
                f"no provider mapping configured for SSO provider {record.auth_provider!r}",
            )
        link_id = ids[(self.primary_namespace, self.record_legacy_key(record))]
        return self.unit(
            record,
            [
                TransformedRecord(
                    "upstream_oauth_links",
                    {
                        "upstream_oauth_link_id": link_id,
                        "upstream_oauth_provider_id": provider_id,
                        "user_id": self.require(ids, keyed("users", record.user_key), record),
                        "subject": record.external_id,
                        "created_at": uuid_timestamp(link_id),
                    },
                )
            ],
        )
