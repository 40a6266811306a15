"""
Entity pipelines.

Each pipeline migrates one legacy entity type. They run in dependency
order: users first, then the entities that reference users, then tokens.
"""

from syn2mas.config import MigratorConfig
from syn2mas.pipelines.base import (
    Batch,
    EntityPipeline,
    LegacyRecord,
    RejectedRow,
    TransformedRecord,
    TransformedUnit,
)
from syn2mas.pipelines.devices import DevicesPipeline, LegacyDevice
from syn2mas.pipelines.external_ids import ExternalIdsPipeline, LegacyExternalId
from syn2mas.pipelines.runner import CancellationToken, PipelineRunner, keyset_query
from syn2mas.pipelines.threepids import LegacyThreepid, ThreepidsPipeline
from syn2mas.pipelines.tokens import (
    AccessTokensPipeline,
    LegacyAccessToken,
    LegacyRefreshToken,
    RefreshTokensPipeline,
)
from syn2mas.pipelines.users import LegacyUser, UsersPipeline

PIPELINE_CLASSES: tuple[type[EntityPipeline], ...] = (
    UsersPipeline,
    ThreepidsPipeline,
    ExternalIdsPipeline,
    DevicesPipeline,
    AccessTokensPipeline,
    RefreshTokensPipeline,
)


def build_pipelines(config: MigratorConfig) -> dict[str, EntityPipeline]:
    """
    Instantiate the pipelines selected by the configuration.

    Returns:
        Pipelines keyed by entity type, in dependency order
    """
    return {
        cls.entity_type: cls(config)
        for cls in PIPELINE_CLASSES
        if config.entity_overrides.selects(cls.entity_type)
    }


__all__ = [
    "AccessTokensPipeline",
    "Batch",
    "CancellationToken",
    "DevicesPipeline",
    "EntityPipeline",
    "ExternalIdsPipeline",
    "LegacyAccessToken",
    "LegacyDevice",
    "LegacyExternalId",
    "LegacyRecord",
    "LegacyRefreshToken",
    "LegacyThreepid",
    "LegacyUser",
    "PIPELINE_CLASSES",
    "PipelineRunner",
    "RefreshTokensPipeline",
    "RejectedRow",
    "ThreepidsPipeline",
    "TransformedRecord",
    "TransformedUnit",
    "UsersPipeline",
    "build_pipelines",
    "keyset_query",
]
