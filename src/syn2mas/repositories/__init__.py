"""
Repositories for migration state kept in the destination database.

- Checkpoint stores: per-entity progress markers
- Mapping repositories: legacy -> destination identifier mappings
"""

from syn2mas.repositories.checkpoint import (
    Checkpoint,
    CheckpointStore,
    InMemoryCheckpointStore,
    SQLCheckpointStore,
)
from syn2mas.repositories.mapping import (
    InMemoryMappingRepository,
    MappingRepository,
    SQLMappingRepository,
)

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "InMemoryMappingRepository",
    "MappingRepository",
    "SQLCheckpointStore",
    "SQLMappingRepository",
]
