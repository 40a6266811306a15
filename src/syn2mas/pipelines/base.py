"""
Base types of the entity pipelines.

An EntityPipeline describes how one legacy entity type is extracted and
turned into destination rows:

- ``source_query()`` selects the eligible legacy rows (soft-deleted rows and
  natural-key duplicates already filtered out), exposing the ``order_by``
  columns used for keyset pagination and checkpoints.
- ``allocations(record)`` names the destination identifiers the record owns.
- ``parents(record)`` names the identifiers it references.
- ``transform(record, ids)`` is a pure function producing the destination
  rows; it runs on worker threads and must not do any I/O.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar
from uuid import UUID

import pydantic
import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict

from syn2mas.config import MigratorConfig
from syn2mas.exceptions import DanglingReferenceError, RowError, ValidationError
from syn2mas.identity import MappingKey, ResolvedIds
from syn2mas.ids import legacy_key
from syn2mas.tables import destination_table


class LegacyRecord(BaseModel):
    """
    Immutable, validated view of one legacy row.

    SCHEMA_VERSION identifies the version of the adapter; bump it whenever
    the mapping from legacy columns to fields changes.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    SCHEMA_VERSION: ClassVar[int] = 1


@dataclass(frozen=True)
class TransformedRecord:
    """A destination row: target table plus column values."""

    table: str
    values: dict[str, Any]

    @property
    def primary_key(self) -> tuple[Any, ...]:
        columns = destination_table(self.table).primary_key.columns
        return tuple(self.values[column.name] for column in columns)


@dataclass(frozen=True)
class TransformedUnit:
    """
    All destination rows produced by one legacy record.

    Units are the smallest thing the writer commits; a unit is written
    completely or not at all.

    ``owned`` holds the identifier mappings allocated for the legacy record;
    they are released when the unit is rejected.
    """

    entity_type: str
    legacy_key: str
    ordering_key: tuple[Any, ...]
    records: tuple[TransformedRecord, ...]
    owned: tuple[tuple[MappingKey, UUID], ...] = ()


@dataclass(frozen=True)
class RejectedRow:
    """A legacy row that failed before reaching the writer."""

    legacy_key: str
    ordering_key: tuple[Any, ...]
    error: RowError
    owned: tuple[tuple[MappingKey, UUID], ...] = ()


@dataclass
class Batch:
    """
    One chunk of an entity's rows, ready to commit.

    Attributes:
        entity_type: Entity type of the rows
        sequence: Position of the batch within the run (0-based)
        units: Transformed units in extraction order
        rejected: Rows rejected during parsing, resolution or transformation
        last_key: Ordering key of the last extracted row (checkpoint candidate)
        rows_read: Legacy rows in the chunk
    """

    entity_type: str
    sequence: int
    units: list[TransformedUnit]
    rejected: list[RejectedRow]
    last_key: tuple[Any, ...]
    rows_read: int = field(default=0)

    @property
    def record_count(self) -> int:
        return sum(len(unit.records) for unit in self.units)


def ms_to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def s_to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def user_key(user_id: str) -> str:
    """Natural key of a legacy user: the lower-cased user id."""
    return user_id.lower()


def keyed(namespace: str, *parts: Any) -> MappingKey:
    return (namespace, legacy_key(*parts))


def _coerce(column: sa.ColumnElement[Any], value: Any) -> Any:
    # Single-column legacy keys are stored as strings.
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if python_type is int and not isinstance(value, int):
        return int(value)
    return value


class EntityPipeline(ABC):
    """
    Abstract base class of the entity pipelines.

    Subclasses declare the class attributes and implement `source_query`
    and `transform`.
    """

    entity_type: ClassVar[str]
    depends_on: ClassVar[tuple[str, ...]] = ()
    order_by: ClassVar[tuple[str, ...]]
    natural_key: ClassVar[tuple[str, ...]]
    primary_table: ClassVar[str]
    primary_namespace: ClassVar[str]
    strict: ClassVar[bool] = False
    record_model: ClassVar[type[LegacyRecord]]

    def __init__(self, config: MigratorConfig) -> None:
        self.config = config

    @property
    def is_strict(self) -> bool:
        return self.config.is_strict(self.entity_type, self.strict)

    @abstractmethod
    def source_query(self) -> sa.Select[Any]:
        """Select every eligible legacy row, exposing order_by and natural_key columns."""

    def count_query(self) -> sa.Select[Any]:
        """Count the legacy rows that produce a primary-table row."""
        subq = self.source_query().subquery()
        return sa.select(sa.func.count()).select_from(subq)

    def lookup_query(self, legacy_id: str) -> sa.Select[Any]:
        """Select the eligible legacy row with the given natural key."""
        subq = self.source_query().subquery()
        if len(self.natural_key) == 1:
            values: Sequence[Any] = [legacy_id]
        else:
            values = json.loads(legacy_id)
        return sa.select(subq).where(
            *[
                subq.c[column] == _coerce(subq.c[column], value)
                for column, value in zip(self.natural_key, values, strict=True)
            ]
        )

    def parse(self, row: Mapping[str, Any]) -> LegacyRecord:
        """
        Validate a legacy row.

        Raises:
            ValidationError: If the row does not fit the record model
        """
        try:
            return self.record_model.model_validate(dict(row))
        except pydantic.ValidationError as e:
            first = e.errors()[0] if e.errors() else {"msg": str(e), "loc": ()}
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise ValidationError(
                self.entity_type,
                self.row_legacy_key(row),
                f"{location}: {first['msg']}" if location else str(first["msg"]),
            ) from e

    def row_legacy_key(self, row: Mapping[str, Any]) -> str:
        return legacy_key(*(row.get(column) for column in self.natural_key))

    def record_legacy_key(self, record: LegacyRecord) -> str:
        return legacy_key(*(getattr(record, column) for column in self.natural_key))

    def ordering_key(self, row: Mapping[str, Any]) -> tuple[Any, ...]:
        return tuple(row[column] for column in self.order_by)

    def allocations(self, record: LegacyRecord) -> list[MappingKey]:
        """Identifiers owned by the record (allocated if missing)."""
        return [(self.primary_namespace, self.record_legacy_key(record))]

    def parents(self, record: LegacyRecord) -> list[MappingKey]:
        """Identifiers the record references (must already exist)."""
        return []

    @abstractmethod
    def transform(self, record: LegacyRecord, ids: ResolvedIds) -> TransformedUnit:
        """Produce the destination rows of a record. Pure; may raise RowError."""

    def unit(self, record: LegacyRecord, records: list[TransformedRecord]) -> TransformedUnit:
        return TransformedUnit(
            entity_type=self.entity_type,
            legacy_key=self.record_legacy_key(record),
            ordering_key=tuple(getattr(record, column) for column in self.order_by),
            records=tuple(records),
        )

    def require(self, ids: ResolvedIds, key: MappingKey, record: LegacyRecord) -> UUID:
        """Return a referenced identifier or raise DanglingReferenceError."""
        try:
            return ids[key]
        except KeyError:
            raise DanglingReferenceError(
                self.entity_type,
                self.record_legacy_key(record),
                parent_namespace=key[0],
                parent_key=key[1],
            ) from None


__all__ = [
    "Batch",
    "EntityPipeline",
    "LegacyRecord",
    "RejectedRow",
    "TransformedRecord",
    "TransformedUnit",
    "keyed",
    "ms_to_datetime",
    "s_to_datetime",
    "user_key",
]
