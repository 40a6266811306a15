"""
Identifier helpers.

Legacy identifiers are the string form of a legacy row's natural key; they
are the lookup keys of the identifier mapping. Destination identifiers are
ULIDs, stored as UUIDs.

The generator is monotonic: every identifier it hands out sorts after the
previous one and after the seed it was created with. Seeding it with the
largest identifier already persisted means a resumed run never allocates an
identifier that collides with, or sorts before, an earlier run's.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from ulid import ULID

MAX_ULID = (1 << 128) - 1


def legacy_key(*parts: Any) -> str:
    """
    Encode a legacy natural key.

    Single-part keys use the plain string form of the value; composite keys
    are encoded as a compact JSON array so that the encoding is unambiguous.

    Example:
        >>> legacy_key("@alice:example.com")
        '@alice:example.com'
        >>> legacy_key("@alice:example.com", "DEVICE1")
        '["@alice:example.com","DEVICE1"]'
    """
    if len(parts) == 1:
        return str(parts[0])
    return json.dumps(list(parts), separators=(",", ":"), ensure_ascii=False)


def encode_ordering_key(values: Sequence[Any]) -> str:
    """Serialize the ordering key of a row for storage in a checkpoint."""
    return json.dumps(list(values), separators=(",", ":"), ensure_ascii=False)


def decode_ordering_key(encoded: str | None) -> tuple[Any, ...] | None:
    if encoded is None:
        return None
    return tuple(json.loads(encoded))


def uuid_timestamp(value: UUID) -> datetime:
    """Return the creation time embedded in a ULID-backed UUID (UTC)."""
    return ULID.from_uuid(value).datetime


class IdGenerator:
    """
    Monotonic ULID generator.

    Thread-safe, so it may be shared by every pipeline of a run.

    Example:
        >>> gen = IdGenerator(seed=last_persisted_id)
        >>> a, b = gen.new(), gen.new()
        >>> a < b
        True
    """

    def __init__(self, seed: UUID | None = None) -> None:
        self._last = seed.int if seed is not None else 0
        self._lock = threading.Lock()

    @property
    def last(self) -> UUID | None:
        return UUID(int=self._last) if self._last else None

    def observe(self, value: UUID) -> None:
        """Raise the floor so that future identifiers sort after ``value``."""
        with self._lock:
            if value.int > self._last:
                self._last = value.int

    def new(self) -> UUID:
        """Allocate a new identifier."""
        with self._lock:
            candidate = int(ULID())
            if candidate <= self._last:
                # Same millisecond, or a seed from a clock ahead of ours.
                if self._last >= MAX_ULID:
                    raise OverflowError("ULID space exhausted")
                candidate = self._last + 1
            self._last = candidate
            return ULID.from_int(candidate).to_uuid()

    def new_many(self, count: int) -> list[UUID]:
        return [self.new() for _ in range(count)]


__all__ = [
    "IdGenerator",
    "decode_ordering_key",
    "encode_ordering_key",
    "legacy_key",
    "uuid_timestamp",
]
