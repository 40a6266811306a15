"""
Identity mapping between legacy and destination identifiers.

The IdentityMapper is the only component that allocates destination
identifiers. A legacy identifier resolves to the same destination identifier
for the lifetime of the migration state: the first allocation is persisted
before any row using it is written, and every later resolution (in the same
run or a resumed one) reads it back.

Namespaces keep identifier spaces apart. Each destination row that has its
own identifier gets its own namespace, keyed by the legacy record's natural
key ("users", "user_passwords", "user_emails", "devices", ...).

Mappings of rows that end up rejected are released again, so a child row
can never resolve a parent that was not written.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from functools import partial
from typing import TypeVar
from uuid import UUID

from cachetools import LRUCache

from syn2mas.ids import IdGenerator
from syn2mas.observability import (
    ATTR_BATCH_SIZE,
    ATTR_DRY_RUN,
    ATTR_NAMESPACE,
    Tracer,
    create_tracer,
)
from syn2mas.repositories.mapping import MappingRepository
from syn2mas.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

MappingKey = tuple[str, str]


class ResolvedIds(Mapping[MappingKey, UUID]):
    """
    Read-only view of the identifiers a chunk of records needs.

    Handed to the pure transform functions, which run on worker threads and
    must not touch the database or the shared cache.

    Example:
        >>> ids = ResolvedIds({("users", "@alice:example.com"): user_id})
        >>> ids["users", "@alice:example.com"]
        UUID('...')
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[MappingKey, UUID] | None = None) -> None:
        self._entries: dict[MappingKey, UUID] = dict(entries or {})

    def __getitem__(self, key: MappingKey) -> UUID:
        return self._entries[key]

    def __iter__(self):
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def merged(self, other: Mapping[MappingKey, UUID]) -> ResolvedIds:
        entries = dict(self._entries)
        entries.update(other)
        return ResolvedIds(entries)


class IdentityMapper:
    """
    Resolves and allocates destination identifiers.

    Lookups go to an LRU cache first, then to the mapping repository.
    Allocation of missing identifiers is serialised per namespace; the new
    mappings are persisted with "insert if absent" semantics and read back,
    so concurrent allocators always agree on the winner.

    In dry-run mode allocations are kept in a process-local overlay and never
    persisted.

    Example:
        >>> mapper = IdentityMapper(SQLMappingRepository(engine))
        >>> await mapper.initialize()
        >>> ids = await mapper.resolve_many("users", ["@alice:example.com"])
    """

    def __init__(
        self,
        repository: MappingRepository,
        generator: IdGenerator | None = None,
        *,
        cache_size: int = 100_000,
        dry_run: bool = False,
        retry: RetryPolicy | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the identity mapper.

        Args:
            repository: Persistent mapping store
            generator: Identifier generator (created and seeded by initialize() if None)
            cache_size: Maximum number of cached mappings
            dry_run: Keep new allocations in memory only
            retry: Retry policy applied to repository calls
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._repository = repository
        self._generator = generator
        self._cache: LRUCache[MappingKey, UUID] = LRUCache(maxsize=cache_size)
        self._dry_run = dry_run
        self._overlay: dict[MappingKey, UUID] = {}
        self._released: set[MappingKey] = set()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._retry = retry
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def initialize(self) -> None:
        """Seed the identifier generator with the largest persisted identifier."""
        if self._generator is not None:
            return
        seed = await self._call(self._repository.max_destination_id, "mapping.max_destination_id")
        self._generator = IdGenerator(seed)
        logger.debug("Identifier generator seeded with %s", seed)

    async def _call(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        if self._retry is None:
            return await operation()
        return await self._retry.run(operation, name)

    def _cached(self, namespace: str, keys: Iterable[str]) -> tuple[dict[str, UUID], list[str]]:
        found: dict[str, UUID] = {}
        missing: list[str] = []
        for key in dict.fromkeys(keys):
            value = self._cache.get((namespace, key))
            if value is None:
                value = self._overlay.get((namespace, key))
            if value is None:
                missing.append(key)
            else:
                found[key] = value
        return found, missing

    def _remember(self, namespace: str, mappings: Mapping[str, UUID]) -> None:
        for key, value in mappings.items():
            self._cache[(namespace, key)] = value

    async def lookup_many(self, namespace: str, legacy_ids: Iterable[str]) -> dict[str, UUID]:
        """
        Return the existing mappings among ``legacy_ids`` without allocating.

        Absent keys are simply missing from the result.
        """
        found, missing = self._cached(namespace, legacy_ids)
        if missing:
            persisted = await self._call(
                lambda: self._repository.fetch(namespace, missing),
                f"mapping.fetch.{namespace}",
            )
            if self._released:
                persisted = {
                    key: value
                    for key, value in persisted.items()
                    if (namespace, key) not in self._released
                }
            self._remember(namespace, persisted)
            found.update(persisted)
        return found

    async def lookup(self, namespace: str, legacy_id: str) -> UUID | None:
        return (await self.lookup_many(namespace, [legacy_id])).get(legacy_id)

    async def resolve_many(self, namespace: str, legacy_ids: Iterable[str]) -> dict[str, UUID]:
        """
        Return destination identifiers for every legacy identifier.

        Missing mappings are allocated and (outside dry-run) persisted before
        this method returns.

        Args:
            namespace: Mapping namespace
            legacy_ids: Legacy identifiers to resolve

        Returns:
            Mapping of every requested legacy identifier to its destination identifier
        """
        keys = list(dict.fromkeys(legacy_ids))
        found, missing = self._cached(namespace, keys)
        if not missing:
            return found

        with self._tracer.span(
            "syn2mas.identity.resolve_many",
            {
                ATTR_NAMESPACE: namespace,
                ATTR_BATCH_SIZE: len(missing),
                ATTR_DRY_RUN: self._dry_run,
            },
        ):
            async with self._locks[namespace]:
                persisted = await self.lookup_many(namespace, missing)
                found.update(persisted)
                to_allocate = [key for key in missing if key not in persisted]
                if to_allocate:
                    found.update(await self._allocate(namespace, to_allocate))
        return found

    async def resolve(self, namespace: str, legacy_id: str) -> UUID:
        return (await self.resolve_many(namespace, [legacy_id]))[legacy_id]

    async def _allocate(self, namespace: str, keys: list[str]) -> dict[str, UUID]:
        if self._generator is None:
            await self.initialize()
        assert self._generator is not None
        candidates = {key: self._generator.new() for key in keys}

        if self._dry_run:
            for key, value in candidates.items():
                self._overlay[(namespace, key)] = value
                self._released.discard((namespace, key))
            return candidates

        await self._call(
            lambda: self._repository.insert_missing(namespace, candidates),
            f"mapping.insert.{namespace}",
        )
        # Read back: another allocator may have won the insert.
        authoritative = await self._call(
            lambda: self._repository.fetch(namespace, keys),
            f"mapping.fetch.{namespace}",
        )
        lost = [key for key in keys if authoritative.get(key) != candidates[key]]
        if lost:
            logger.debug(
                "Lost %d allocation race(s) in namespace %s; using persisted identifiers",
                len(lost),
                namespace,
            )
        missing = [key for key in keys if key not in authoritative]
        if missing:
            raise RuntimeError(
                f"Mappings for {len(missing)} key(s) in namespace {namespace} "
                "were not persisted"
            )
        self._remember(namespace, authoritative)
        return authoritative

    async def release(self, mappings: Iterable[tuple[MappingKey, UUID]]) -> int:
        """
        Forget mappings allocated for rows that were never written.

        A persisted mapping is only deleted while it still points at the given
        identifier. In dry-run mode nothing persisted is touched; the keys are
        hidden from later lookups of this mapper instead.

        Returns:
            Number of mappings released
        """
        by_namespace: defaultdict[str, dict[str, UUID]] = defaultdict(dict)
        for (namespace, key), value in mappings:
            by_namespace[namespace][key] = value

        released = 0
        for namespace, entries in by_namespace.items():
            async with self._locks[namespace]:
                for key in entries:
                    self._cache.pop((namespace, key), None)
                    self._overlay.pop((namespace, key), None)
                if self._dry_run:
                    self._released.update((namespace, key) for key in entries)
                    released += len(entries)
                else:
                    released += await self._call(
                        partial(self._repository.delete, namespace, entries),
                        f"mapping.delete.{namespace}",
                    )
            logger.debug("Released %d mapping(s) in namespace %s", len(entries), namespace)
        return released

    def clear_cache(self) -> None:
        self._cache.clear()
        self._overlay.clear()
        self._released.clear()


__all__ = [
    "IdentityMapper",
    "MappingKey",
    "ResolvedIds",
]
