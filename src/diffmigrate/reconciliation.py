"""
ReconciliationIndex - legacy id to destination id mappings per entity.

The index is built once, at session start, with one streaming scan of the
destination per entity. Lookups afterward are in-memory dictionary reads.

Ownership:
    Each session builds and owns its own index. Indexes are never shared
    between sessions, and an index is a snapshot: it is not refreshed from
    the destination while the session runs. The only additions are mappings
    returned by the session's own upserts, so that dependents migrated in
    the same session can resolve their parents.

Foreign Key Resolution:
    Each declared foreign key names its policy explicitly:

    - STRICT: the dependent record is skipped when the parent mapping is missing
    - SOFT: a null foreign key is written and the gap is recorded

Usage:
    >>> index = await ReconciliationIndex.build(
    ...     [registry.get("offices"), registry.get("doctors")],
    ...     destination_store,
    ...     session_id="nightly-2024-06-01",
    ... )
    >>> index.lookup("offices", "17")
    '4821'
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from diffmigrate.entities import EntityDefinition
from diffmigrate.exceptions import ForeignKeyResolutionError
from diffmigrate.models import FKPolicy, SourceRecord
from diffmigrate.observability import Tracer, create_tracer
from diffmigrate.observability.attributes import (
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_TYPE,
    ATTR_SESSION_ID,
)
from diffmigrate.stores.interface import DEFAULT_MAPPING_SCAN_BATCH, DestinationStore

logger = logging.getLogger(__name__)


class LookupMapping:
    """
    Bidirectional legacy id <-> destination id mapping for one entity.

    Example:
        >>> mapping = LookupMapping("offices")
        >>> mapping.record("17", "4821")
        >>> mapping.get_destination_id("17")
        '4821'
        >>> mapping.get_legacy_id("4821")
        '17'
    """

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        self._forward: dict[str, str] = {}
        self._reverse: dict[str, str] = {}
        self.duplicates = 0

    def record(self, legacy_id: str, destination_id: str) -> None:
        """
        Add or replace one mapping.

        A legacy id seen twice keeps the later destination id; the stale
        reverse entry is removed.
        """
        previous = self._forward.get(legacy_id)
        if previous is not None and previous != destination_id:
            self.duplicates += 1
            self._reverse.pop(previous, None)
        self._forward[legacy_id] = destination_id
        self._reverse[destination_id] = legacy_id

    def get_destination_id(self, legacy_id: str) -> str | None:
        return self._forward.get(legacy_id)

    def get_legacy_id(self, destination_id: str) -> str | None:
        return self._reverse.get(destination_id)

    def __contains__(self, legacy_id: object) -> bool:
        return legacy_id in self._forward

    def __len__(self) -> int:
        return len(self._forward)

    @property
    def legacy_ids(self) -> frozenset[str]:
        return frozenset(self._forward)

    def items(self) -> Iterator[tuple[str, str]]:
        return iter(self._forward.items())


@dataclass
class ForeignKeyResolution:
    """
    Outcome of resolving a record's foreign keys.

    Attributes:
        values: Destination column -> destination id (None for soft gaps).
        gaps: Soft foreign keys written as null, one dict per gap.
        error: Set when a strict foreign key could not be resolved; the
            record must be skipped.
    """

    values: dict[str, str | None] = field(default_factory=dict)
    gaps: list[dict[str, Any]] = field(default_factory=list)
    error: ForeignKeyResolutionError | None = None

    @property
    def should_skip(self) -> bool:
        return self.error is not None


class ReconciliationIndex(Mapping[str, LookupMapping]):
    """
    Session-owned snapshot of legacy -> destination mappings.

    Behaves as a read-only mapping of entity type to LookupMapping. Use
    ``build`` to create one from the destination store.
    """

    def __init__(self, mappings: Mapping[str, LookupMapping] | None = None) -> None:
        self._mappings: dict[str, LookupMapping] = dict(mappings or {})

    @classmethod
    async def build(
        cls,
        entities: Iterable[EntityDefinition],
        destination_store: DestinationStore,
        *,
        session_id: str | None = None,
        batch_size: int = DEFAULT_MAPPING_SCAN_BATCH,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> ReconciliationIndex:
        """
        Build an index with one streaming destination scan per entity.

        Args:
            entities: Entities to index. Duplicates are scanned once.
            destination_store: Store to scan.
            session_id: Owning session (for logs and spans).
            batch_size: Rows fetched per round trip of the scan.
            tracer: Optional tracer.
            enable_tracing: Whether to enable tracing when no tracer is given.

        Returns:
            The populated index.

        Raises:
            StoreConnectionError: If the destination cannot be scanned.
        """
        tracer = tracer or create_tracer(__name__, enable_tracing)
        unique = {entity.name: entity for entity in entities}
        index = cls()

        with tracer.span(
            "diffmigrate.reconciliation.build",
            {ATTR_SESSION_ID: session_id or "", ATTR_ENTITY_COUNT: len(unique)},
        ):
            for entity in unique.values():
                with tracer.span(
                    "diffmigrate.reconciliation.scan_entity",
                    {ATTR_ENTITY_TYPE: entity.name},
                ):
                    mapping = LookupMapping(entity.name)
                    async for legacy_id, destination_id in destination_store.scan_mappings(
                        entity, batch_size=batch_size
                    ):
                        mapping.record(legacy_id, destination_id)

                if mapping.duplicates:
                    logger.warning(
                        "Destination table %s has %d duplicate legacy ids; kept the last seen",
                        entity.destination_table,
                        mapping.duplicates,
                        extra={"session_id": session_id, "entity_type": entity.name},
                    )
                logger.debug(
                    "Indexed %d %s mappings",
                    len(mapping),
                    entity.name,
                    extra={"session_id": session_id, "entity_type": entity.name},
                )
                index._mappings[entity.name] = mapping

        logger.info(
            "Built reconciliation index for %d entities",
            len(unique),
            extra={"session_id": session_id, "entities": list(unique)},
        )
        return index

    def __getitem__(self, entity_type: str) -> LookupMapping:
        return self._mappings[entity_type]

    def __iter__(self) -> Iterator[str]:
        return iter(self._mappings)

    def __len__(self) -> int:
        return len(self._mappings)

    def ensure(self, entity_type: str) -> LookupMapping:
        """Get the mapping for an entity, creating an empty one if absent."""
        mapping = self._mappings.get(entity_type)
        if mapping is None:
            mapping = LookupMapping(entity_type)
            self._mappings[entity_type] = mapping
        return mapping

    def lookup(self, entity_type: str, legacy_id: str) -> str | None:
        """Destination id for a legacy id, or None if unmapped."""
        mapping = self._mappings.get(entity_type)
        if mapping is None:
            return None
        return mapping.get_destination_id(legacy_id)

    def record(self, entity_type: str, mappings: Mapping[str, str]) -> None:
        """Add mappings produced by a committed upsert."""
        target = self.ensure(entity_type)
        for legacy_id, destination_id in mappings.items():
            target.record(legacy_id, destination_id)

    def resolve_foreign_keys(
        self,
        entity: EntityDefinition,
        record: SourceRecord,
    ) -> ForeignKeyResolution:
        """
        Resolve every declared foreign key of a source record.

        A null source value is not a gap; it resolves to null under either
        policy.

        Args:
            entity: Definition of the record's entity type.
            record: Source record to resolve.

        Returns:
            ForeignKeyResolution with resolved values, soft gaps and, for an
            unresolved strict key, the error that makes the record skipped.
        """
        resolution = ForeignKeyResolution()
        for fk in entity.foreign_keys:
            raw = record.data.get(fk.source_field)
            if raw is None:
                resolution.values[fk.target_field] = None
                continue

            parent_legacy_id = str(raw)
            destination_id = self.lookup(fk.parent_entity, parent_legacy_id)
            if destination_id is not None:
                resolution.values[fk.target_field] = destination_id
                continue

            if fk.policy == FKPolicy.STRICT:
                resolution.error = ForeignKeyResolutionError(
                    entity_type=entity.name,
                    record_id=record.legacy_id,
                    field_name=fk.source_field,
                    parent_entity=fk.parent_entity,
                    parent_legacy_id=parent_legacy_id,
                )
                return resolution

            resolution.values[fk.target_field] = None
            resolution.gaps.append(
                {
                    "record_id": record.legacy_id,
                    "field": fk.source_field,
                    "parent_entity": fk.parent_entity,
                    "parent_legacy_id": parent_legacy_id,
                }
            )
        return resolution


__all__ = [
    "LookupMapping",
    "ForeignKeyResolution",
    "ReconciliationIndex",
]
