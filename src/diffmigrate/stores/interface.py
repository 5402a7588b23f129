"""
Store protocols at the engine boundary.

The engine reads from a legacy source store and reads from and writes to a
modern destination store. Both are described here as protocols; concrete
backends live in sibling modules.

Source stores are read-only. They provide time-range-filterable, paginated
scans ordered by legacy identifier.

Destination stores provide the reconciliation columns (legacy id, destination
id, timestamp, content hash) and an idempotent upsert keyed by legacy id.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from diffmigrate.entities import EntityDefinition
from diffmigrate.models import DestinationRecord, SourceRecord

DEFAULT_MAPPING_SCAN_BATCH = 5000


def legacy_sort_key(legacy_id: str) -> tuple[int, int | str]:
    """
    Order numeric ids numerically and everything else lexically after them.

    The order stores page in and the order deletes are reported in.
    """
    if legacy_id.isascii() and legacy_id.isdigit():
        return (0, int(legacy_id))
    return (1, legacy_id)


@runtime_checkable
class SourceStore(Protocol):
    """Read-only access to the legacy store."""

    async def scan(
        self,
        entity: EntityDefinition,
        *,
        offset: int,
        limit: int,
        timestamp_field: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[SourceRecord]:
        """
        Read one page of an entity, ordered by legacy id.

        Args:
            entity: Entity to read.
            offset: Rows to skip.
            limit: Maximum rows to return.
            timestamp_field: Column used as the record timestamp and filter.
            since: Only rows modified at or after this time.
            until: Only rows modified before this time.

        Returns:
            Up to ``limit`` records; fewer (or none) at the end of the scan.
        """
        ...

    async def fetch_by_ids(
        self,
        entity: EntityDefinition,
        legacy_ids: Sequence[str],
        *,
        timestamp_field: str,
    ) -> list[SourceRecord]:
        """
        Read specific records by legacy id.

        Ids that no longer exist are silently absent from the result.
        Callers keep ``legacy_ids`` within the parameter limit of the backend.
        """
        ...

    async def count(
        self,
        entity: EntityDefinition,
        *,
        timestamp_field: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        """Count rows matching the same filter as ``scan``."""
        ...


@runtime_checkable
class DestinationStore(Protocol):
    """Reconciliation reads and idempotent writes against the modern store."""

    def scan_mappings(
        self,
        entity: EntityDefinition,
        *,
        batch_size: int = DEFAULT_MAPPING_SCAN_BATCH,
    ) -> AsyncIterator[tuple[str, str]]:
        """
        Stream ``(legacy_id, destination_id)`` pairs for every migrated row.

        One sequential scan; rows without a legacy id are left out.
        """
        ...

    async def find_by_legacy_ids(
        self,
        entity: EntityDefinition,
        legacy_ids: Sequence[str],
        *,
        hash_column: str | None = None,
    ) -> list[DestinationRecord]:
        """
        Read reconciliation columns for specific legacy ids.

        Args:
            entity: Entity to read.
            legacy_ids: Legacy ids (at most 1000 per call).
            hash_column: Column holding the content hash, if hashing is used.

        Returns:
            Records for the ids that exist in the destination.
        """
        ...

    async def upsert(
        self,
        entity: EntityDefinition,
        rows: Sequence[Mapping[str, Any]],
    ) -> dict[str, str]:
        """
        Insert or update rows keyed by the entity's legacy id column.

        All rows are applied in one transaction; either every row is committed
        or none is. Repeating the call with the same rows leaves the
        destination unchanged.

        Returns:
            Mapping of legacy id to destination id for every row.
        """
        ...

    async def count(self, entity: EntityDefinition) -> int:
        """Count rows in the entity's destination table."""
        ...


__all__ = [
    "DEFAULT_MAPPING_SCAN_BATCH",
    "legacy_sort_key",
    "SourceStore",
    "DestinationStore",
]
