"""
In-memory source and destination stores.

Useful for tests and dry runs. All data is lost when the process exits.

Example:
    >>> source = InMemorySourceStore()
    >>> source.add("offices", SourceRecord("1", updated_at, {"id": 1, "name": "Main St"}))
    >>> destination = InMemoryDestinationStore()
    >>> await destination.upsert(offices, [{"legacy_office_id": "1", "name": "Main St"}])
    {'1': '1'}
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from diffmigrate.entities import EntityDefinition
from diffmigrate.exceptions import ValidationError
from diffmigrate.models import DestinationRecord, SourceRecord, as_utc
from diffmigrate.stores.interface import DEFAULT_MAPPING_SCAN_BATCH, legacy_sort_key


def _in_window(timestamp: datetime, since: datetime | None, until: datetime | None) -> bool:
    timestamp = as_utc(timestamp)
    if since is not None and timestamp < as_utc(since):
        return False
    return not (until is not None and timestamp >= as_utc(until))


class InMemorySourceStore:
    """
    Source store holding SourceRecords per entity.

    Records are keyed by legacy id; adding a record with an existing id
    replaces it.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, SourceRecord]] = {}

    def add(self, entity_type: str, *records: SourceRecord) -> None:
        table = self._tables.setdefault(entity_type, {})
        for record in records:
            table[record.legacy_id] = record

    def add_many(self, entity_type: str, records: Iterable[SourceRecord]) -> None:
        self.add(entity_type, *records)

    def remove(self, entity_type: str, legacy_id: str) -> None:
        self._tables.get(entity_type, {}).pop(legacy_id, None)

    def _ordered(
        self,
        entity: EntityDefinition,
        since: datetime | None,
        until: datetime | None,
    ) -> list[SourceRecord]:
        table = self._tables.get(entity.name, {})
        records = [r for r in table.values() if _in_window(r.updated_at, since, until)]
        return sorted(records, key=lambda r: legacy_sort_key(r.legacy_id))

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
        return self._ordered(entity, since, until)[offset : offset + limit]

    async def fetch_by_ids(
        self,
        entity: EntityDefinition,
        legacy_ids: Sequence[str],
        *,
        timestamp_field: str,
    ) -> list[SourceRecord]:
        table = self._tables.get(entity.name, {})
        return [table[legacy_id] for legacy_id in legacy_ids if legacy_id in table]

    async def count(
        self,
        entity: EntityDefinition,
        *,
        timestamp_field: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        return len(self._ordered(entity, since, until))


class InMemoryDestinationStore:
    """
    Destination store holding row dictionaries per entity.

    Destination ids are assigned sequentially per entity. Upserts are
    keyed by the entity's legacy id column, so replaying a batch updates the
    same rows instead of adding new ones.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._next_ids: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self.upsert_calls = 0

    def seed(
        self,
        entity: EntityDefinition,
        legacy_id: str,
        *,
        updated_at: datetime | None = None,
        content_hash: str | None = None,
        **data: Any,
    ) -> str:
        """
        Insert a row directly, bypassing upsert bookkeeping.

        Returns:
            The assigned destination id.
        """
        row = dict(data)
        row[entity.legacy_id_column] = legacy_id
        if updated_at is not None:
            row[entity.destination_timestamp_column] = updated_at
        if content_hash is not None and entity.content_hash_column:
            row[entity.content_hash_column] = content_hash
        return self._write(entity, legacy_id, row)

    def _write(self, entity: EntityDefinition, legacy_id: str, row: dict[str, Any]) -> str:
        table = self._tables.setdefault(entity.name, {})
        existing = table.get(legacy_id)
        if existing is not None:
            destination_id = existing[entity.destination_id_column]
        else:
            next_id = self._next_ids.get(entity.name, 1)
            self._next_ids[entity.name] = next_id + 1
            destination_id = str(next_id)
        stored = dict(row)
        stored[entity.destination_id_column] = destination_id
        table[legacy_id] = stored
        return destination_id

    def rows(self, entity_type: str) -> list[dict[str, Any]]:
        """Snapshot of the stored rows for assertions."""
        table = self._tables.get(entity_type, {})
        return [copy.deepcopy(table[key]) for key in sorted(table, key=legacy_sort_key)]

    async def scan_mappings(
        self,
        entity: EntityDefinition,
        *,
        batch_size: int = DEFAULT_MAPPING_SCAN_BATCH,
    ) -> AsyncIterator[tuple[str, str]]:
        table = dict(self._tables.get(entity.name, {}))
        for legacy_id in sorted(table, key=legacy_sort_key):
            yield legacy_id, table[legacy_id][entity.destination_id_column]

    async def find_by_legacy_ids(
        self,
        entity: EntityDefinition,
        legacy_ids: Sequence[str],
        *,
        hash_column: str | None = None,
    ) -> list[DestinationRecord]:
        table = self._tables.get(entity.name, {})
        records = []
        for legacy_id in legacy_ids:
            row = table.get(legacy_id)
            if row is None:
                continue
            updated_at = row.get(entity.destination_timestamp_column)
            records.append(
                DestinationRecord(
                    legacy_id=legacy_id,
                    destination_id=row[entity.destination_id_column],
                    updated_at=as_utc(updated_at) if updated_at is not None else None,
                    content_hash=row.get(hash_column) if hash_column else None,
                    data=dict(row),
                )
            )
        return records

    async def upsert(
        self,
        entity: EntityDefinition,
        rows: Sequence[Mapping[str, Any]],
    ) -> dict[str, str]:
        for row in rows:
            if row.get(entity.legacy_id_column) is None:
                raise ValidationError(
                    f"Row is missing legacy id column {entity.legacy_id_column}",
                    field_name=entity.legacy_id_column,
                    entity_type=entity.name,
                )
        async with self._lock:
            self.upsert_calls += 1
            mapping: dict[str, str] = {}
            for row in rows:
                legacy_id = str(row[entity.legacy_id_column])
                mapping[legacy_id] = self._write(entity, legacy_id, dict(row))
            return mapping

    async def count(self, entity: EntityDefinition) -> int:
        return len(self._tables.get(entity.name, {}))


__all__ = [
    "InMemorySourceStore",
    "InMemoryDestinationStore",
]
