"""
PostgreSQL source and destination stores.

Both stores accept an AsyncEngine (connections are checked out of the shared
pool per operation) or an AsyncConnection (caller-managed). SQL is written
with ``text()``; table and column names come from validated entity
definitions, values are always bound parameters.

Example:
    >>> from sqlalchemy.ext.asyncio import create_async_engine
    >>> legacy = create_async_engine("postgresql+asyncpg://localhost/legacy")
    >>> modern = create_async_engine("postgresql+asyncpg://localhost/modern")
    >>> source = PostgreSQLSourceStore(legacy)
    >>> destination = PostgreSQLDestinationStore(modern)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.entities import EntityDefinition, validate_identifier
from diffmigrate.exceptions import ValidationError
from diffmigrate.models import DestinationRecord, SourceRecord, as_utc
from diffmigrate.observability import Tracer, create_tracer
from diffmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_ENTITY_TYPE,
)
from diffmigrate.repositories._connection import execute_with_connection, translate_errors
from diffmigrate.stores.interface import DEFAULT_MAPPING_SCAN_BATCH

logger = logging.getLogger(__name__)

# Stand-in timestamp for rows whose timestamp column is NULL
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _is_numeric(value: str) -> bool:
    return value.isascii() and value.isdigit()


def coerce_id(value: Any) -> Any:
    """Convert one numeric string id to an integer; other values pass through."""
    if isinstance(value, str) and _is_numeric(value):
        return int(value)
    return value


def coerce_ids(legacy_ids: Sequence[str]) -> list[Any]:
    """
    Convert string ids back to integers when they are all numeric.

    asyncpg binds parameters with the column's type, so numeric key columns
    need integer parameters.
    """
    if legacy_ids and all(_is_numeric(legacy_id) for legacy_id in legacy_ids):
        return [int(legacy_id) for legacy_id in legacy_ids]
    return list(legacy_ids)


def _time_filter(timestamp_field: str, since: datetime | None, until: datetime | None) -> str:
    clauses = []
    if since is not None:
        clauses.append(f"{timestamp_field} >= :since")
    if until is not None:
        clauses.append(f"{timestamp_field} < :until")
    return f"WHERE {' AND '.join(clauses)}" if clauses else ""


class PostgreSQLSourceStore:
    """
    Read-only PostgreSQL source store.

    Args:
        conn: Database connection or engine for the legacy database
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Used when no tracer is given
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn

    def _to_record(
        self,
        entity: EntityDefinition,
        row: Mapping[str, Any],
        timestamp_field: str,
    ) -> SourceRecord:
        timestamp = row.get(timestamp_field) or row.get("created_at")
        return SourceRecord(
            legacy_id=str(row[entity.source_id_column]),
            updated_at=as_utc(timestamp) if isinstance(timestamp, datetime) else EPOCH,
            data=dict(row),
        )

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
        validate_identifier(timestamp_field, "timestamp_field")
        with self._tracer.span(
            "diffmigrate.source.scan",
            {
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "SELECT",
                ATTR_DB_TABLE: entity.source_table,
                ATTR_ENTITY_TYPE: entity.name,
                ATTR_BATCH_SIZE: limit,
            },
        ):
            query = text(f"""
                SELECT *
                FROM {entity.source_table}
                {_time_filter(timestamp_field, since, until)}
                ORDER BY {entity.source_id_column}
                LIMIT :limit OFFSET :offset
            """)
            params: dict[str, Any] = {"limit": limit, "offset": offset}
            if since is not None:
                params["since"] = since
            if until is not None:
                params["until"] = until

            with translate_errors("source", "scan", entity.name):
                async with execute_with_connection(self._conn, transactional=False) as conn:
                    result = await conn.execute(query, params)
                    rows = result.mappings().all()

            return [self._to_record(entity, row, timestamp_field) for row in rows]

    async def fetch_by_ids(
        self,
        entity: EntityDefinition,
        legacy_ids: Sequence[str],
        *,
        timestamp_field: str,
    ) -> list[SourceRecord]:
        if not legacy_ids:
            return []
        validate_identifier(timestamp_field, "timestamp_field")
        with self._tracer.span(
            "diffmigrate.source.fetch_by_ids",
            {
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "SELECT",
                ATTR_DB_TABLE: entity.source_table,
                ATTR_ENTITY_TYPE: entity.name,
                ATTR_BATCH_SIZE: len(legacy_ids),
            },
        ):
            query = text(f"""
                SELECT *
                FROM {entity.source_table}
                WHERE {entity.source_id_column} IN :ids
            """).bindparams(bindparam("ids", expanding=True))

            with translate_errors("source", "fetch_by_ids", entity.name):
                async with execute_with_connection(self._conn, transactional=False) as conn:
                    result = await conn.execute(query, {"ids": coerce_ids(legacy_ids)})
                    rows = result.mappings().all()

            by_id = {
                record.legacy_id: record
                for record in (self._to_record(entity, row, timestamp_field) for row in rows)
            }
            # Preserve the caller's order
            return [by_id[legacy_id] for legacy_id in legacy_ids if legacy_id in by_id]

    async def count(
        self,
        entity: EntityDefinition,
        *,
        timestamp_field: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        validate_identifier(timestamp_field, "timestamp_field")
        query = text(f"""
            SELECT COUNT(*)
            FROM {entity.source_table}
            {_time_filter(timestamp_field, since, until)}
        """)
        params: dict[str, Any] = {}
        if since is not None:
            params["since"] = since
        if until is not None:
            params["until"] = until

        with translate_errors("source", "count", entity.name):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                return int(result.scalar_one())


class PostgreSQLDestinationStore:
    """
    PostgreSQL destination store.

    Upserts use ``INSERT ... ON CONFLICT (<legacy id column>) DO UPDATE``, so
    each destination table needs a unique constraint on its legacy id column.

    Args:
        conn: Database connection or engine for the modern database
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Used when no tracer is given
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn

    async def scan_mappings(
        self,
        entity: EntityDefinition,
        *,
        batch_size: int = DEFAULT_MAPPING_SCAN_BATCH,
    ) -> AsyncIterator[tuple[str, str]]:
        query = text(f"""
            SELECT {entity.legacy_id_column}, {entity.destination_id_column}
            FROM {entity.destination_table}
            WHERE {entity.legacy_id_column} IS NOT NULL
        """)
        with translate_errors("destination", "scan_mappings", entity.name):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.stream(query)
                async for partition in result.partitions(batch_size):
                    for legacy_id, destination_id in partition:
                        yield str(legacy_id), str(destination_id)

    async def find_by_legacy_ids(
        self,
        entity: EntityDefinition,
        legacy_ids: Sequence[str],
        *,
        hash_column: str | None = None,
    ) -> list[DestinationRecord]:
        if not legacy_ids:
            return []
        if hash_column is not None:
            validate_identifier(hash_column, "hash_column")

        with self._tracer.span(
            "diffmigrate.destination.find_by_legacy_ids",
            {
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "SELECT",
                ATTR_DB_TABLE: entity.destination_table,
                ATTR_ENTITY_TYPE: entity.name,
                ATTR_BATCH_SIZE: len(legacy_ids),
            },
        ):
            query = text(f"""
                SELECT *
                FROM {entity.destination_table}
                WHERE {entity.legacy_id_column} IN :ids
            """).bindparams(bindparam("ids", expanding=True))

            with translate_errors("destination", "find_by_legacy_ids", entity.name):
                async with execute_with_connection(self._conn, transactional=False) as conn:
                    result = await conn.execute(query, {"ids": coerce_ids(legacy_ids)})
                    rows = result.mappings().all()

            records = []
            for row in rows:
                updated_at = row.get(entity.destination_timestamp_column)
                records.append(
                    DestinationRecord(
                        legacy_id=str(row[entity.legacy_id_column]),
                        destination_id=str(row[entity.destination_id_column]),
                        updated_at=as_utc(updated_at) if isinstance(updated_at, datetime) else None,
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
        if not rows:
            return {}

        with self._tracer.span(
            "diffmigrate.destination.upsert",
            {
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "INSERT",
                ATTR_DB_TABLE: entity.destination_table,
                ATTR_ENTITY_TYPE: entity.name,
                ATTR_BATCH_SIZE: len(rows),
            },
        ):
            mapping: dict[str, str] = {}
            with translate_errors("destination", "upsert", entity.name):
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    for row in rows:
                        legacy_id, destination_id = await self._upsert_row(conn, entity, row)
                        mapping[legacy_id] = destination_id

            logger.debug(
                "Upserted %d rows into %s",
                len(rows),
                entity.destination_table,
                extra={"entity_type": entity.name},
            )
            return mapping

    async def _upsert_row(
        self,
        conn: AsyncConnection,
        entity: EntityDefinition,
        row: Mapping[str, Any],
    ) -> tuple[str, str]:
        if row.get(entity.legacy_id_column) is None:
            raise ValidationError(
                f"Row is missing legacy id column {entity.legacy_id_column}",
                field_name=entity.legacy_id_column,
                entity_type=entity.name,
            )
        columns = [validate_identifier(column, "column") for column in row]
        assignments = ", ".join(
            f"{column} = EXCLUDED.{column}"
            for column in columns
            if column != entity.legacy_id_column
        )
        conflict_action = f"DO UPDATE SET {assignments}" if assignments else "DO NOTHING"
        # Legacy ids and resolved parent ids travel as strings; key columns are numeric
        key_columns = {entity.legacy_id_column, *(fk.target_field for fk in entity.foreign_keys)}
        params = {
            f"p{i}": coerce_id(row[column]) if column in key_columns else row[column]
            for i, column in enumerate(columns)
        }

        query = text(f"""
            INSERT INTO {entity.destination_table} ({", ".join(columns)})
            VALUES ({", ".join(f":p{i}" for i in range(len(columns)))})
            ON CONFLICT ({entity.legacy_id_column}) {conflict_action}
            RETURNING {entity.legacy_id_column}, {entity.destination_id_column}
        """)
        result = await conn.execute(query, params)
        returned = result.fetchone()
        if returned is None:
            # DO NOTHING on conflict returns no row; read the existing id
            lookup = text(f"""
                SELECT {entity.legacy_id_column}, {entity.destination_id_column}
                FROM {entity.destination_table}
                WHERE {entity.legacy_id_column} = :legacy_id
            """)
            returned = (
                await conn.execute(lookup, {"legacy_id": coerce_id(row[entity.legacy_id_column])})
            ).fetchone()
        assert returned is not None
        return str(returned[0]), str(returned[1])

    async def count(self, entity: EntityDefinition) -> int:
        query = text(f"SELECT COUNT(*) FROM {entity.destination_table}")
        with translate_errors("destination", "count", entity.name):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query)
                return int(result.scalar_one())


__all__ = [
    "PostgreSQLSourceStore",
    "PostgreSQLDestinationStore",
    "coerce_id",
    "coerce_ids",
]
