"""
Checkpoint repository for per-entity migration progress.

The executor writes one checkpoint per (session, entity) after every handled
batch. Checkpoints let a session resume after a crash without reapplying
committed batches.

Forward-only writes:
    ``save_checkpoint`` never moves a stored offset backward. A save whose
    offset is lower than the stored one is ignored and reported as not
    stored. ``reset_checkpoint`` is the only way to rewind, and is meant for
    explicit operator use after a CheckpointCorruptionError.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.models import Checkpoint
from diffmigrate.observability import Tracer, create_tracer
from diffmigrate.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_SESSION_ID,
)
from diffmigrate.repositories._connection import execute_with_connection, translate_errors

if TYPE_CHECKING:
    import aiosqlite

_COLUMNS = """
    session_id, entity_type, last_processed_offset, records_succeeded,
    records_failed, records_skipped, batches_completed, last_processed_id,
    updated_at
"""

# Shared by PostgreSQL and SQLite (3.24+); the WHERE clause keeps offsets forward-only
_UPSERT_SET = """
    ON CONFLICT (session_id, entity_type) DO UPDATE
    SET last_processed_offset = excluded.last_processed_offset,
        records_succeeded = excluded.records_succeeded,
        records_failed = excluded.records_failed,
        records_skipped = excluded.records_skipped,
        batches_completed = excluded.batches_completed,
        last_processed_id = excluded.last_processed_id,
        updated_at = excluded.updated_at
    WHERE migration_checkpoints.last_processed_offset <= excluded.last_processed_offset
"""


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _row_to_checkpoint(row: Sequence[Any]) -> Checkpoint:
    return Checkpoint(
        session_id=row[0],
        entity_type=row[1],
        last_processed_offset=row[2],
        records_succeeded=row[3],
        records_failed=row[4],
        records_skipped=row[5],
        batches_completed=row[6],
        last_processed_id=row[7],
        updated_at=_parse_datetime(row[8]),
    )


@runtime_checkable
class CheckpointRepository(Protocol):
    """
    Protocol for checkpoint repositories.

    Implementations:
    - PostgreSQLCheckpointRepository: production use
    - SQLiteCheckpointRepository: lightweight deployments
    - InMemoryCheckpointRepository: tests and dry runs
    """

    async def get_checkpoint(self, session_id: str, entity_type: str) -> Checkpoint | None:
        """
        Get the checkpoint for one entity of a session.

        Returns:
            The stored checkpoint, or None if the entity has not started.
        """
        ...

    async def save_checkpoint(self, checkpoint: Checkpoint) -> bool:
        """
        Store a checkpoint unless it would move the offset backward.

        Returns:
            True if stored, False if ignored as stale.
        """
        ...

    async def reset_checkpoint(self, session_id: str, entity_type: str | None = None) -> int:
        """
        Delete checkpoints so that entities restart from offset zero.

        Args:
            session_id: Session whose checkpoints to reset.
            entity_type: Single entity to reset; None resets the whole session.

        Returns:
            Number of checkpoints deleted.
        """
        ...

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        """All checkpoints of a session, ordered by entity type."""
        ...


class PostgreSQLCheckpointRepository:
    """
    Checkpoints in the PostgreSQL ``migration_checkpoints`` table.

    Saves are a single ``INSERT ... ON CONFLICT (session_id, entity_type)``
    statement, so there is one row per session and entity.

    Example:
        >>> repo = PostgreSQLCheckpointRepository(engine)
        >>> await repo.save_checkpoint(checkpoint)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    async def get_checkpoint(self, session_id: str, entity_type: str) -> Checkpoint | None:
        with self._tracer.span(
            "diffmigrate.checkpoint.get_checkpoint",
            {
                ATTR_SESSION_ID: session_id,
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text(f"""
                SELECT {_COLUMNS}
                FROM migration_checkpoints
                WHERE session_id = :session_id AND entity_type = :entity_type
            """)
            params = {"session_id": session_id, "entity_type": entity_type}

            with translate_errors("repository", "get_checkpoint", entity_type):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query, params)
                    row = result.fetchone()
            return _row_to_checkpoint(row) if row else None

    async def save_checkpoint(self, checkpoint: Checkpoint) -> bool:
        with self._tracer.span(
            "diffmigrate.checkpoint.save_checkpoint",
            {
                ATTR_SESSION_ID: checkpoint.session_id,
                ATTR_ENTITY_TYPE: checkpoint.entity_type,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text(f"""
                INSERT INTO migration_checkpoints ({_COLUMNS})
                VALUES (
                    :session_id, :entity_type, :last_processed_offset, :records_succeeded,
                    :records_failed, :records_skipped, :batches_completed,
                    :last_processed_id, :updated_at
                )
                {_UPSERT_SET}
            """)
            params = checkpoint.to_dict()
            params["updated_at"] = checkpoint.updated_at or datetime.now(UTC)

            with translate_errors("repository", "save_checkpoint", checkpoint.entity_type):
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    result = await conn.execute(query, params)
                    stored = bool(result.rowcount)
            return stored

    async def reset_checkpoint(self, session_id: str, entity_type: str | None = None) -> int:
        with self._tracer.span(
            "diffmigrate.checkpoint.reset_checkpoint",
            {ATTR_SESSION_ID: session_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            if entity_type is None:
                query = text("DELETE FROM migration_checkpoints WHERE session_id = :session_id")
                params: dict[str, Any] = {"session_id": session_id}
            else:
                query = text("""
                    DELETE FROM migration_checkpoints
                    WHERE session_id = :session_id AND entity_type = :entity_type
                """)
                params = {"session_id": session_id, "entity_type": entity_type}

            with translate_errors("repository", "reset_checkpoint", entity_type):
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    result = await conn.execute(query, params)
                    deleted = result.rowcount or 0
            return deleted

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        with self._tracer.span(
            "diffmigrate.checkpoint.list_checkpoints",
            {ATTR_SESSION_ID: session_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                SELECT {_COLUMNS}
                FROM migration_checkpoints
                WHERE session_id = :session_id
                ORDER BY entity_type
            """)

            with translate_errors("repository", "list_checkpoints"):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query, {"session_id": session_id})
                    rows = result.fetchall()
            return [_row_to_checkpoint(row) for row in rows]


class InMemoryCheckpointRepository:
    """
    Process-local checkpoints for tests and dry runs.

    ``save_calls`` counts writes so tests can assert one save per batch.

    Example:
        >>> repo = InMemoryCheckpointRepository()
        >>> await repo.save_checkpoint(Checkpoint("session-1", "offices", 500, 500))
        >>> (await repo.get_checkpoint("session-1", "offices")).last_processed_offset
        500
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._checkpoints: dict[tuple[str, str], Checkpoint] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self.save_calls = 0

    async def get_checkpoint(self, session_id: str, entity_type: str) -> Checkpoint | None:
        async with self._lock:
            return self._checkpoints.get((session_id, entity_type))

    async def save_checkpoint(self, checkpoint: Checkpoint) -> bool:
        with self._tracer.span(
            "diffmigrate.checkpoint.save_checkpoint",
            {ATTR_SESSION_ID: checkpoint.session_id, ATTR_ENTITY_TYPE: checkpoint.entity_type},
        ):
            async with self._lock:
                self.save_calls += 1
                key = (checkpoint.session_id, checkpoint.entity_type)
                existing = self._checkpoints.get(key)
                if (
                    existing is not None
                    and existing.last_processed_offset > checkpoint.last_processed_offset
                ):
                    return False
                self._checkpoints[key] = checkpoint
                return True

    async def reset_checkpoint(self, session_id: str, entity_type: str | None = None) -> int:
        async with self._lock:
            keys = [
                key
                for key in self._checkpoints
                if key[0] == session_id and (entity_type is None or key[1] == entity_type)
            ]
            for key in keys:
                del self._checkpoints[key]
            return len(keys)

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        async with self._lock:
            return sorted(
                (cp for (sid, _), cp in self._checkpoints.items() if sid == session_id),
                key=lambda cp: cp.entity_type,
            )

    def put(self, checkpoint: Checkpoint) -> None:
        """Store a checkpoint without the forward-only check (test setup)."""
        self._checkpoints[(checkpoint.session_id, checkpoint.entity_type)] = checkpoint


class SQLiteCheckpointRepository:
    """
    Checkpoints in an SQLite ``migration_checkpoints`` table via aiosqlite.

    Timestamps are ISO-8601 TEXT. Each write commits immediately.

    Example:
        >>> async with aiosqlite.connect("migration.db") as db:
        ...     repo = SQLiteCheckpointRepository(db)
        ...     await repo.save_checkpoint(checkpoint)
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._connection = connection

    async def get_checkpoint(self, session_id: str, entity_type: str) -> Checkpoint | None:
        with self._tracer.span(
            "diffmigrate.checkpoint.get_checkpoint",
            {
                ATTR_SESSION_ID: session_id,
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            cursor = await self._connection.execute(
                f"""
                SELECT {_COLUMNS}
                FROM migration_checkpoints
                WHERE session_id = ? AND entity_type = ?
                """,
                (session_id, entity_type),
            )
            row = await cursor.fetchone()
            return _row_to_checkpoint(row) if row else None

    async def save_checkpoint(self, checkpoint: Checkpoint) -> bool:
        with self._tracer.span(
            "diffmigrate.checkpoint.save_checkpoint",
            {
                ATTR_SESSION_ID: checkpoint.session_id,
                ATTR_ENTITY_TYPE: checkpoint.entity_type,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            updated_at = checkpoint.updated_at or datetime.now(UTC)
            cursor = await self._connection.execute(
                f"""
                INSERT INTO migration_checkpoints ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                {_UPSERT_SET}
                """,
                (
                    checkpoint.session_id,
                    checkpoint.entity_type,
                    checkpoint.last_processed_offset,
                    checkpoint.records_succeeded,
                    checkpoint.records_failed,
                    checkpoint.records_skipped,
                    checkpoint.batches_completed,
                    checkpoint.last_processed_id,
                    updated_at.isoformat(),
                ),
            )
            await self._connection.commit()
            return cursor.rowcount > 0

    async def reset_checkpoint(self, session_id: str, entity_type: str | None = None) -> int:
        with self._tracer.span(
            "diffmigrate.checkpoint.reset_checkpoint",
            {ATTR_SESSION_ID: session_id, ATTR_DB_SYSTEM: "sqlite"},
        ):
            if entity_type is None:
                cursor = await self._connection.execute(
                    "DELETE FROM migration_checkpoints WHERE session_id = ?",
                    (session_id,),
                )
            else:
                cursor = await self._connection.execute(
                    "DELETE FROM migration_checkpoints WHERE session_id = ? AND entity_type = ?",
                    (session_id, entity_type),
                )
            await self._connection.commit()
            return cursor.rowcount

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        with self._tracer.span(
            "diffmigrate.checkpoint.list_checkpoints",
            {ATTR_SESSION_ID: session_id, ATTR_DB_SYSTEM: "sqlite"},
        ):
            cursor = await self._connection.execute(
                f"""
                SELECT {_COLUMNS}
                FROM migration_checkpoints
                WHERE session_id = ?
                ORDER BY entity_type
                """,
                (session_id,),
            )
            rows = await cursor.fetchall()
            return [_row_to_checkpoint(row) for row in rows]


__all__ = [
    "CheckpointRepository",
    "PostgreSQLCheckpointRepository",
    "InMemoryCheckpointRepository",
    "SQLiteCheckpointRepository",
]
