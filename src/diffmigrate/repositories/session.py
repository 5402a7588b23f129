"""
SessionRepository - persisted migration session state.

Sessions must be reconstructable from persisted state alone after a crash,
so every field the coordinator needs to resume (entities, tasks, status) is
stored here. Checkpoints live in the checkpoint repository.

Database Table:
    Uses the ``migration_sessions`` table (see ``diffmigrate.migrations``).
    ``entities``, ``tasks`` and ``result_summary`` are JSON columns.
"""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.exceptions import SessionNotFoundError, ValidationError
from diffmigrate.models import MigrationSession, MigrationTask, SessionStatus
from diffmigrate.observability import Tracer, create_tracer
from diffmigrate.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_SESSION_ID,
    ATTR_SESSION_STATUS,
)
from diffmigrate.repositories._connection import execute_with_connection, translate_errors

if TYPE_CHECKING:
    import aiosqlite

ACTIVE_STATUSES = tuple(status.value for status in SessionStatus if status.holds_claim)

_COLUMNS = """
    session_id, analysis_id, entities, tasks, status, created_at, started_at,
    updated_at, completed_at, error_message, result_summary
"""


def _json_value(value: Any) -> Any:
    if value is None or isinstance(value, dict | list):
        return value
    return json.loads(value)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _row_to_session(row: Sequence[Any]) -> MigrationSession:
    return MigrationSession(
        session_id=row[0],
        analysis_id=row[1],
        entities=list(_json_value(row[2]) or []),
        tasks=[MigrationTask.from_dict(task) for task in _json_value(row[3]) or []],
        status=SessionStatus(row[4]),
        created_at=_parse_datetime(row[5]) or datetime.now(UTC),
        started_at=_parse_datetime(row[6]),
        updated_at=_parse_datetime(row[7]),
        completed_at=_parse_datetime(row[8]),
        error_message=row[9],
        result_summary=_json_value(row[10]),
    )


def _session_params(session: MigrationSession) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "analysis_id": session.analysis_id,
        "entities": json.dumps(session.entities),
        "tasks": json.dumps([task.to_dict() for task in session.tasks]),
        "status": session.status.value,
        "created_at": session.created_at,
        "started_at": session.started_at,
        "updated_at": session.updated_at or datetime.now(UTC),
        "completed_at": session.completed_at,
        "error_message": session.error_message,
        "result_summary": (
            json.dumps(session.result_summary) if session.result_summary is not None else None
        ),
    }


@runtime_checkable
class SessionRepository(Protocol):
    """
    Protocol for session repositories.

    Implementations:
    - PostgreSQLSessionRepository: production use
    - SQLiteSessionRepository: lightweight deployments
    - InMemorySessionRepository: tests and dry runs
    """

    async def create_session(self, session: MigrationSession) -> None:
        """
        Persist a new session.

        Raises:
            ValidationError: If a session with the same id already exists.
        """
        ...

    async def get_session(self, session_id: str) -> MigrationSession | None:
        """Get a session by id, or None if it does not exist."""
        ...

    async def update_session(self, session: MigrationSession) -> None:
        """
        Persist status, timestamps, error message and result summary.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        ...

    async def list_active_sessions(self) -> list[MigrationSession]:
        """Sessions that still claim their entities (queued, running or paused)."""
        ...

    async def list_sessions(self, status: SessionStatus | None = None) -> list[MigrationSession]:
        """All sessions, optionally filtered by status, oldest first."""
        ...


class PostgreSQLSessionRepository:
    """
    PostgreSQL implementation of session repository.

    Example:
        >>> repo = PostgreSQLSessionRepository(engine)
        >>> await repo.create_session(MigrationSession("nightly", ["offices"]))
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn

    async def create_session(self, session: MigrationSession) -> None:
        with self._tracer.span(
            "diffmigrate.session_repo.create",
            {ATTR_SESSION_ID: session.session_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            if await self.get_session(session.session_id) is not None:
                raise ValidationError(
                    f"Session {session.session_id} already exists",
                    field_name="session_id",
                    value=session.session_id,
                )

            query = text(f"""
                INSERT INTO migration_sessions ({_COLUMNS})
                VALUES (
                    :session_id, :analysis_id, :entities, :tasks, :status, :created_at,
                    :started_at, :updated_at, :completed_at, :error_message, :result_summary
                )
            """)

            with translate_errors("repository", "create_session"):
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    await conn.execute(query, _session_params(session))

    async def get_session(self, session_id: str) -> MigrationSession | None:
        with self._tracer.span(
            "diffmigrate.session_repo.get",
            {ATTR_SESSION_ID: session_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                SELECT {_COLUMNS}
                FROM migration_sessions
                WHERE session_id = :session_id
            """)

            with translate_errors("repository", "get_session"):
                async with execute_with_connection(self._conn, transactional=False) as conn:
                    result = await conn.execute(query, {"session_id": session_id})
                    row = result.fetchone()
            return _row_to_session(row) if row else None

    async def update_session(self, session: MigrationSession) -> None:
        with self._tracer.span(
            "diffmigrate.session_repo.update",
            {
                ATTR_SESSION_ID: session.session_id,
                ATTR_SESSION_STATUS: session.status.value,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text("""
                UPDATE migration_sessions
                SET status = :status,
                    started_at = :started_at,
                    updated_at = :updated_at,
                    completed_at = :completed_at,
                    error_message = :error_message,
                    result_summary = :result_summary
                WHERE session_id = :session_id
            """)
            params = {
                key: value
                for key, value in _session_params(session).items()
                if key not in ("analysis_id", "entities", "tasks", "created_at")
            }

            with translate_errors("repository", "update_session"):
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    result = await conn.execute(query, params)
                    updated = result.rowcount
            if not updated:
                raise SessionNotFoundError(session.session_id)

    async def list_active_sessions(self) -> list[MigrationSession]:
        query = text(f"""
            SELECT {_COLUMNS}
            FROM migration_sessions
            WHERE status IN :statuses
            ORDER BY created_at
        """).bindparams(bindparam("statuses", expanding=True))

        with translate_errors("repository", "list_active_sessions"):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"statuses": list(ACTIVE_STATUSES)})
                rows = result.fetchall()
        return [_row_to_session(row) for row in rows]

    async def list_sessions(self, status: SessionStatus | None = None) -> list[MigrationSession]:
        where = "WHERE status = :status" if status is not None else ""
        query = text(f"""
            SELECT {_COLUMNS}
            FROM migration_sessions
            {where}
            ORDER BY created_at
        """)
        params = {"status": status.value} if status is not None else {}

        with translate_errors("repository", "list_sessions"):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()
        return [_row_to_session(row) for row in rows]


class InMemorySessionRepository:
    """
    In-memory implementation of session repository for testing.

    Returns copies so that callers never mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, MigrationSession] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, session: MigrationSession) -> None:
        async with self._lock:
            if session.session_id in self._sessions:
                raise ValidationError(
                    f"Session {session.session_id} already exists",
                    field_name="session_id",
                    value=session.session_id,
                )
            self._sessions[session.session_id] = copy.deepcopy(session)

    async def get_session(self, session_id: str) -> MigrationSession | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    async def update_session(self, session: MigrationSession) -> None:
        async with self._lock:
            stored = self._sessions.get(session.session_id)
            if stored is None:
                raise SessionNotFoundError(session.session_id)
            stored.status = session.status
            stored.started_at = session.started_at
            stored.updated_at = session.updated_at or datetime.now(UTC)
            stored.completed_at = session.completed_at
            stored.error_message = session.error_message
            stored.result_summary = copy.deepcopy(session.result_summary)

    async def list_active_sessions(self) -> list[MigrationSession]:
        async with self._lock:
            return [copy.deepcopy(s) for s in self._sessions.values() if s.holds_claim]

    async def list_sessions(self, status: SessionStatus | None = None) -> list[MigrationSession]:
        async with self._lock:
            return [
                copy.deepcopy(s)
                for s in self._sessions.values()
                if status is None or s.status == status
            ]


class SQLiteSessionRepository:
    """
    Session rows in SQLite via aiosqlite.

    Timestamps are ISO-8601 TEXT; entities, tasks and the result summary are
    JSON text.
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._connection = connection

    @staticmethod
    def _params(session: MigrationSession) -> tuple[Any, ...]:
        params = _session_params(session)
        for key in ("created_at", "started_at", "updated_at", "completed_at"):
            if params[key] is not None:
                params[key] = params[key].isoformat()
        return (
            params["session_id"],
            params["analysis_id"],
            params["entities"],
            params["tasks"],
            params["status"],
            params["created_at"],
            params["started_at"],
            params["updated_at"],
            params["completed_at"],
            params["error_message"],
            params["result_summary"],
        )

    async def create_session(self, session: MigrationSession) -> None:
        with self._tracer.span(
            "diffmigrate.session_repo.create",
            {ATTR_SESSION_ID: session.session_id, ATTR_DB_SYSTEM: "sqlite"},
        ):
            if await self.get_session(session.session_id) is not None:
                raise ValidationError(
                    f"Session {session.session_id} already exists",
                    field_name="session_id",
                    value=session.session_id,
                )
            await self._connection.execute(
                f"""
                INSERT INTO migration_sessions ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._params(session),
            )
            await self._connection.commit()

    async def get_session(self, session_id: str) -> MigrationSession | None:
        cursor = await self._connection.execute(
            f"SELECT {_COLUMNS} FROM migration_sessions WHERE session_id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def update_session(self, session: MigrationSession) -> None:
        with self._tracer.span(
            "diffmigrate.session_repo.update",
            {
                ATTR_SESSION_ID: session.session_id,
                ATTR_SESSION_STATUS: session.status.value,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            params = self._params(session)
            cursor = await self._connection.execute(
                """
                UPDATE migration_sessions
                SET status = ?, started_at = ?, updated_at = ?, completed_at = ?,
                    error_message = ?, result_summary = ?
                WHERE session_id = ?
                """,
                (params[4], params[6], params[7], params[8], params[9], params[10], params[0]),
            )
            await self._connection.commit()
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session.session_id)

    async def list_active_sessions(self) -> list[MigrationSession]:
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        cursor = await self._connection.execute(
            f"""
            SELECT {_COLUMNS}
            FROM migration_sessions
            WHERE status IN ({placeholders})
            ORDER BY created_at
            """,
            ACTIVE_STATUSES,
        )
        rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]

    async def list_sessions(self, status: SessionStatus | None = None) -> list[MigrationSession]:
        if status is None:
            cursor = await self._connection.execute(
                f"SELECT {_COLUMNS} FROM migration_sessions ORDER BY created_at"
            )
        else:
            cursor = await self._connection.execute(
                f"SELECT {_COLUMNS} FROM migration_sessions WHERE status = ? ORDER BY created_at",
                (status.value,),
            )
        rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]


__all__ = [
    "ACTIVE_STATUSES",
    "SessionRepository",
    "PostgreSQLSessionRepository",
    "InMemorySessionRepository",
    "SQLiteSessionRepository",
]
