"""
Persistence for migration state.

- **Checkpoints**: per (session, entity) progress for crash-safe resumption
- **Sessions**: coordinated migration runs and their status

Each repository type provides:
- A Protocol (interface) defining the contract
- PostgreSQL implementation for production use
- SQLite implementation for lightweight deployments
- In-memory implementation for testing
"""

from diffmigrate.repositories._connection import execute_with_connection, translate_errors
from diffmigrate.repositories.checkpoint import (
    CheckpointRepository,
    InMemoryCheckpointRepository,
    PostgreSQLCheckpointRepository,
    SQLiteCheckpointRepository,
)
from diffmigrate.repositories.session import (
    ACTIVE_STATUSES,
    InMemorySessionRepository,
    PostgreSQLSessionRepository,
    SessionRepository,
    SQLiteSessionRepository,
)

__all__ = [
    "execute_with_connection",
    "translate_errors",
    "CheckpointRepository",
    "PostgreSQLCheckpointRepository",
    "InMemoryCheckpointRepository",
    "SQLiteCheckpointRepository",
    "ACTIVE_STATUSES",
    "SessionRepository",
    "PostgreSQLSessionRepository",
    "InMemorySessionRepository",
    "SQLiteSessionRepository",
]
