"""
Database schema templates for diffmigrate.

Tables:
    - migration_sessions: Persisted session state for crash recovery
    - migration_checkpoints: Per (session, entity) progress

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from diffmigrate.migrations import get_schema

    sessions_sql = get_schema("sessions")
    all_sql = get_schema("all", backend="sqlite")

    async with aiosqlite.connect(":memory:") as db:
        await db.executescript(get_schema("all", backend="sqlite"))
"""

from pathlib import Path
from typing import Literal

SchemaName = Literal["sessions", "checkpoints", "all"]

BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"

# Order of the combined schema
_ALL_SCHEMAS = ("sessions", "checkpoints")


def get_template_path(name: str, backend: BackendName = "postgresql") -> Path:
    """
    Get the path to a SQL template file.

    Raises:
        ValueError: If the backend or schema does not exist.
    """
    backend_dir = _TEMPLATES_DIR / backend
    if not backend_dir.is_dir():
        raise ValueError(f"Unknown backend '{backend}'. Available backends: {list_backends()}")
    path = backend_dir / f"{name}.sql"
    if not path.exists():
        raise ValueError(
            f"Schema '{name}' is not available for backend '{backend}'. "
            f"Available schemas: {list_schemas(backend)}"
        )
    return path


def get_schema(name: SchemaName, backend: BackendName = "postgresql") -> str:
    """
    Load a SQL schema template by name and backend.

    Args:
        name: "sessions", "checkpoints" or "all" (both, in dependency order).
        backend: "postgresql" (default) or "sqlite".

    Returns:
        SQL schema definition as a string

    Raises:
        ValueError: If the schema is not available for the backend.

    Example:
        >>> async with engine.begin() as conn:
        ...     for statement in get_schema("all").split(";"):
        ...         if statement.strip():
        ...             await conn.execute(text(statement))
    """
    if name == "all":
        return "\n".join(get_template_path(part, backend).read_text() for part in _ALL_SCHEMAS)
    return get_template_path(name, backend).read_text()


def list_schemas(backend: BackendName = "postgresql") -> list[str]:
    """List the schema templates available for a backend."""
    backend_dir = _TEMPLATES_DIR / backend
    if not backend_dir.is_dir():
        return []
    return sorted(p.stem for p in backend_dir.glob("*.sql"))


def list_backends() -> list[str]:
    """List the backends that have schema templates."""
    return sorted(
        d.name for d in _TEMPLATES_DIR.iterdir() if d.is_dir() and list(d.glob("*.sql"))
    )


__all__ = [
    "SchemaName",
    "BackendName",
    "get_schema",
    "get_template_path",
    "list_schemas",
    "list_backends",
]
