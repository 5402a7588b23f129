"""
Connection handling helpers for database-backed stores and repositories.

Two utilities:

- ``execute_with_connection`` handles both AsyncEngine and AsyncConnection
  inputs. With an engine, each use checks a connection out of the shared pool
  and returns it on every exit path, including failures.
- ``translate_errors`` turns driver-level connectivity failures (including
  pool checkout timeouts) into ``StoreConnectionError`` so that callers see a
  retryable error instead of a driver-specific crash.
"""

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.exceptions import StoreConnectionError


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection for one store or repository call.

    An ``AsyncEngine`` gives a pooled connection: inside ``begin()`` when
    ``transactional`` (upserts, checkpoint and session writes) or a plain
    ``connect()`` for scans and lookups. An ``AsyncConnection`` is yielded
    unchanged; its owner controls the transaction.

    Example:
        >>> async with execute_with_connection(self._conn, transactional=False) as conn:
        ...     result = await conn.execute(text("SELECT count(*) FROM dispatch_office"))
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        # Caller owns the connection and its transaction
        yield conn


@contextmanager
def translate_errors(
    store: str,
    operation: str,
    entity_type: str | None = None,
) -> Iterator[None]:
    """
    Translate connectivity failures into StoreConnectionError.

    Args:
        store: Which store is being used ("source", "destination", "repository").
        operation: Operation name for the error message.
        entity_type: Entity involved, if any.

    Raises:
        StoreConnectionError: For pool timeouts, dropped connections and
            other operational errors.
    """
    try:
        yield
    except StoreConnectionError:
        raise
    except PoolTimeoutError as e:
        raise StoreConnectionError(
            f"Connection pool exhausted during {operation}",
            store=store,
            operation=operation,
            entity_type=entity_type,
        ) from e
    except (OperationalError, InterfaceError) as e:
        raise StoreConnectionError(
            f"{store} store unavailable during {operation}: {e.orig or e}",
            store=store,
            operation=operation,
            entity_type=entity_type,
        ) from e
    except DBAPIError as e:
        if not e.connection_invalidated:
            raise
        raise StoreConnectionError(
            f"Connection lost during {operation}",
            store=store,
            operation=operation,
            entity_type=entity_type,
        ) from e
    except OSError as e:
        raise StoreConnectionError(
            f"{store} store unreachable during {operation}: {e}",
            store=store,
            operation=operation,
            entity_type=entity_type,
        ) from e
