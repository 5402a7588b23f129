"""
Source and destination store backends.

- interface: SourceStore / DestinationStore protocols
- in_memory: In-memory stores for tests and dry runs
- postgresql: SQLAlchemy async stores for PostgreSQL
"""

from diffmigrate.stores.in_memory import InMemoryDestinationStore, InMemorySourceStore
from diffmigrate.stores.interface import DestinationStore, SourceStore
from diffmigrate.stores.postgresql import PostgreSQLDestinationStore, PostgreSQLSourceStore

__all__ = [
    "SourceStore",
    "DestinationStore",
    "InMemorySourceStore",
    "InMemoryDestinationStore",
    "PostgreSQLSourceStore",
    "PostgreSQLDestinationStore",
]
