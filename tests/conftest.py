"""
Shared pytest fixtures for the diffmigrate tests.

This module provides:
- Clock fixtures (now, fixed_clock)
- Record factories (make_source_record)
- Entity fixtures (registry, offices, doctors, patients)
- Store fixtures (source_store, destination_store)
- Repository fixtures (checkpoint_repo, session_repo, sqlite_connection)
- Execution fixtures (fast_retry, execution_config, executor)
- Tracing fixtures (mock_tracer)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from diffmigrate.config import ExecutionConfig
from diffmigrate.entities import EntityDefinition, EntityRegistry, default_registry
from diffmigrate.executor import BatchMigrationExecutor
from diffmigrate.models import SourceRecord
from diffmigrate.observability import MockTracer
from diffmigrate.repositories import InMemoryCheckpointRepository, InMemorySessionRepository
from diffmigrate.retry import RetryConfig
from diffmigrate.stores import InMemoryDestinationStore, InMemorySourceStore

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite

    AIOSQLITE_AVAILABLE = True
except ImportError:
    aiosqlite = None  # type: ignore[assignment]


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")


# ============================================================================
# Clock Fixtures
# ============================================================================

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    """Fixed reference time used across classifier and detector tests."""
    return NOW


@pytest.fixture
def fixed_clock(now: datetime) -> Callable[[], datetime]:
    """Clock returning the fixed reference time."""
    return lambda: now


# ============================================================================
# Record Factories
# ============================================================================


@pytest.fixture
def make_source_record(now: datetime) -> Callable[..., SourceRecord]:
    """
    Factory for source records.

    Example:
        record = make_source_record("7", hours_ago=2, name="Main St")
    """

    def factory(
        legacy_id: str,
        *,
        hours_ago: float = 1.0,
        updated_at: datetime | None = None,
        **data: Any,
    ) -> SourceRecord:
        timestamp = updated_at or now - timedelta(hours=hours_ago)
        row = {"id": int(legacy_id) if legacy_id.isdigit() else legacy_id, **data}
        row.setdefault("updated_at", timestamp)
        return SourceRecord(legacy_id=legacy_id, updated_at=timestamp, data=row)

    return factory


# ============================================================================
# Entity Fixtures
# ============================================================================


@pytest.fixture
def registry() -> EntityRegistry:
    """The standard dispatch registry."""
    return default_registry()


@pytest.fixture
def offices(registry: EntityRegistry) -> EntityDefinition:
    return registry.get("offices")


@pytest.fixture
def doctors(registry: EntityRegistry) -> EntityDefinition:
    return registry.get("doctors")


@pytest.fixture
def patients(registry: EntityRegistry) -> EntityDefinition:
    return registry.get("patients")


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def source_store() -> InMemorySourceStore:
    return InMemorySourceStore()


@pytest.fixture
def destination_store() -> InMemoryDestinationStore:
    return InMemoryDestinationStore()


# ============================================================================
# Repository Fixtures
# ============================================================================


@pytest.fixture
def checkpoint_repo() -> InMemoryCheckpointRepository:
    return InMemoryCheckpointRepository(enable_tracing=False)


@pytest.fixture
def session_repo() -> InMemorySessionRepository:
    return InMemorySessionRepository()


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[Any, None]:
    """
    Provide an aiosqlite connection to an in-memory database with the
    diffmigrate schema applied.
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    from diffmigrate.migrations import get_schema

    conn = await aiosqlite.connect(":memory:")
    await conn.executescript(get_schema("all", backend="sqlite"))
    await conn.commit()
    yield conn
    await conn.close()


# ============================================================================
# Execution Fixtures
# ============================================================================


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policy with negligible delays."""
    return RetryConfig(max_retries=2, initial_delay=0.001, max_delay=0.002, jitter=0.0)


@pytest.fixture
def execution_config(fast_retry: RetryConfig) -> ExecutionConfig:
    return ExecutionConfig(parallelism=3, retry=fast_retry, batch_timeout=5.0)


@pytest.fixture
def mock_tracer() -> MockTracer:
    return MockTracer()


@pytest.fixture
def executor(
    source_store: InMemorySourceStore,
    destination_store: InMemoryDestinationStore,
    checkpoint_repo: InMemoryCheckpointRepository,
    registry: EntityRegistry,
    execution_config: ExecutionConfig,
) -> BatchMigrationExecutor:
    return BatchMigrationExecutor(
        source_store,
        destination_store,
        checkpoint_repo,
        registry,
        config=execution_config,
        enable_tracing=False,
    )
