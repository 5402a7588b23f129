"""
diffmigrate - Differential detection and batch migration between data stores.

This library provides:
- Change detection between a legacy source and a modern destination store
- Confidence-scored classification with timestamp anomaly detection
- A per-session reconciliation index of legacy -> destination identifiers
- Dependency-ordered, checkpointed, idempotent batch migration
- Session coordination with conflict detection, pause, resume and cancel
- Per-entity progress snapshots and post-migration integrity sampling
- PostgreSQL, SQLite and in-memory persistence for sessions and checkpoints
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("diffmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from diffmigrate.classifier import ChangeClassifier
from diffmigrate.config import DetectionConfig, DetectionOptions, ExecutionConfig
from diffmigrate.coordinator import SessionCoordinator, SessionHandle
from diffmigrate.detector import ChangeDetector
from diffmigrate.entities import EntityDefinition, EntityRegistry, ForeignKey, default_registry
from diffmigrate.exceptions import (
    BatchApplyError,
    CheckpointCorruptionError,
    ConflictError,
    CyclicDependencyError,
    DiffMigrationError,
    ForeignKeyResolutionError,
    InvalidSessionTransitionError,
    SessionNotFoundError,
    StoreConnectionError,
    TimestampAnomalyError,
    UnknownEntityError,
    ValidationError,
)
from diffmigrate.executor import (
    BatchMigrationExecutor,
    DefaultTransformer,
    ExecutionControl,
    RecordTransformer,
)
from diffmigrate.graph import DependencyGraph
from diffmigrate.hashing import calculate_content_hash
from diffmigrate.integrity import IntegrityReport, RecordComparison
from diffmigrate.models import (
    BatchResult,
    BatchStatus,
    ChangeMetadata,
    ChangeRecord,
    ChangeType,
    Checkpoint,
    DestinationRecord,
    DetectionMethod,
    DetectionReport,
    DetectionResult,
    DetectionSummary,
    EntityExecutionResult,
    ExecutionResult,
    FKPolicy,
    MigrationSession,
    MigrationTask,
    OverallStatus,
    SessionStatus,
    SourceRecord,
    TaskPriority,
    TaskStatus,
)
from diffmigrate.progress import ProgressSnapshot, ProgressStatus, ProgressTracker
from diffmigrate.reconciliation import LookupMapping, ReconciliationIndex
from diffmigrate.repositories import (
    CheckpointRepository,
    InMemoryCheckpointRepository,
    InMemorySessionRepository,
    PostgreSQLCheckpointRepository,
    PostgreSQLSessionRepository,
    SessionRepository,
    SQLiteCheckpointRepository,
    SQLiteSessionRepository,
)
from diffmigrate.retry import RetryConfig, RetryError
from diffmigrate.stores import (
    DestinationStore,
    InMemoryDestinationStore,
    InMemorySourceStore,
    PostgreSQLDestinationStore,
    PostgreSQLSourceStore,
    SourceStore,
)

__all__ = [
    "__version__",
    # Configuration
    "DetectionConfig",
    "DetectionOptions",
    "ExecutionConfig",
    "RetryConfig",
    # Entities
    "EntityDefinition",
    "EntityRegistry",
    "ForeignKey",
    "default_registry",
    # Detection
    "ChangeClassifier",
    "ChangeDetector",
    "calculate_content_hash",
    # Reconciliation
    "LookupMapping",
    "ReconciliationIndex",
    # Execution
    "DependencyGraph",
    "BatchMigrationExecutor",
    "DefaultTransformer",
    "ExecutionControl",
    "RecordTransformer",
    # Progress and integrity
    "ProgressSnapshot",
    "ProgressStatus",
    "ProgressTracker",
    "IntegrityReport",
    "RecordComparison",
    # Sessions
    "SessionCoordinator",
    "SessionHandle",
    # Models
    "BatchResult",
    "BatchStatus",
    "ChangeMetadata",
    "ChangeRecord",
    "ChangeType",
    "Checkpoint",
    "DestinationRecord",
    "DetectionMethod",
    "DetectionReport",
    "DetectionResult",
    "DetectionSummary",
    "EntityExecutionResult",
    "ExecutionResult",
    "FKPolicy",
    "MigrationSession",
    "MigrationTask",
    "OverallStatus",
    "SessionStatus",
    "SourceRecord",
    "TaskPriority",
    "TaskStatus",
    # Stores
    "SourceStore",
    "DestinationStore",
    "InMemorySourceStore",
    "InMemoryDestinationStore",
    "PostgreSQLSourceStore",
    "PostgreSQLDestinationStore",
    # Repositories
    "CheckpointRepository",
    "InMemoryCheckpointRepository",
    "PostgreSQLCheckpointRepository",
    "SQLiteCheckpointRepository",
    "SessionRepository",
    "InMemorySessionRepository",
    "PostgreSQLSessionRepository",
    "SQLiteSessionRepository",
    # Exceptions
    "DiffMigrationError",
    "ValidationError",
    "StoreConnectionError",
    "ConflictError",
    "CyclicDependencyError",
    "BatchApplyError",
    "TimestampAnomalyError",
    "CheckpointCorruptionError",
    "ForeignKeyResolutionError",
    "UnknownEntityError",
    "SessionNotFoundError",
    "InvalidSessionTransitionError",
    "RetryError",
]
