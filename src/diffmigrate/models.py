"""
Data models for the differential detection and batch migration engine.

Models in this module:

Enums:
    - ChangeType: Kind of difference found for a record
    - DetectionMethod: How changes were detected for an entity
    - FKPolicy: What to do when a foreign key parent has no mapping
    - TaskPriority: Ordering hint for tasks inside one dependency level
    - TaskStatus: Per-entity execution state machine
    - SessionStatus: Session lifecycle state machine
    - OverallStatus: Aggregate outcome of an execution
    - BatchStatus: Outcome of a single batch

Store Records:
    - SourceRecord: A row read from the legacy source store
    - DestinationRecord: Reconciliation columns read from the destination store

Detection:
    - ChangeMetadata / ChangeRecord: Immutable classification output
    - ExcludedRecord: A record held back from migration and why
    - DetectionSummary / DetectionPerformance / DetectionResult
    - DetectionReport: Results of a multi-entity detection run

Execution:
    - MigrationTask: Declarative executor input
    - Checkpoint: Per (session, entity) progress marker
    - BatchResult / EntityExecutionResult / ExecutionResult

Sessions:
    - MigrationSession: A coordinated migration run
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from diffmigrate.exceptions import CheckpointCorruptionError, ValidationError


def as_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to an aware UTC datetime.

    Naive values are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# =============================================================================
# Enums
# =============================================================================


class ChangeType(Enum):
    """Kind of difference found between a source record and the destination."""

    NEW = "new"
    """Source record has no destination counterpart."""

    MODIFIED = "modified"
    """Source record differs from its destination counterpart."""

    DELETED = "deleted"
    """Destination record whose legacy id is absent from the source scan."""


class DetectionMethod(Enum):
    """How changes were detected for an entity."""

    TIMESTAMP_ONLY = "timestamp_only"
    TIMESTAMP_WITH_HASH = "timestamp_with_hash"
    FULL_CONTENT_HASH = "full_content_hash"


class FKPolicy(Enum):
    """
    Foreign key resolution policy.

    Attributes:
        STRICT: Skip the dependent record if the parent mapping is missing.
        SOFT: Write a null foreign key and record the gap.
    """

    STRICT = "strict"
    SOFT = "soft"


class TaskPriority(Enum):
    """Priority of a migration task inside one dependency level."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key; lower ranks start first."""
        return {TaskPriority.HIGH: 0, TaskPriority.MEDIUM: 1, TaskPriority.LOW: 2}[self]


class TaskStatus(Enum):
    """
    Per-entity execution state.

    State machine transitions:
        PENDING -> RUNNING -> {COMPLETED, PARTIALLY_FAILED, FAILED}
        PENDING -> FAILED     (a prerequisite did not complete)
        RUNNING -> CANCELLED  (session paused or cancelled between batches)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TaskStatus.COMPLETED,
            TaskStatus.PARTIALLY_FAILED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        )

    def can_transition_to(self, target: TaskStatus) -> bool:
        valid_transitions: dict[TaskStatus, tuple[TaskStatus, ...]] = {
            TaskStatus.PENDING: (TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED),
            TaskStatus.RUNNING: (
                TaskStatus.COMPLETED,
                TaskStatus.PARTIALLY_FAILED,
                TaskStatus.FAILED,
                TaskStatus.CANCELLED,
            ),
        }
        return target in valid_transitions.get(self, ())


class SessionStatus(Enum):
    """
    Migration session lifecycle.

    State machine transitions:
        QUEUED -> RUNNING <-> PAUSED -> {COMPLETED, FAILED, CANCELLED}

    Valid transitions:
        - QUEUED -> RUNNING: Worker picked the session up
        - RUNNING -> PAUSED: Operator paused; honored at the next batch boundary
        - PAUSED -> RUNNING: Operator resumed; work re-enters at the checkpoints
        - RUNNING -> COMPLETED / FAILED: Execution finished
        - Any non-terminal -> CANCELLED: Operator cancelled
        - QUEUED / PAUSED -> FAILED: Session could not be (re)started
    """

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Terminal sessions are archived and release their entity claims."""
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)

    @property
    def holds_claim(self) -> bool:
        """
        Check if a session in this status holds its entity claims.

        Queued sessions are already admitted, so they claim their entities
        as well as running and paused ones.
        """
        return not self.is_terminal

    def can_transition_to(self, target: SessionStatus) -> bool:
        if self.is_terminal:
            return False

        valid_transitions: dict[SessionStatus, tuple[SessionStatus, ...]] = {
            SessionStatus.QUEUED: (
                SessionStatus.RUNNING,
                SessionStatus.FAILED,
                SessionStatus.CANCELLED,
            ),
            SessionStatus.RUNNING: (
                SessionStatus.PAUSED,
                SessionStatus.COMPLETED,
                SessionStatus.FAILED,
                SessionStatus.CANCELLED,
            ),
            SessionStatus.PAUSED: (
                SessionStatus.RUNNING,
                SessionStatus.FAILED,
                SessionStatus.CANCELLED,
            ),
        }
        return target in valid_transitions.get(self, ())


class OverallStatus(Enum):
    """Aggregate outcome of executing a set of migration tasks."""

    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class BatchStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


# =============================================================================
# Store Records
# =============================================================================


@dataclass(frozen=True)
class SourceRecord:
    """
    A row read from the legacy source store.

    Attributes:
        legacy_id: Source primary key, as a string.
        updated_at: Last-modified timestamp of the row.
        data: Full row contents keyed by column name.
        content_hash: Hash precomputed by the store, if any.
    """

    legacy_id: str
    updated_at: datetime
    data: Mapping[str, Any] = field(default_factory=dict)
    content_hash: str | None = None


@dataclass(frozen=True)
class DestinationRecord:
    """
    Reconciliation view of a destination row.

    Attributes:
        legacy_id: Legacy identifier preserved in the destination.
        destination_id: Destination primary key, as a string.
        updated_at: Last-modified timestamp, if tracked.
        content_hash: Stored content hash, if tracked.
        data: Row contents when the store exposes them (used for changed fields).
    """

    legacy_id: str
    destination_id: str
    updated_at: datetime | None = None
    content_hash: str | None = None
    data: Mapping[str, Any] | None = None


# =============================================================================
# Detection
# =============================================================================


class ChangeMetadata(BaseModel):
    """Context attached to a change record."""

    model_config = ConfigDict(frozen=True)

    entity_type: str = Field(..., description="Logical entity type")
    source_table: str = Field(..., description="Source table the record was read from")
    destination_table: str = Field(..., description="Destination table it maps to")
    destination_id: str | None = Field(
        default=None,
        description="Destination primary key of the matched record",
    )
    changed_fields: tuple[str, ...] = Field(
        default=(),
        description="Top-level fields whose values differ",
    )
    anomalies: tuple[str, ...] = Field(
        default=(),
        description="Timestamp anomalies that lowered confidence",
    )
    notes: tuple[str, ...] = Field(
        default=(),
        description="Free-form detection notes",
    )


class ChangeRecord(BaseModel):
    """
    A detected difference for a single record.

    Immutable once produced by the classifier.

    Example:
        >>> record = ChangeRecord(
        ...     record_id="1042",
        ...     change_type=ChangeType.NEW,
        ...     source_timestamp=datetime.now(UTC),
        ...     confidence=0.97,
        ...     metadata=ChangeMetadata(
        ...         entity_type="patients",
        ...         source_table="dispatch_patient",
        ...         destination_table="patients",
        ...     ),
        ... )
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(..., description="Legacy (source-side) identifier")
    change_type: ChangeType = Field(..., description="Kind of change")
    source_timestamp: datetime = Field(..., description="Source last-modified timestamp")
    destination_timestamp: datetime | None = Field(
        default=None,
        description="Timestamp of the destination match, if any",
    )
    content_hash: str | None = Field(default=None, description="Source content hash")
    previous_content_hash: str | None = Field(
        default=None,
        description="Destination content hash the source differs from",
    )
    confidence: float = Field(..., ge=0.0, le=1.0, description="Classifier confidence")
    metadata: ChangeMetadata


@dataclass(frozen=True)
class ExcludedRecord:
    """A record held back from migration and the reason."""

    record_id: str
    confidence: float
    reason: str


@dataclass(frozen=True)
class DetectionSummary:
    """
    Change counts for one entity.

    Attributes:
        new_records: Records absent from the destination.
        modified_records: Records that differ from the destination.
        deleted_records: Destination records absent from the source scan.
        unchanged_records: Records that matched the destination.
        filtered_records: Records rejected by an inclusion filter.
        excluded_low_confidence: Records held back by confidence checks.
        change_percentage: Changes over analyzed records, two decimals.
        below_threshold: True when change_percentage is under the caller's threshold.
    """

    new_records: int = 0
    modified_records: int = 0
    deleted_records: int = 0
    unchanged_records: int = 0
    filtered_records: int = 0
    excluded_low_confidence: int = 0
    change_percentage: float = 0.0
    below_threshold: bool = False

    @property
    def total_changes(self) -> int:
        return self.new_records + self.modified_records + self.deleted_records

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_records": self.new_records,
            "modified_records": self.modified_records,
            "deleted_records": self.deleted_records,
            "unchanged_records": self.unchanged_records,
            "filtered_records": self.filtered_records,
            "excluded_low_confidence": self.excluded_low_confidence,
            "total_changes": self.total_changes,
            "change_percentage": self.change_percentage,
            "below_threshold": self.below_threshold,
        }


@dataclass(frozen=True)
class DetectionPerformance:
    """Measured cost of a detection run, computed after the scan."""

    analysis_duration_ms: float = 0.0
    queries_executed: int = 0
    records_per_second: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis_duration_ms": self.analysis_duration_ms,
            "queries_executed": self.queries_executed,
            "records_per_second": self.records_per_second,
        }


@dataclass(frozen=True)
class DetectionResult:
    """
    Per-entity detection outcome.

    Created once per entity per run and read-only afterward. A failed
    analysis is represented as a zero-change result with ``error`` set.

    Attributes:
        entity_type: Entity that was analyzed.
        total_records_analyzed: Source records examined.
        changes: Change records in scan order.
        summary: Change counts.
        performance: Measured cost.
        detection_method: How changes were detected.
        analyzed_at: When the analysis finished.
        excluded: Records held back from migration.
        warnings: Known limitations that apply to this result.
        recommendations: Operator guidance.
        error: Failure description if the analysis failed.
    """

    entity_type: str
    total_records_analyzed: int
    changes: tuple[ChangeRecord, ...]
    summary: DetectionSummary
    performance: DetectionPerformance
    detection_method: DetectionMethod = DetectionMethod.TIMESTAMP_ONLY
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    excluded: tuple[ExcludedRecord, ...] = ()
    warnings: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    error: str | None = None

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def should_migrate(self) -> bool:
        """True if this entity belongs in the "to migrate" set."""
        if self.has_error or self.summary.below_threshold:
            return False
        return bool(self.migratable_record_ids)

    @property
    def migratable_record_ids(self) -> tuple[str, ...]:
        """Legacy ids of new and modified records, in scan order."""
        return tuple(
            change.record_id
            for change in self.changes
            if change.change_type in (ChangeType.NEW, ChangeType.MODIFIED)
        )

    def changes_of(self, change_type: ChangeType) -> list[ChangeRecord]:
        return [change for change in self.changes if change.change_type == change_type]

    def to_migration_task(
        self,
        *,
        batch_size: int = 500,
        priority: TaskPriority = TaskPriority.MEDIUM,
        dependencies: tuple[str, ...] = (),
    ) -> MigrationTask:
        """
        Build a migration task restricted to the detected new/modified records.

        Deleted records are reported only; the executor never deletes.

        Args:
            batch_size: Batch size for the task.
            priority: Priority inside the task's dependency level.
            dependencies: Entity types this one depends on.

        Returns:
            MigrationTask carrying the detected record ids.
        """
        return MigrationTask(
            entity_type=self.entity_type,
            batch_size=batch_size,
            priority=priority,
            dependencies=dependencies,
            record_ids=self.migratable_record_ids,
        )

    @classmethod
    def failed(
        cls,
        entity_type: str,
        error: str,
        *,
        detection_method: DetectionMethod = DetectionMethod.TIMESTAMP_ONLY,
        analysis_duration_ms: float = 0.0,
        queries_executed: int = 0,
    ) -> DetectionResult:
        """Build the zero-change result that stands in for a failed analysis."""
        return cls(
            entity_type=entity_type,
            total_records_analyzed=0,
            changes=(),
            summary=DetectionSummary(),
            performance=DetectionPerformance(
                analysis_duration_ms=analysis_duration_ms,
                queries_executed=queries_executed,
            ),
            detection_method=detection_method,
            recommendations=(f"Resolve the analysis error for {entity_type} and re-run detection",),
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "total_records_analyzed": self.total_records_analyzed,
            "changes": [change.model_dump(mode="json") for change in self.changes],
            "summary": self.summary.to_dict(),
            "performance": self.performance.to_dict(),
            "detection_method": self.detection_method.value,
            "analyzed_at": self.analyzed_at.isoformat(),
            "excluded": [
                {"record_id": e.record_id, "confidence": e.confidence, "reason": e.reason}
                for e in self.excluded
            ],
            "warnings": list(self.warnings),
            "recommendations": list(self.recommendations),
            "error": self.error,
        }


@dataclass(frozen=True)
class DetectionReport:
    """Results of detecting changes across several entities."""

    analysis_id: str
    results: dict[str, DetectionResult]
    started_at: datetime
    completed_at: datetime

    @property
    def entities_to_migrate(self) -> list[str]:
        return [name for name, result in self.results.items() if result.should_migrate]

    @property
    def failed_entities(self) -> list[str]:
        return [name for name, result in self.results.items() if result.has_error]

    @property
    def total_records_analyzed(self) -> int:
        return sum(r.total_records_analyzed for r in self.results.values())

    @property
    def total_changes(self) -> int:
        return sum(r.summary.total_changes for r in self.results.values())


# =============================================================================
# Execution
# =============================================================================


@dataclass(frozen=True)
class MigrationTask:
    """
    Declarative input to the batch executor.

    Attributes:
        entity_type: Entity to migrate.
        batch_size: Records per batch (1-5000).
        priority: Ordering hint inside a dependency level.
        dependencies: Entity types that must complete first.
        record_ids: Restrict the run to these legacy ids; None migrates the
            whole source entity.

    Example:
        >>> task = MigrationTask(
        ...     entity_type="patients",
        ...     batch_size=500,
        ...     dependencies=("offices", "doctors"),
        ... )
    """

    entity_type: str
    batch_size: int = 500
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: tuple[str, ...] = ()
    record_ids: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if not self.entity_type:
            raise ValidationError("entity_type must not be empty", field_name="entity_type")
        if not 1 <= self.batch_size <= 5000:
            raise ValidationError(
                f"batch_size must be between 1 and 5000, got {self.batch_size}",
                field_name="batch_size",
                value=self.batch_size,
                entity_type=self.entity_type,
            )
        if self.entity_type in self.dependencies:
            raise ValidationError(
                f"{self.entity_type} cannot depend on itself",
                field_name="dependencies",
                entity_type=self.entity_type,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "batch_size": self.batch_size,
            "priority": self.priority.value,
            "dependencies": list(self.dependencies),
            "record_ids": list(self.record_ids) if self.record_ids is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationTask:
        record_ids = data.get("record_ids")
        return cls(
            entity_type=data["entity_type"],
            batch_size=data.get("batch_size", 500),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            dependencies=tuple(data.get("dependencies", ())),
            record_ids=tuple(record_ids) if record_ids is not None else None,
        )


@dataclass(frozen=True)
class Checkpoint:
    """
    Progress marker for one entity inside one session.

    Offsets only move forward. ``advance`` returns a new checkpoint; the
    repositories refuse to store one that would rewind.

    Attributes:
        session_id: Owning session.
        entity_type: Entity the checkpoint tracks.
        last_processed_offset: Records of the task's ordered set already handled.
        records_succeeded: Records applied.
        records_failed: Records in batches that failed after retries.
        records_skipped: Records skipped by strict foreign keys.
        batches_completed: Batches handled (successful or isolated).
        last_processed_id: Legacy id of the last handled record.
        updated_at: When the checkpoint was written.
    """

    session_id: str
    entity_type: str
    last_processed_offset: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    batches_completed: int = 0
    last_processed_id: str | None = None
    updated_at: datetime | None = None

    @property
    def records_processed(self) -> int:
        return self.records_succeeded + self.records_failed + self.records_skipped

    def advance(
        self,
        *,
        processed: int,
        succeeded: int,
        failed: int,
        skipped: int = 0,
        last_processed_id: str | None = None,
    ) -> Checkpoint:
        """
        Return the checkpoint after one more handled batch.

        Args:
            processed: Records in the batch.
            succeeded: Records applied.
            failed: Records isolated as failed.
            skipped: Records skipped.
            last_processed_id: Legacy id of the batch's last record.

        Returns:
            New Checkpoint with the offset moved forward.
        """
        if processed < 0:
            raise ValueError(f"processed must be >= 0, got {processed}")
        return Checkpoint(
            session_id=self.session_id,
            entity_type=self.entity_type,
            last_processed_offset=self.last_processed_offset + processed,
            records_succeeded=self.records_succeeded + succeeded,
            records_failed=self.records_failed + failed,
            records_skipped=self.records_skipped + skipped,
            batches_completed=self.batches_completed + 1,
            last_processed_id=last_processed_id or self.last_processed_id,
            updated_at=datetime.now(UTC),
        )

    def validate(self, total_records: int | None = None) -> None:
        """
        Check that the checkpoint is internally consistent.

        Args:
            total_records: Size of the task's record set, when known.

        Raises:
            CheckpointCorruptionError: If the checkpoint cannot be trusted.
        """
        if self.last_processed_offset < 0:
            raise CheckpointCorruptionError(
                self.session_id,
                self.entity_type,
                f"negative offset {self.last_processed_offset}",
            )
        counts = (self.records_succeeded, self.records_failed, self.records_skipped)
        if any(count < 0 for count in counts):
            raise CheckpointCorruptionError(
                self.session_id, self.entity_type, f"negative record counts {counts}"
            )
        if self.records_processed > self.last_processed_offset:
            raise CheckpointCorruptionError(
                self.session_id,
                self.entity_type,
                f"{self.records_processed} records accounted for but offset is "
                f"{self.last_processed_offset}",
            )
        if total_records is not None and self.last_processed_offset > total_records:
            raise CheckpointCorruptionError(
                self.session_id,
                self.entity_type,
                f"offset {self.last_processed_offset} is past the end of "
                f"{total_records} records",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "last_processed_offset": self.last_processed_offset,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "batches_completed": self.batches_completed,
            "last_processed_id": self.last_processed_id,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one batch."""

    batch_number: int
    offset: int
    status: BatchStatus
    records_succeeded: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    attempts: int = 1
    duration_ms: float = 0.0
    error: str | None = None

    @property
    def records_processed(self) -> int:
        return self.records_succeeded + self.records_failed + self.records_skipped


@dataclass
class EntityExecutionResult:
    """
    Mutable per-entity accumulator filled in while an entity runs.

    Attributes:
        entity_type: Entity being migrated.
        status: Current task status.
        records_succeeded / records_failed / records_skipped: Record counts.
        batches_completed / batches_failed: Batch counts.
        resumed_from_offset: Checkpoint offset the run started from.
        errors: Error details (``DiffMigrationError.to_dict`` shape).
        failed_record_ids: Legacy ids of records in isolated batches.
        fk_gaps: Soft foreign keys written as null.
        blocked_by: Prerequisites that did not complete.
        batches: Per-batch outcomes.
    """

    entity_type: str
    status: TaskStatus = TaskStatus.PENDING
    records_succeeded: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    batches_completed: int = 0
    batches_failed: int = 0
    resumed_from_offset: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    failed_record_ids: list[str] = field(default_factory=list)
    fk_gaps: list[dict[str, Any]] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    batches: list[BatchResult] = field(default_factory=list)

    @property
    def records_processed(self) -> int:
        return self.records_succeeded + self.records_failed + self.records_skipped

    @property
    def duration_ms(self) -> float:
        if self.started_at is None or self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def record_batch(self, batch: BatchResult) -> None:
        self.batches.append(batch)
        self.records_succeeded += batch.records_succeeded
        self.records_failed += batch.records_failed
        self.records_skipped += batch.records_skipped
        if batch.status == BatchStatus.SUCCESS:
            self.batches_completed += 1
        else:
            self.batches_failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "batches_completed": self.batches_completed,
            "batches_failed": self.batches_failed,
            "resumed_from_offset": self.resumed_from_offset,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
            "failed_record_ids": self.failed_record_ids,
            "fk_gaps": self.fk_gaps,
            "blocked_by": self.blocked_by,
        }


@dataclass(frozen=True)
class ExecutionResult:
    """
    Aggregate outcome of ``execute_migration_tasks``.

    Attributes:
        overall_status: Combined outcome.
        total_records_processed: Records handled across all entities.
        total_records_failed: Records that failed across all entities.
        total_records_skipped: Records skipped across all entities.
        entities: Per-entity detail keyed by entity type.
        started_at / completed_at: Wall clock bounds of the run.
    """

    overall_status: OverallStatus
    total_records_processed: int
    total_records_failed: int
    total_records_skipped: int
    entities: dict[str, EntityExecutionResult]
    started_at: datetime
    completed_at: datetime

    @property
    def duration_ms(self) -> float:
        return (self.completed_at - self.started_at).total_seconds() * 1000

    @property
    def completed_entities(self) -> list[str]:
        return [n for n, e in self.entities.items() if e.status == TaskStatus.COMPLETED]

    @property
    def failed_entities(self) -> list[str]:
        return [
            n
            for n, e in self.entities.items()
            if e.status in (TaskStatus.FAILED, TaskStatus.PARTIALLY_FAILED)
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_status": self.overall_status.value,
            "total_records_processed": self.total_records_processed,
            "total_records_failed": self.total_records_failed,
            "total_records_skipped": self.total_records_skipped,
            "duration_ms": self.duration_ms,
            "entities": {name: e.to_dict() for name, e in self.entities.items()},
        }


# =============================================================================
# Sessions
# =============================================================================


@dataclass
class MigrationSession:
    """
    A coordinated migration run over a set of entities.

    Mutable because status changes over the session lifecycle. Everything
    needed to resume after a crash (entities, tasks, status) is persisted by
    the session repository; checkpoints live in the checkpoint repository.

    Attributes:
        session_id: Unique session identifier.
        entities: Entity types claimed by the session.
        tasks: Tasks the session executes.
        analysis_id: Detection run the tasks came from, if any.
        status: Current lifecycle status.
        created_at: When the session was admitted.
        started_at: When execution first started.
        updated_at: Last status change.
        completed_at: When a terminal status was reached.
        error_message: Failure description for FAILED sessions.
        result_summary: ``ExecutionResult.to_dict`` of the last execution.
        checkpoints: Latest checkpoints by entity (loaded on demand).
    """

    session_id: str
    entities: list[str]
    tasks: list[MigrationTask] = field(default_factory=list)
    analysis_id: str | None = None
    status: SessionStatus = SessionStatus.QUEUED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    result_summary: dict[str, Any] | None = None
    checkpoints: dict[str, Checkpoint] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def holds_claim(self) -> bool:
        return self.status.holds_claim

    def can_transition_to(self, target: SessionStatus) -> bool:
        return self.status.can_transition_to(target)


__all__ = [
    "as_utc",
    "ChangeType",
    "DetectionMethod",
    "FKPolicy",
    "TaskPriority",
    "TaskStatus",
    "SessionStatus",
    "OverallStatus",
    "BatchStatus",
    "SourceRecord",
    "DestinationRecord",
    "ChangeMetadata",
    "ChangeRecord",
    "ExcludedRecord",
    "DetectionSummary",
    "DetectionPerformance",
    "DetectionResult",
    "DetectionReport",
    "MigrationTask",
    "Checkpoint",
    "BatchResult",
    "EntityExecutionResult",
    "ExecutionResult",
    "MigrationSession",
]
