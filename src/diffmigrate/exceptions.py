"""
Exceptions for the differential detection and batch migration engine.

Exception Hierarchy:
    DiffMigrationError (base)
    +-- ValidationError                (also a ValueError)
    +-- StoreConnectionError           (also a builtin ConnectionError)
    +-- ConflictError
    +-- CyclicDependencyError
    +-- BatchApplyError
    +-- TimestampAnomalyError
    +-- CheckpointCorruptionError
    +-- ForeignKeyResolutionError
    +-- UnknownEntityError
    +-- SessionNotFoundError
    +-- InvalidSessionTransitionError

Every error carries an ErrorClassification describing how severe it is and
whether automatic retry, operator action, or an abort is the right response.
Only structural failures (invalid configuration, dependency cycles, corrupted
checkpoints) are fatal before any destination write happens; batch-level and
entity-level failures are isolated by the executor and detector.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from diffmigrate.retry import RetryConfig

if TYPE_CHECKING:
    from diffmigrate.models import SessionStatus


class ErrorSeverity(Enum):
    """How loudly a failure should surface to operators."""

    CRITICAL = "critical"  # checkpoint or mapping state can no longer be trusted
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        return _SEVERITY_LOG_LEVELS[self]


_SEVERITY_LOG_LEVELS = {
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.INFO: logging.INFO,
}


class ErrorRecoverability(Enum):
    """
    What the engine (or an operator) should do next.

    TRANSIENT errors are retried by ``retry_async``. RECOVERABLE errors need
    an operator decision, such as waiting for a conflicting session or
    resetting a checkpoint, after which the session can resume. FATAL errors
    stop the run before any destination write.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        return self is ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        return self is ErrorRecoverability.FATAL


@dataclass(frozen=True)
class ErrorClassification:
    """
    Static description of an error type.

    Each exception class declares one as ``_default_classification``; the
    executor copies ``to_dict()`` into ``EntityResult.errors`` and session
    rows carry it in their result summary.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "error_code": self.error_code,
            "category": self.category,
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config is not None:
            data["retry_config"] = self.retry_config.to_dict()
        return data


CONNECTIVITY_RETRY_CONFIG = RetryConfig(
    max_retries=5,
    initial_delay=0.5,
    max_delay=30.0,
    exponential_base=2.0,
    jitter=0.2,
)

BATCH_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    initial_delay=1.0,
    max_delay=10.0,
    exponential_base=2.0,
    jitter=0.1,
)


class DiffMigrationError(Exception):
    """
    Root of every error raised by diffmigrate.

    ``session_id`` and ``entity_type`` are set when the failure is tied to
    one; ``suggested_action`` falls back to the class classification.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DIFFMIGRATE_ERROR",
        category="general",
        suggested_action="Review migration logs and retry once the cause is understood",
    )

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        entity_type: str | None = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.session_id = session_id
        self.entity_type = entity_type
        self.recoverable = recoverable
        self.suggested_action = suggested_action or self._default_classification.suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.session_id:
            parts.append(f"session_id={self.session_id}")
        if self.entity_type:
            parts.append(f"entity_type={self.entity_type}")
        if self.recoverable:
            parts.append("(recoverable)")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Serializable form, recorded in entity results and session summaries."""
        return {
            "message": self.message,
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
            "classification": self.classification.to_dict(),
        }


class ValidationError(DiffMigrationError, ValueError):
    """
    Raised when configuration or input fails validation.

    Always raised before any work starts.

    Attributes:
        field_name: The offending field, if a single field is at fault.
        value: The rejected value.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="VALIDATION_ERROR",
        category="configuration",
        suggested_action="Fix the rejected configuration value and resubmit",
    )

    def __init__(
        self,
        message: str,
        *,
        field_name: str | None = None,
        value: Any = None,
        entity_type: str | None = None,
    ) -> None:
        self.field_name = field_name
        self.value = value
        super().__init__(message, entity_type=entity_type)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["field"] = self.field_name
        return result


class StoreConnectionError(DiffMigrationError, ConnectionError):
    """
    Raised when a source or destination store is unreachable.

    Also covers connection pool exhaustion. Transient: callers retry with
    backoff. Because it subclasses the builtin ConnectionError, generic
    transient-exception filters pick it up as well.

    Attributes:
        store: Which store failed ("source", "destination", "repository").
        operation: The operation that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STORE_CONNECTION_ERROR",
        category="connectivity",
        suggested_action="Check database connectivity and connection pool sizing",
        retry_config=CONNECTIVITY_RETRY_CONFIG,
    )

    def __init__(
        self,
        message: str,
        *,
        store: str,
        operation: str | None = None,
        entity_type: str | None = None,
    ) -> None:
        self.store = store
        self.operation = operation
        super().__init__(message, entity_type=entity_type, recoverable=True)


class ConflictError(DiffMigrationError):
    """
    Raised when a session requests entities already claimed by another session.

    Fatal to the start call only; the blocking session is unaffected.

    Attributes:
        requested_session_id: The session that could not start.
        blocking_session_id: The session holding the claim.
        overlapping_entities: Entity types claimed by both, or with
            ``prerequisite=True`` the prerequisites the blocking session holds.
        prerequisite: The requested entities depend on entities the blocking
            session is still migrating.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="SESSION_CONFLICT",
        category="concurrency",
        suggested_action="Wait for the blocking session to finish or cancel it first",
    )

    def __init__(
        self,
        requested_session_id: str,
        blocking_session_id: str,
        overlapping_entities: Sequence[str],
        *,
        prerequisite: bool = False,
    ) -> None:
        self.requested_session_id = requested_session_id
        self.blocking_session_id = blocking_session_id
        self.overlapping_entities = list(overlapping_entities)
        self.prerequisite = prerequisite
        names = ", ".join(self.overlapping_entities)
        if prerequisite:
            message = (
                f"Prerequisites {names} are still being migrated "
                f"by session {blocking_session_id}"
            )
        else:
            message = f"Entities {names} are already claimed by session {blocking_session_id}"
        super().__init__(message=message, session_id=requested_session_id)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["blocking_session_id"] = self.blocking_session_id
        result["overlapping_entities"] = self.overlapping_entities
        result["prerequisite"] = self.prerequisite
        return result


class CyclicDependencyError(DiffMigrationError):
    """
    Raised when entity dependencies form a cycle.

    Attributes:
        cycle: Entity types along the cycle, first entity repeated at the end.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CYCLIC_DEPENDENCY",
        category="configuration",
        suggested_action="Remove one of the dependencies along the reported cycle",
    )

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(message=f"Circular dependency detected: {' -> '.join(self.cycle)}")


class BatchApplyError(DiffMigrationError):
    """
    Raised when applying a batch to the destination fails.

    Retryable; once retries are exhausted the executor isolates the failure
    to this batch and moves on.

    Attributes:
        batch_number: Sequential batch number within the entity.
        record_ids: Legacy ids of the records in the batch.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="BATCH_APPLY_FAILED",
        category="execution",
        suggested_action="Inspect the failed record ids and re-run them in a new session",
        retry_config=BATCH_RETRY_CONFIG,
    )

    def __init__(
        self,
        message: str,
        *,
        entity_type: str,
        batch_number: int,
        record_ids: Sequence[str] = (),
        session_id: str | None = None,
    ) -> None:
        self.batch_number = batch_number
        self.record_ids = list(record_ids)
        super().__init__(
            message,
            session_id=session_id,
            entity_type=entity_type,
            recoverable=True,
        )


class TimestampAnomalyError(DiffMigrationError):
    """
    Raised for a record whose timestamps look anomalous.

    Never fatal to a run: the detector only raises it when strict timestamp
    checks are requested, and reports the record as excluded.

    Attributes:
        record_id: Legacy id of the record.
        anomalies: Human-readable anomaly notes.
        confidence: Confidence after anomaly penalties.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="TIMESTAMP_ANOMALY",
        category="detection",
        suggested_action="Check clock synchronisation between source and destination",
    )

    def __init__(
        self,
        record_id: str,
        anomalies: Sequence[str],
        confidence: float,
        *,
        entity_type: str | None = None,
    ) -> None:
        self.record_id = record_id
        self.anomalies = list(anomalies)
        self.confidence = confidence
        super().__init__(
            message=f"Timestamp anomalies for record {record_id}: {'; '.join(self.anomalies)}",
            entity_type=entity_type,
            recoverable=True,
        )


class CheckpointCorruptionError(DiffMigrationError):
    """
    Raised when a persisted checkpoint cannot be trusted.

    Never repaired automatically; an operator must reset the checkpoint.

    Attributes:
        reason: What made the checkpoint invalid.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CHECKPOINT_CORRUPTED",
        category="state",
        suggested_action="Inspect the checkpoint row and reset it explicitly before resuming",
    )

    def __init__(self, session_id: str, entity_type: str, reason: str) -> None:
        self.reason = reason
        super().__init__(
            message=f"Checkpoint is corrupted: {reason}",
            session_id=session_id,
            entity_type=entity_type,
        )


class ForeignKeyResolutionError(DiffMigrationError):
    """
    Raised when a strict foreign key has no destination mapping.

    Attributes:
        record_id: Legacy id of the dependent record.
        field_name: Source field holding the parent legacy id.
        parent_entity: Entity type the foreign key points to.
        parent_legacy_id: The unresolved parent id.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="FK_UNRESOLVED",
        category="reconciliation",
        suggested_action="Migrate the parent entity first or relax the foreign key policy",
    )

    def __init__(
        self,
        *,
        entity_type: str,
        record_id: str,
        field_name: str,
        parent_entity: str,
        parent_legacy_id: str,
    ) -> None:
        self.record_id = record_id
        self.field_name = field_name
        self.parent_entity = parent_entity
        self.parent_legacy_id = parent_legacy_id
        super().__init__(
            message=(
                f"Record {record_id}: no {parent_entity} mapping for "
                f"{field_name}={parent_legacy_id}"
            ),
            entity_type=entity_type,
            recoverable=True,
        )


class UnknownEntityError(DiffMigrationError):
    """Raised when an entity type is not present in the registry."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ENTITY",
        category="configuration",
        suggested_action="Register the entity type before detecting or migrating it",
    )

    def __init__(self, entity_type: str) -> None:
        super().__init__(message=f"Unknown entity type: {entity_type}", entity_type=entity_type)


class SessionNotFoundError(DiffMigrationError):
    """Raised when a requested session does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="SESSION_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the session id is correct",
    )

    def __init__(self, session_id: str) -> None:
        super().__init__(message=f"Session not found: {session_id}", session_id=session_id)


class InvalidSessionTransitionError(DiffMigrationError):
    """
    Raised when a session operation is invalid for its current status.

    Attributes:
        current_status: Status the session is in.
        target_status: Status that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_SESSION_TRANSITION",
        category="state",
        suggested_action="Check the session status before pausing, resuming or cancelling",
    )

    def __init__(
        self,
        session_id: str,
        current_status: SessionStatus,
        target_status: SessionStatus,
    ) -> None:
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            message=(
                f"Cannot transition session from {current_status.value} to {target_status.value}"
            ),
            session_id=session_id,
        )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "CONNECTIVITY_RETRY_CONFIG",
    "BATCH_RETRY_CONFIG",
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
]
