"""
Standard span attributes for diffmigrate.

Attribute keys shared by the detector, executor, coordinator and the storage
backends so that traces from different components line up. Database keys
follow the OpenTelemetry semantic conventions.
"""

# =============================================================================
# Entity and Session Attributes
# =============================================================================

ATTR_ENTITY_TYPE = "diffmigrate.entity.type"
"""Logical entity type being processed (e.g., 'patients')."""

ATTR_ENTITY_COUNT = "diffmigrate.entity.count"
"""Number of entity types in an operation (integer)."""

ATTR_SESSION_ID = "diffmigrate.session.id"
"""Migration session identifier (string)."""

ATTR_SESSION_STATUS = "diffmigrate.session.status"
"""Session status after the traced operation (string)."""

ATTR_ANALYSIS_ID = "diffmigrate.analysis.id"
"""Identifier of the detection run a session was derived from (string)."""

# =============================================================================
# Detection Attributes
# =============================================================================

ATTR_RECORDS_ANALYZED = "diffmigrate.detection.records_analyzed"
"""Number of source records analyzed (integer)."""

ATTR_CHANGES_DETECTED = "diffmigrate.detection.changes"
"""Number of change records produced (integer)."""

ATTR_DETECTION_METHOD = "diffmigrate.detection.method"
"""Detection method (timestamp_only, timestamp_with_hash, full_content_hash)."""

# =============================================================================
# Execution Attributes
# =============================================================================

ATTR_BATCH_NUMBER = "diffmigrate.batch.number"
"""Sequential batch number within an entity (integer)."""

ATTR_BATCH_SIZE = "diffmigrate.batch.size"
"""Number of records in a batch (integer)."""

ATTR_BATCH_OFFSET = "diffmigrate.batch.offset"
"""Offset of the first record of the batch (integer)."""

ATTR_RECORDS_SUCCEEDED = "diffmigrate.records.succeeded"
"""Records successfully applied (integer)."""

ATTR_RECORDS_FAILED = "diffmigrate.records.failed"
"""Records that failed to apply (integer)."""

ATTR_TASK_COUNT = "diffmigrate.task.count"
"""Number of migration tasks in an execution (integer)."""

ATTR_EXECUTION_STATUS = "diffmigrate.execution.status"
"""Overall outcome of an execution (completed, partial, failed, cancelled, paused)."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'postgresql')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation type (e.g., 'INSERT', 'SELECT')."""

ATTR_DB_TABLE = "db.sql.table"
"""Table being accessed."""


__all__ = [
    "ATTR_ENTITY_TYPE",
    "ATTR_ENTITY_COUNT",
    "ATTR_SESSION_ID",
    "ATTR_SESSION_STATUS",
    "ATTR_ANALYSIS_ID",
    "ATTR_RECORDS_ANALYZED",
    "ATTR_CHANGES_DETECTED",
    "ATTR_DETECTION_METHOD",
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_BATCH_OFFSET",
    "ATTR_RECORDS_SUCCEEDED",
    "ATTR_RECORDS_FAILED",
    "ATTR_TASK_COUNT",
    "ATTR_EXECUTION_STATUS",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_TABLE",
]
