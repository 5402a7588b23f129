"""
Observability utilities for diffmigrate.

Tracing is composition based: components take a ``Tracer`` (or an
``enable_tracing`` flag) and build one with ``create_tracer``. OpenTelemetry
is optional and everything degrades to no-op spans when it is missing.
"""

from diffmigrate.observability.attributes import (
    ATTR_ANALYSIS_ID,
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_OFFSET,
    ATTR_BATCH_SIZE,
    ATTR_CHANGES_DETECTED,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_DETECTION_METHOD,
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_TYPE,
    ATTR_EXECUTION_STATUS,
    ATTR_RECORDS_ANALYZED,
    ATTR_RECORDS_FAILED,
    ATTR_RECORDS_SUCCEEDED,
    ATTR_SESSION_ID,
    ATTR_SESSION_STATUS,
    ATTR_TASK_COUNT,
)
from diffmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from diffmigrate.observability.tracing import OTEL_AVAILABLE, should_trace

__all__ = [
    "OTEL_AVAILABLE",
    "should_trace",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "ATTR_ANALYSIS_ID",
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_OFFSET",
    "ATTR_BATCH_SIZE",
    "ATTR_CHANGES_DETECTED",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_TABLE",
    "ATTR_DETECTION_METHOD",
    "ATTR_ENTITY_COUNT",
    "ATTR_ENTITY_TYPE",
    "ATTR_EXECUTION_STATUS",
    "ATTR_RECORDS_ANALYZED",
    "ATTR_RECORDS_FAILED",
    "ATTR_RECORDS_SUCCEEDED",
    "ATTR_SESSION_ID",
    "ATTR_SESSION_STATUS",
    "ATTR_TASK_COUNT",
]
