"""
OpenTelemetry availability detection for diffmigrate.

OpenTelemetry is an optional dependency (``pip install diffmigrate[telemetry]``).
This module is the single place that attempts the import so that every other
component can simply check ``OTEL_AVAILABLE``.
"""

from __future__ import annotations

try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]


def should_trace(enable_tracing: bool) -> bool:
    """True when the component asked for tracing and OpenTelemetry imported."""
    return enable_tracing and OTEL_AVAILABLE


__all__ = [
    "OTEL_AVAILABLE",
    "should_trace",
]
