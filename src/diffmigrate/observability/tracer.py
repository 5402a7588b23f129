"""
Tracers used by the detector, executor, coordinator and storage backends.

Every component takes an optional ``tracer`` and otherwise builds one with
``create_tracer(__name__, enable_tracing)``. Spans are opened with
``tracer.span(name, attributes)``; the context manager yields a span object
or None, so outcome attributes are set behind an ``if span:`` check:

    >>> with self._tracer.span("diffmigrate.executor.batch", attrs) as span:
    ...     mapping = await self._upsert(entity, rows)
    ...     if span:
    ...         span.set_attribute(ATTR_RECORDS_SUCCEEDED, len(mapping))

Three implementations:
    - ``NullTracer``: tracing disabled or OpenTelemetry missing
    - ``OpenTelemetryTracer``: real spans on the global tracer provider
    - ``MockTracer``: records spans and their attributes for tests
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol, runtime_checkable

from diffmigrate.observability.tracing import should_trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span


@runtime_checkable
class Tracer(Protocol):
    """What components need from a tracer."""

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Any]:
        """
        Open a span around a block.

        Args:
            name: Dotted span name, e.g. "diffmigrate.executor.batch".
            attributes: Attributes known when the span starts.

        Returns:
            Context manager yielding an object with ``set_attribute`` or None.
        """
        ...

    @property
    def enabled(self) -> bool:
        """Whether spans are recorded anywhere."""
        ...


class NullTracer:
    """Tracer that records nothing."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by ``opentelemetry.trace.get_tracer``.

    Raises:
        ImportError: If OpenTelemetry is not installed.
    """

    def __init__(self, tracer_name: str) -> None:
        from opentelemetry import trace

        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    @property
    def enabled(self) -> bool:
        return True


class RecordedSpan(NamedTuple):
    """A span captured by MockTracer; attributes set later are merged in."""

    name: str
    attributes: dict[str, Any]

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value


class MockTracer:
    """
    Tracer for tests.

    Spans are kept in opening order. Each entry unpacks as
    ``(name, attributes)`` and includes attributes set inside the block.

    Example:
        >>> tracer = MockTracer()
        >>> executor = BatchMigrationExecutor(..., tracer=tracer)
        >>> await executor.execute_migration_tasks(tasks)
        >>> tracer.attributes_of("diffmigrate.executor.execute_migration_tasks")
        {'diffmigrate.session.id': '...', 'diffmigrate.execution.status': 'completed', ...}
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[RecordedSpan, None, None]:
        recorded = RecordedSpan(name, dict(attributes or {}))
        self.spans.append(recorded)
        yield recorded

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [span.name for span in self.spans]

    def spans_named(self, name: str) -> list[RecordedSpan]:
        return [span for span in self.spans if span.name == name]

    def attributes_of(self, name: str) -> dict[str, Any]:
        """
        Attributes of the first span called ``name``.

        Raises:
            KeyError: If no such span was recorded.
        """
        for span in self.spans:
            if span.name == name:
                return span.attributes
        raise KeyError(name)

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Build the tracer a component should use when none was injected.

    Args:
        name: Tracer name, usually the module's ``__name__``.
        enable_tracing: The component's tracing switch.

    Returns:
        OpenTelemetryTracer when tracing is on and OpenTelemetry is importable,
        NullTracer otherwise.
    """
    if should_trace(enable_tracing):
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "MockTracer",
    "create_tracer",
]
