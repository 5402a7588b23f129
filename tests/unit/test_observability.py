"""
Unit tests for the tracer implementations and span attributes.
"""

from unittest.mock import patch

import pytest

from diffmigrate.observability import (
    ATTR_ENTITY_TYPE,
    ATTR_EXECUTION_STATUS,
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    Tracer,
    create_tracer,
    should_trace,
)
from diffmigrate.observability import attributes


class TestNullTracer:
    def test_span_yields_none(self):
        tracer = NullTracer()
        with tracer.span("diffmigrate.test", {"a": 1}) as span:
            assert span is None
        assert tracer.enabled is False

    def test_exceptions_propagate(self):
        with pytest.raises(ValueError):
            with NullTracer().span("diffmigrate.test"):
                raise ValueError("boom")


class TestMockTracer:
    """Tests for MockTracer."""

    def test_records_spans_in_opening_order(self):
        tracer = MockTracer()
        with tracer.span("outer", {ATTR_ENTITY_TYPE: "offices"}):
            with tracer.span("inner"):
                pass

        assert tracer.span_names == ["outer", "inner"]
        assert tracer.spans[0] == ("outer", {ATTR_ENTITY_TYPE: "offices"})
        assert tracer.spans[1].attributes == {}

    def test_set_attribute_is_recorded(self):
        tracer = MockTracer()
        with tracer.span("run", {"a": 1}) as span:
            if span:
                span.set_attribute(ATTR_EXECUTION_STATUS, "completed")

        assert tracer.attributes_of("run") == {"a": 1, ATTR_EXECUTION_STATUS: "completed"}

    def test_initial_attributes_copied(self):
        attrs = {"a": 1}
        tracer = MockTracer()
        with tracer.span("run", attrs) as span:
            span.set_attribute("b", 2)
        assert attrs == {"a": 1}

    def test_lookup_helpers(self):
        tracer = MockTracer()
        for _ in range(2):
            with tracer.span("batch"):
                pass

        assert len(tracer.spans_named("batch")) == 2
        with pytest.raises(KeyError):
            tracer.attributes_of("missing")

        tracer.clear()
        assert tracer.spans == []

    def test_implements_protocol(self):
        assert isinstance(MockTracer(), Tracer)
        assert isinstance(NullTracer(), Tracer)


class TestCreateTracer:
    def test_disabled_gives_null_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=False), NullTracer)
        assert should_trace(False) is False

    def test_missing_opentelemetry_gives_null_tracer(self):
        with patch("diffmigrate.observability.tracing.OTEL_AVAILABLE", False):
            assert isinstance(create_tracer(__name__), NullTracer)

    @pytest.mark.skipif(not OTEL_AVAILABLE, reason="opentelemetry not installed")
    def test_enabled_gives_opentelemetry_tracer(self):
        from diffmigrate.observability import OpenTelemetryTracer

        tracer = create_tracer(__name__)
        assert isinstance(tracer, OpenTelemetryTracer)
        with tracer.span("diffmigrate.test", {ATTR_ENTITY_TYPE: "offices"}) as span:
            assert span is not None


class TestAttributes:
    def test_names_are_namespaced(self):
        for name in attributes.__all__:
            value = getattr(attributes, name)
            assert value.startswith(("diffmigrate.", "db."))

    def test_names_unique(self):
        values = [getattr(attributes, name) for name in attributes.__all__]
        assert len(values) == len(set(values))
