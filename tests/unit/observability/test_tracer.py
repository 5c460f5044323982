"""
Unit tests for tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer class
- OpenTelemetryTracer class
- MockTracer class
- create_tracer() factory function
"""

from __future__ import annotations

import contextlib
from typing import Any
from unittest.mock import patch

import pytest

from resilientmq.observability import (
    ATTR_MESSAGING_SYSTEM,
    MESSAGING_SYSTEM_RABBITMQ,
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)


class TestTracerProtocol:
    """Tests for Tracer protocol."""

    def test_null_tracer_implements_protocol(self):
        """NullTracer implements Tracer protocol."""
        assert isinstance(NullTracer(), Tracer)

    @pytest.mark.skipif(not OTEL_AVAILABLE, reason="OTEL not installed")
    def test_otel_tracer_implements_protocol(self):
        """OpenTelemetryTracer implements Tracer protocol."""
        assert isinstance(OpenTelemetryTracer(__name__), Tracer)

    def test_mock_tracer_implements_protocol(self):
        """MockTracer implements Tracer protocol."""
        assert isinstance(MockTracer(), Tracer)

    def test_custom_implementation_matches_protocol(self):
        """Custom implementations can match the protocol."""

        class CustomTracer:
            def span(self, name: str, attributes: dict[str, Any] | None = None):
                return contextlib.nullcontext()

            @property
            def enabled(self) -> bool:
                return False

        assert isinstance(CustomTracer(), Tracer)

    def test_object_without_span_does_not_match(self):
        assert not isinstance(object(), Tracer)


class TestNullTracer:
    """Tests for NullTracer."""

    def test_span_yields_none(self):
        tracer = NullTracer()

        with tracer.span("resilientmq.channel.setup", {"key": "value"}) as span:
            assert span is None

    def test_not_enabled(self):
        assert NullTracer().enabled is False

    def test_exceptions_propagate(self):
        with pytest.raises(ValueError), NullTracer().span("op"):
            raise ValueError("boom")


class TestMockTracer:
    """Tests for MockTracer."""

    def test_records_spans(self):
        tracer = MockTracer()
        attributes = {ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ}

        with tracer.span("resilientmq.connection_manager.connect", attributes):
            pass
        with tracer.span("resilientmq.channel.setup"):
            pass

        assert tracer.span_names == [
            "resilientmq.connection_manager.connect",
            "resilientmq.channel.setup",
        ]
        assert tracer.spans[0][1] == attributes
        assert tracer.spans[1][1] is None

    def test_enabled(self):
        assert MockTracer().enabled is True

    def test_clear(self):
        tracer = MockTracer()
        with tracer.span("op"):
            pass

        tracer.clear()

        assert tracer.spans == []


class TestOpenTelemetryTracer:
    """Tests for OpenTelemetryTracer."""

    def test_raises_without_opentelemetry(self):
        with (
            patch("resilientmq.observability.tracer.trace", None),
            pytest.raises(RuntimeError, match="opentelemetry-api is not installed"),
        ):
            OpenTelemetryTracer(__name__)

    @pytest.mark.skipif(not OTEL_AVAILABLE, reason="OTEL not installed")
    def test_span_context(self):
        tracer = OpenTelemetryTracer(__name__)

        with tracer.span("op", {"resilientmq.channel.name": "orders"}):
            pass

        assert tracer.enabled is True


class TestCreateTracer:
    """Tests for create_tracer() factory."""

    def test_disabled_returns_null_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=False), NullTracer)

    @pytest.mark.skipif(not OTEL_AVAILABLE, reason="OTEL not installed")
    def test_enabled_returns_otel_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=True), OpenTelemetryTracer)

    def test_enabled_without_otel_returns_null_tracer(self):
        with patch("resilientmq.observability.tracer.OTEL_AVAILABLE", False):
            tracer = create_tracer(__name__, enable_tracing=True)

        assert isinstance(tracer, NullTracer)
