"""
Observability utilities for resilientmq.

Provides the composition-based tracer and the standard span attribute keys.
OpenTelemetry is an optional dependency; without it every tracer is a
NullTracer.
"""

from resilientmq.observability.attributes import (
    ATTR_CHANNEL_NAME,
    ATTR_CONSUMER_COUNT,
    ATTR_ENDPOINT_COUNT,
    ATTR_ENDPOINT_INDEX,
    ATTR_MESSAGING_SYSTEM,
    ATTR_QUEUE_LENGTH,
    ATTR_SERVER_ADDRESS,
    ATTR_SETUP_COUNT,
    MESSAGING_SYSTEM_RABBITMQ,
)
from resilientmq.observability.tracer import (
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    "ATTR_CHANNEL_NAME",
    "ATTR_CONSUMER_COUNT",
    "ATTR_ENDPOINT_COUNT",
    "ATTR_ENDPOINT_INDEX",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_QUEUE_LENGTH",
    "ATTR_SERVER_ADDRESS",
    "ATTR_SETUP_COUNT",
    "MESSAGING_SYSTEM_RABBITMQ",
    "MockTracer",
    "NullTracer",
    "OTEL_AVAILABLE",
    "OpenTelemetryTracer",
    "Tracer",
    "create_tracer",
]
