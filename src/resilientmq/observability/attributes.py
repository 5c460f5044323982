"""
Standard span attributes for resilientmq.

Messaging attributes follow OpenTelemetry semantic conventions; the
remaining keys are namespaced under ``resilientmq.``.
"""

# =============================================================================
# Messaging Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (always 'rabbitmq')."""

ATTR_SERVER_ADDRESS = "server.address"
"""Broker URL with credentials masked."""

MESSAGING_SYSTEM_RABBITMQ = "rabbitmq"

# =============================================================================
# Connection Attributes
# =============================================================================

ATTR_ENDPOINT_INDEX = "resilientmq.endpoint.index"
"""Position of the endpoint in the round-robin list (integer)."""

ATTR_ENDPOINT_COUNT = "resilientmq.endpoint.count"
"""Number of endpoints in the round-robin list (integer)."""

# =============================================================================
# Channel Attributes
# =============================================================================

ATTR_CHANNEL_NAME = "resilientmq.channel.name"
"""Debug name of the channel wrapper."""

ATTR_SETUP_COUNT = "resilientmq.setup.count"
"""Number of setup actions in the pipeline (integer)."""

ATTR_CONSUMER_COUNT = "resilientmq.consumer.count"
"""Number of registered consumers (integer)."""

ATTR_QUEUE_LENGTH = "resilientmq.queue.length"
"""Messages waiting in the outbound queue (integer)."""


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
]
