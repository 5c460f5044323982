"""
resilientmq - Resilient AMQP connections and channels for asyncio.

This library provides:
- Connection manager with round-robin failover across brokers
- Channel wrappers that keep accepting publishes while disconnected and
  flush them in order once reconnected
- Setup pipelines re-run on every new channel
- Consumers re-subscribed automatically after reconnects and broker cancels
- aio-pika adapter, optional OpenTelemetry tracing
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("resilientmq")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from resilientmq.channel import ChannelWrapper, ChannelWrapperStats
from resilientmq.consumers import Consumer, ConsumerOptions
from resilientmq.endpoints import BrokerEndpoint, EndpointDescriptor, EndpointList
from resilientmq.events import EventEmitter
from resilientmq.exceptions import (
    ChannelClosedError,
    ConnectionManagerClosedError,
    NoEndpointsError,
    NotConnectedError,
    ResilientMQError,
    SerializationError,
    is_access_refused_error,
    is_channel_closed_error,
    is_not_found_error,
)
from resilientmq.manager import (
    ConnectionManager,
    ConnectionManagerConfig,
    ConnectionManagerStats,
    ConnectionState,
    connect,
)
from resilientmq.protocols import (
    AMQPChannel,
    AMQPConnection,
    Connector,
    ExchangeDeclareResult,
    QueueDeclareResult,
    SetupFunc,
)
from resilientmq.publisher import MAX_MESSAGES_PER_BATCH

__all__ = [
    # Version
    "__version__",
    # Manager
    "ConnectionManager",
    "ConnectionManagerConfig",
    "ConnectionManagerStats",
    "ConnectionState",
    "connect",
    # Channels
    "ChannelWrapper",
    "ChannelWrapperStats",
    "Consumer",
    "ConsumerOptions",
    "MAX_MESSAGES_PER_BATCH",
    # Endpoints
    "BrokerEndpoint",
    "EndpointDescriptor",
    "EndpointList",
    # Events
    "EventEmitter",
    # Protocols
    "AMQPChannel",
    "AMQPConnection",
    "Connector",
    "ExchangeDeclareResult",
    "QueueDeclareResult",
    "SetupFunc",
    # Exceptions
    "ChannelClosedError",
    "ConnectionManagerClosedError",
    "NoEndpointsError",
    "NotConnectedError",
    "ResilientMQError",
    "SerializationError",
    "is_access_refused_error",
    "is_channel_closed_error",
    "is_not_found_error",
]
