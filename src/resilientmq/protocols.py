"""
Protocol definitions for the AMQP client this package drives.

The connection manager and channel wrappers never talk to a wire-level
client directly. They depend on the protocols below, which the aio-pika
adapter (``resilientmq.adapters.aiopika``) implements and which tests
implement with an in-memory fake broker.

Protocols:
- AMQPConnection: A live broker connection that can open channels
- AMQPChannel: A protocol channel used to publish, consume and declare
- Connector: Callable that opens an AMQPConnection to one endpoint

Two notification conventions matter to the resilience layer:
- ``AMQPChannel.publish`` hands a message off synchronously and returns
  whether the channel has room for more ("flow control"). After reporting
  False the channel fires its drain listeners once room is available again.
- A consumer's ``on_message`` callback receives ``None`` when the broker
  cancels the subscription.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from resilientmq.endpoints import BrokerEndpoint


CloseListener = Callable[[BaseException | None], None]
"""Called with the closing error, or None for a clean close."""

MessageCallback = Callable[[Any], Any]
"""Consumer callback; receives an incoming message or None on broker cancel."""


@dataclass(frozen=True)
class QueueDeclareResult:
    """
    Broker answer to a queue declaration.

    Attributes:
        queue: Name of the queue (server-generated if declared anonymously)
        message_count: Messages ready in the queue
        consumer_count: Active consumers on the queue
    """

    queue: str
    message_count: int = 0
    consumer_count: int = 0


@dataclass(frozen=True)
class ExchangeDeclareResult:
    """Broker answer to an exchange declaration."""

    exchange: str


@runtime_checkable
class AMQPChannel(Protocol):
    """
    Protocol for a single AMQP channel.

    Only ``publish`` and the acknowledgement calls are synchronous; every
    other operation is a broker round trip.
    """

    @property
    def is_closed(self) -> bool: ...

    def add_close_listener(self, listener: CloseListener) -> None: ...

    def add_drain_listener(self, listener: Callable[[], None]) -> None: ...

    def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        options: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Hand a message to the channel.

        Returns:
            True if the channel can take more messages right away
        """
        ...

    async def consume(
        self,
        queue: str,
        on_message: MessageCallback,
        *,
        consumer_tag: str | None = None,
        no_ack: bool = False,
        exclusive: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> str:
        """
        Subscribe to a queue.

        Returns:
            The consumer tag confirmed by the broker
        """
        ...

    async def cancel(self, consumer_tag: str) -> None: ...

    async def set_prefetch(self, count: int, global_: bool = False) -> None: ...

    def ack(self, message: Any, multiple: bool = False) -> None: ...

    def ack_all(self) -> None: ...

    def nack(self, message: Any, multiple: bool = False, requeue: bool = True) -> None: ...

    def nack_all(self, requeue: bool = True) -> None: ...

    async def declare_queue(self, queue: str, **options: Any) -> QueueDeclareResult: ...

    async def check_queue(self, queue: str) -> QueueDeclareResult: ...

    async def delete_queue(
        self,
        queue: str,
        if_unused: bool = False,
        if_empty: bool = False,
    ) -> int: ...

    async def purge_queue(self, queue: str) -> int: ...

    async def bind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def unbind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def declare_exchange(
        self,
        exchange: str,
        type: str = "direct",
        **options: Any,
    ) -> ExchangeDeclareResult: ...

    async def check_exchange(self, exchange: str) -> None: ...

    async def delete_exchange(self, exchange: str, if_unused: bool = False) -> None: ...

    async def bind_exchange(
        self,
        destination: str,
        source: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def unbind_exchange(
        self,
        destination: str,
        source: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def get(self, queue: str, no_ack: bool = False) -> Any | None:
        """Fetch one message, or None if the queue is empty."""
        ...

    async def close(self) -> None: ...


@runtime_checkable
class AMQPConnection(Protocol):
    """Protocol for a live broker connection."""

    @property
    def is_closed(self) -> bool: ...

    def add_close_listener(self, listener: CloseListener) -> None: ...

    def add_blocked_listener(self, listener: Callable[[str], None]) -> None: ...

    def add_unblocked_listener(self, listener: Callable[[], None]) -> None: ...

    async def channel(self) -> AMQPChannel: ...

    async def close(self) -> None: ...


Connector = Callable[["BrokerEndpoint", float], Awaitable[AMQPConnection]]
"""Opens a connection to an endpoint with the given heartbeat (seconds)."""

SetupFunc = Callable[[AMQPChannel], Awaitable[None]]
"""Idempotent action run against every newly created channel."""


__all__ = [
    "AMQPChannel",
    "AMQPConnection",
    "CloseListener",
    "Connector",
    "ExchangeDeclareResult",
    "MessageCallback",
    "QueueDeclareResult",
    "SetupFunc",
]
