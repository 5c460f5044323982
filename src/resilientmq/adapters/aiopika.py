"""
aio-pika implementation of the connection and channel protocols.

aio-pika publishes with ``await exchange.publish(...)`` and has no notion of
a synchronous "room remaining" answer. AioPikaChannel bridges the gap with an
outbox: ``publish()`` appends to the outbox and returns immediately, a single
sender task drains it in order (awaiting publisher confirms), and the channel
reports no room once the outbox reaches its high water mark. Drain listeners
fire when the sender brings it back down to the low water mark.

aio-pika does not surface ``connection.blocked`` notifications or
broker-initiated consumer cancellation; the corresponding listeners are
accepted but never invoked by this adapter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Callable, Mapping
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from resilientmq.endpoints import BrokerEndpoint
from resilientmq.exceptions import ChannelClosedError
from resilientmq.protocols import (
    CloseListener,
    ExchangeDeclareResult,
    MessageCallback,
    QueueDeclareResult,
)

logger = logging.getLogger(__name__)

DEFAULT_HIGH_WATER_MARK = 1024
DEFAULT_LOW_WATER_MARK = 256

MESSAGE_PROPERTIES = frozenset(
    {
        "app_id",
        "content_encoding",
        "content_type",
        "correlation_id",
        "delivery_mode",
        "expiration",
        "headers",
        "message_id",
        "priority",
        "reply_to",
        "timestamp",
        "type",
        "user_id",
    }
)
"""Publish options copied onto aio_pika.Message."""

PUBLISH_FLAGS = frozenset({"mandatory", "persistent"})


def build_message(body: bytes, options: Mapping[str, Any] | None = None) -> tuple[Message, bool]:
    """
    Build an aio-pika message from raw publish options.

    Args:
        body: Message body
        options: AMQP basic properties plus the ``persistent`` and
            ``mandatory`` flags

    Returns:
        Tuple of (message, mandatory flag)

    Raises:
        ValueError: If options contain unknown keys
    """
    options = dict(options or {})
    unknown = set(options) - MESSAGE_PROPERTIES - PUBLISH_FLAGS
    if unknown:
        raise ValueError(f"Unknown publish options: {', '.join(sorted(unknown))}")

    mandatory = bool(options.pop("mandatory", False))
    persistent = options.pop("persistent", None)
    if persistent is not None and "delivery_mode" not in options:
        options["delivery_mode"] = (
            DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT
        )
    return Message(body=body, **options), mandatory


class AioPikaChannel:
    """AMQPChannel backed by an aio-pika channel."""

    def __init__(
        self,
        channel: AbstractChannel,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        low_water_mark: int = DEFAULT_LOW_WATER_MARK,
    ) -> None:
        if not 0 <= low_water_mark < high_water_mark:
            raise ValueError(
                f"low_water_mark ({low_water_mark}) must be >= 0 and below "
                f"high_water_mark ({high_water_mark})"
            )
        self._channel = channel
        self._high_water_mark = high_water_mark
        self._low_water_mark = low_water_mark

        self._outbox: deque[tuple[str, str, Message, bool]] = deque()
        self._sender: asyncio.Task[None] | None = None
        self._needs_drain = False
        self._drain_listeners: list[Callable[[], None]] = []

        self._exchanges: dict[str, AbstractExchange] = {}
        self._last_delivery: AbstractIncomingMessage | None = None
        self._consumer_queues: dict[str, AbstractQueue] = {}
        self._closing = False
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def is_closed(self) -> bool:
        return self._channel.is_closed

    @property
    def outbox_size(self) -> int:
        return len(self._outbox)

    def add_close_listener(self, listener: CloseListener) -> None:
        def on_close(sender: Any, exc: BaseException | None = None) -> None:
            listener(None if self._closing else exc)

        self._channel.close_callbacks.add(on_close)

    def add_drain_listener(self, listener: Callable[[], None]) -> None:
        self._drain_listeners.append(listener)

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        options: Mapping[str, Any] | None = None,
    ) -> bool:
        if self.is_closed:
            raise ChannelClosedError()
        message, mandatory = build_message(body, options)
        self._outbox.append((exchange, routing_key, message, mandatory))
        if self._sender is None or self._sender.done():
            self._sender = asyncio.get_running_loop().create_task(self._send_outbox())

        if len(self._outbox) >= self._high_water_mark:
            self._needs_drain = True
            return False
        return True

    async def _send_outbox(self) -> None:
        """Send outbox messages one by one in insertion order."""
        while self._outbox and not self.is_closed:
            exchange_name, routing_key, message, mandatory = self._outbox[0]
            try:
                exchange = await self._get_exchange(exchange_name)
                await exchange.publish(message, routing_key=routing_key, mandatory=mandatory)
            except Exception as e:
                logger.warning(
                    f"Failed to publish message: {e}",
                    extra={
                        "exchange": exchange_name,
                        "routing_key": routing_key,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
            self._outbox.popleft()
            if self._needs_drain and len(self._outbox) <= self._low_water_mark:
                self._needs_drain = False
                for listener in list(self._drain_listeners):
                    listener()

        if self._outbox:
            logger.warning(
                "Channel closed with unsent messages",
                extra={"unsent": len(self._outbox)},
            )
            self._outbox.clear()

    async def _get_exchange(self, name: str) -> AbstractExchange:
        if not name:
            return self._channel.default_exchange
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = await self._channel.get_exchange(name, ensure=False)
            self._exchanges[name] = exchange
        return exchange

    # =========================================================================
    # Consuming
    # =========================================================================

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
        amqp_queue = await self._channel.get_queue(queue, ensure=False)

        async def deliver(message: AbstractIncomingMessage) -> None:
            if not no_ack:
                self._last_delivery = message
            result = on_message(message)
            if inspect.isawaitable(result):
                await result

        broker_tag = await amqp_queue.consume(
            deliver,
            no_ack=no_ack,
            exclusive=exclusive,
            arguments=dict(arguments) if arguments else None,
            consumer_tag=consumer_tag,
        )
        self._consumer_queues[broker_tag] = amqp_queue
        return broker_tag

    async def cancel(self, consumer_tag: str) -> None:
        amqp_queue = self._consumer_queues.pop(consumer_tag, None)
        if amqp_queue is None:
            return
        await amqp_queue.cancel(consumer_tag)

    async def set_prefetch(self, count: int, global_: bool = False) -> None:
        await self._channel.set_qos(prefetch_count=count, global_=global_)

    def ack(self, message: Any, multiple: bool = False) -> None:
        self._spawn(message.ack(multiple=multiple))

    def ack_all(self) -> None:
        if self._last_delivery is not None:
            self._spawn(self._last_delivery.ack(multiple=True))
            self._last_delivery = None

    def nack(self, message: Any, multiple: bool = False, requeue: bool = True) -> None:
        self._spawn(message.nack(multiple=multiple, requeue=requeue))

    def nack_all(self, requeue: bool = True) -> None:
        if self._last_delivery is not None:
            self._spawn(self._last_delivery.nack(multiple=True, requeue=requeue))
            self._last_delivery = None

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                f"Acknowledgement failed: {exc}",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )

    # =========================================================================
    # Topology
    # =========================================================================

    async def declare_queue(self, queue: str, **options: Any) -> QueueDeclareResult:
        declared = await self._channel.declare_queue(name=queue or None, **options)
        return _queue_result(declared)

    async def check_queue(self, queue: str) -> QueueDeclareResult:
        declared = await self._channel.declare_queue(name=queue, passive=True)
        return _queue_result(declared)

    async def delete_queue(
        self,
        queue: str,
        if_unused: bool = False,
        if_empty: bool = False,
    ) -> int:
        result = await self._channel.queue_delete(queue, if_unused=if_unused, if_empty=if_empty)
        return getattr(result, "message_count", 0) or 0

    async def purge_queue(self, queue: str) -> int:
        amqp_queue = await self._channel.get_queue(queue, ensure=False)
        result = await amqp_queue.purge()
        return getattr(result, "message_count", 0) or 0

    async def bind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        amqp_queue = await self._channel.get_queue(queue, ensure=False)
        await amqp_queue.bind(exchange, routing_key, arguments=dict(arguments or {}))

    async def unbind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        amqp_queue = await self._channel.get_queue(queue, ensure=False)
        await amqp_queue.unbind(exchange, routing_key, arguments=dict(arguments or {}))

    async def declare_exchange(
        self,
        exchange: str,
        type: str = "direct",
        **options: Any,
    ) -> ExchangeDeclareResult:
        declared = await self._channel.declare_exchange(
            name=exchange,
            type=ExchangeType(type),
            **options,
        )
        self._exchanges[exchange] = declared
        return ExchangeDeclareResult(exchange=declared.name)

    async def check_exchange(self, exchange: str) -> None:
        await self._channel.get_exchange(exchange, ensure=True)

    async def delete_exchange(self, exchange: str, if_unused: bool = False) -> None:
        self._exchanges.pop(exchange, None)
        await self._channel.exchange_delete(exchange, if_unused=if_unused)

    async def bind_exchange(
        self,
        destination: str,
        source: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        target = await self._get_exchange(destination)
        await target.bind(source, routing_key, arguments=dict(arguments or {}))

    async def unbind_exchange(
        self,
        destination: str,
        source: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        target = await self._get_exchange(destination)
        await target.unbind(source, routing_key, arguments=dict(arguments or {}))

    async def get(self, queue: str, no_ack: bool = False) -> AbstractIncomingMessage | None:
        amqp_queue = await self._channel.get_queue(queue, ensure=False)
        return await amqp_queue.get(no_ack=no_ack, fail=False)

    async def close(self) -> None:
        self._closing = True
        await self._channel.close()


def _queue_result(declared: Any) -> QueueDeclareResult:
    result = declared.declaration_result
    return QueueDeclareResult(
        queue=declared.name,
        message_count=result.message_count or 0,
        consumer_count=result.consumer_count or 0,
    )


class AioPikaConnection:
    """AMQPConnection backed by a plain (non-robust) aio-pika connection."""

    def __init__(self, connection: AbstractConnection) -> None:
        self._connection = connection
        self._closing = False
        self._blocked_listeners: list[Callable[[str], None]] = []
        self._unblocked_listeners: list[Callable[[], None]] = []

    @property
    def is_closed(self) -> bool:
        return self._connection.is_closed

    def add_close_listener(self, listener: CloseListener) -> None:
        def on_close(sender: Any, exc: BaseException | None = None) -> None:
            listener(None if self._closing else exc)

        self._connection.close_callbacks.add(on_close)

    def add_blocked_listener(self, listener: Callable[[str], None]) -> None:
        self._blocked_listeners.append(listener)

    def add_unblocked_listener(self, listener: Callable[[], None]) -> None:
        self._unblocked_listeners.append(listener)

    async def channel(self) -> AioPikaChannel:
        channel = await self._connection.channel()
        return AioPikaChannel(channel)

    async def close(self) -> None:
        self._closing = True
        await self._connection.close()


async def connect_aio_pika(endpoint: BrokerEndpoint, heartbeat: float) -> AioPikaConnection:
    """
    Open a connection to one endpoint.

    Uses ``aio_pika.connect`` rather than ``connect_robust``: reconnection
    and failover are handled by the connection manager.

    Args:
        endpoint: Broker endpoint; its connection_options are passed to
            aio_pika.connect as keyword arguments
        heartbeat: Heartbeat interval in seconds

    Returns:
        The wrapped connection
    """
    options = dict(endpoint.connection_options)
    options.setdefault("heartbeat", max(1, round(heartbeat)))
    connection = await aio_pika.connect(endpoint.url, **options)
    return AioPikaConnection(connection)


__all__ = [
    "AioPikaChannel",
    "AioPikaConnection",
    "DEFAULT_HIGH_WATER_MARK",
    "DEFAULT_LOW_WATER_MARK",
    "build_message",
    "connect_aio_pika",
]
