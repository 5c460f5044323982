"""
Channel wrapper: a publish/consume surface that outlives its channels.

A ChannelWrapper follows its ConnectionManager's connect/disconnect events.
On every new connection it opens a fresh underlying channel, runs the setup
pipeline, re-subscribes every registered consumer and only then resumes
draining messages that were published while no channel was usable.

Ordering guarantees:
- Messages reach the broker in publish call order, across reconnects.
- Setup actions run before consumer re-subscription, which runs before the
  publish worker resumes.

Example:
    >>> async def setup(channel):
    ...     await channel.declare_exchange("orders", "topic", durable=True)
    ...     await channel.declare_queue("billing", durable=True)
    ...     await channel.bind_queue("billing", "orders", "order.*")
    >>> wrapper = manager.create_channel(name="billing", setup=setup)
    >>> await wrapper.consume("billing", handle_order, prefetch=10)
    >>> await wrapper.publish("orders", "order.created", b"...")
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from resilientmq.consumers import (
    Consumer,
    ConsumerOptions,
    ConsumerRegistry,
    generate_consumer_tag,
)
from resilientmq.events import EventEmitter, Unsubscribe
from resilientmq.exceptions import (
    ChannelClosedError,
    NotConnectedError,
    SerializationError,
    is_channel_closed_error,
    is_not_found_error,
)
from resilientmq.observability import (
    ATTR_CHANNEL_NAME,
    ATTR_CONSUMER_COUNT,
    ATTR_MESSAGING_SYSTEM,
    ATTR_QUEUE_LENGTH,
    ATTR_SETUP_COUNT,
    MESSAGING_SYSTEM_RABBITMQ,
    Tracer,
    create_tracer,
)
from resilientmq.pipeline import SetupPipeline
from resilientmq.protocols import (
    AMQPChannel,
    AMQPConnection,
    ExchangeDeclareResult,
    QueueDeclareResult,
    SetupFunc,
)
from resilientmq.publisher import MAX_MESSAGES_PER_BATCH, PendingMessage, PublishQueue
from resilientmq.serialization import JSON_CONTENT_TYPE, encode_payload

if TYPE_CHECKING:
    from resilientmq.manager import ConnectionManager

logger = logging.getLogger(__name__)


@dataclass
class ChannelWrapperStats:
    """
    Statistics for channel wrapper monitoring.

    Attributes:
        messages_published: Messages handed to an underlying channel
        messages_queued: Messages that had to wait in the outbound queue
        messages_rejected: Queued messages rejected on close
        setup_failures: Setup actions that failed with a reportable error
        consumers_resubscribed: Consumer subscriptions made on new channels
            or after a broker cancellation
        channels_opened: Underlying channels opened
    """

    messages_published: int = 0
    messages_queued: int = 0
    messages_rejected: int = 0
    setup_failures: int = 0
    consumers_resubscribed: int = 0
    channels_opened: int = 0


class ChannelWrapper(EventEmitter):
    """
    Caller-facing channel that survives reconnects.

    Events:
    - ``connect()``: a new underlying channel is set up and usable
    - ``error(error, {"name": name})``: asynchronous failure (setup,
      background consumer re-subscription, channel creation)
    - ``close()``: the wrapper was closed
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        *,
        name: str | None = None,
        setup: SetupFunc | Iterable[SetupFunc] | None = None,
        json: bool = False,
        publish_batch_size: int = MAX_MESSAGES_PER_BATCH,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Create a wrapper bound to a connection manager.

        If the manager is already connected, opening the first channel
        starts right away in the background.

        Args:
            connection_manager: Manager whose connection hosts the channel
            name: Debug name, included in logs and error events
            setup: Setup action(s), run in order on every new channel
            json: Encode non-bytes payloads as JSON
            publish_batch_size: Maximum messages the publish worker sends
                per event loop turn
            tracer: Optional custom Tracer instance
            enable_tracing: Enable OpenTelemetry tracing if available
        """
        super().__init__()
        if publish_batch_size < 1:
            raise ValueError(f"publish_batch_size must be >= 1, got {publish_batch_size}")

        self.name = name
        self._connection_manager = connection_manager
        self._pipeline = SetupPipeline(setup)
        self._json = json
        self._batch_size = publish_batch_size

        self._messages = PublishQueue()
        self._consumers = ConsumerRegistry()

        # Live channel state
        self._channel: AMQPChannel | None = None
        self._setting_up: asyncio.Future[None] | None = None
        self._channel_has_room = True
        self._reopen_handle: asyncio.TimerHandle | None = None
        self._closed = False

        # Publish worker state
        self._working = False
        self._worker_generation = 0

        self._stats = ChannelWrapperStats()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        self._unsubscribers: list[Unsubscribe] = [
            connection_manager.on("connect", self._on_connect),
            connection_manager.on("disconnect", self._on_disconnect),
        ]

        connection = connection_manager.connection
        if connection is not None:
            self._spawn(self._on_connect(connection, connection_manager.url))

    def __repr__(self) -> str:
        return (
            f"<ChannelWrapper name={self.name!r} connected={self.is_connected} "
            f"queued={len(self._messages)} consumers={len(self._consumers)}>"
        )

    @property
    def is_connected(self) -> bool:
        """Check if a live, fully set-up channel is available."""
        return self._channel is not None and self._setting_up is None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def channel(self) -> AMQPChannel | None:
        """The live underlying channel, if any."""
        return self._channel

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    @property
    def stats(self) -> ChannelWrapperStats:
        """Get current statistics."""
        return self._stats

    def get_stats_dict(self) -> dict[str, Any]:
        """
        Get statistics as a dictionary suitable for JSON serialization.

        Returns:
            Counters plus the current queue length and consumer count
        """
        return {
            "name": self.name,
            "messages_published": self._stats.messages_published,
            "messages_queued": self._stats.messages_queued,
            "messages_rejected": self._stats.messages_rejected,
            "setup_failures": self._stats.setup_failures,
            "consumers_resubscribed": self._stats.consumers_resubscribed,
            "channels_opened": self._stats.channels_opened,
            "queue_length": len(self._messages),
            "consumer_count": len(self._consumers),
            "connected": self.is_connected,
        }

    def queue_length(self) -> int:
        """Number of published messages not yet handed to a channel."""
        return len(self._messages)

    async def wait_for_connect(self) -> None:
        """
        Wait until a channel is live and set up.

        Raises:
            ChannelClosedError: If the wrapper is closed
        """
        if self._closed:
            raise ChannelClosedError(self.name)
        if self.is_connected:
            return
        await self.wait_for("connect")

    async def __aenter__(self) -> ChannelWrapper:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    # =========================================================================
    # Channel lifecycle
    # =========================================================================

    async def _on_connect(self, connection: AMQPConnection, url: str | None = None) -> None:
        """Open and set up a channel on a new connection."""
        if self._closed:
            return

        try:
            channel = await connection.channel()
        except Exception as e:
            logger.warning(
                f"Failed to open channel: {e}",
                extra={"channel": self.name, "error": str(e), "error_type": type(e).__name__},
            )
            self.emit("error", e, {"name": self.name})
            return

        if self._closed or connection is not self._connection_manager.connection:
            # Closed, or the connection was replaced while opening
            await self._discard_channel(channel)
            return

        previous = self._channel
        if previous is not None and previous is not channel:
            self._channel = None
            await self._discard_channel(previous)

        self._channel = channel
        self._channel_has_room = True
        self._stats.channels_opened += 1
        channel.add_close_listener(functools.partial(self._on_channel_close, channel))
        channel.add_drain_listener(functools.partial(self._on_channel_drain, channel))

        setting_up = asyncio.ensure_future(self._setup_channel(channel))
        self._setting_up = setting_up
        try:
            await setting_up
        finally:
            if self._setting_up is setting_up:
                self._setting_up = None

        if self._channel is not channel:
            return

        logger.info(
            "Channel connected",
            extra={
                "channel": self.name,
                "url": url,
                "consumers": len(self._consumers),
                "queued": len(self._messages),
            },
        )
        self._start_worker()
        self.emit("connect")

    async def _setup_channel(self, channel: AMQPChannel) -> None:
        """Run the setup pipeline, then re-subscribe every consumer."""
        with self._tracer.span(
            "resilientmq.channel.setup",
            {
                ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                ATTR_CHANNEL_NAME: self.name or "",
                ATTR_SETUP_COUNT: len(self._pipeline),
                ATTR_CONSUMER_COUNT: len(self._consumers),
                ATTR_QUEUE_LENGTH: len(self._messages),
            },
        ):
            result = await self._pipeline.run(channel, self._on_setup_error)
            self._stats.setup_failures += len(result.failed)

            for consumer in self._consumers:
                if self._channel is not channel:
                    return
                await self._resubscribe(consumer)

    def _on_setup_error(self, error: Exception) -> None:
        self.emit("error", error, {"name": self.name})

    async def _discard_channel(self, channel: AMQPChannel) -> None:
        """Close a channel that is no longer (or never became) current."""
        try:
            if not channel.is_closed:
                await channel.close()
        except Exception as e:
            if not is_channel_closed_error(e):
                logger.warning(
                    f"Error closing stale channel: {e}",
                    extra={"channel": self.name, "error": str(e)},
                )

    def _on_disconnect(self, error: BaseException | None = None) -> None:
        """Forget the channel; the manager's reconnect loop takes over."""
        self._clear_channel()
        self._cancel_reopen()
        logger.debug("Channel lost with connection", extra={"channel": self.name})

    def _on_channel_close(self, channel: AMQPChannel, error: BaseException | None) -> None:
        if channel is not self._channel:
            return
        self._clear_channel()

        if error is None or self._closed:
            logger.debug("Underlying channel closed", extra={"channel": self.name})
            return

        logger.warning(
            f"Underlying channel closed: {error}",
            extra={
                "channel": self.name,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        self._schedule_reopen()

    def _clear_channel(self) -> None:
        self._channel = None
        self._setting_up = None
        self._working = False
        self._consumers.clear_broker_tags()

    def _schedule_reopen(self) -> None:
        """Open a new channel on the still-live connection after the reconnect delay."""
        connection = self._connection_manager.connection
        if connection is None or self._reopen_handle is not None:
            return
        self._reopen_handle = asyncio.get_running_loop().call_later(
            self._connection_manager.reconnect_delay,
            self._reopen,
            connection,
        )

    def _reopen(self, connection: AMQPConnection) -> None:
        self._reopen_handle = None
        if (
            self._closed
            or self._channel is not None
            or connection is not self._connection_manager.connection
        ):
            return
        self._spawn(self._on_connect(connection, self._connection_manager.url))

    def _cancel_reopen(self) -> None:
        if self._reopen_handle is not None:
            self._reopen_handle.cancel()
            self._reopen_handle = None

    async def close(self) -> None:
        """
        Close the wrapper.

        Rejects every still-queued message with ChannelClosedError, forgets
        all consumers, detaches from the connection manager and closes the
        underlying channel. Idempotent.
        """
        if self._closed:
            return
        self._closed = True
        self._working = False
        self._cancel_reopen()

        rejected = self._messages.reject_all(lambda: ChannelClosedError(self.name))
        self._stats.messages_rejected += rejected

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        self._consumers.drain()
        channel = self._channel
        self._channel = None
        self._setting_up = None

        try:
            if channel is not None and not channel.is_closed:
                await channel.close()
        except Exception as e:
            if not is_channel_closed_error(e):
                raise
        finally:
            logger.info(
                "Channel closed",
                extra={"channel": self.name, "rejected_messages": rejected},
            )
            self.emit("close")

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(
        self,
        exchange: str,
        routing_key: str,
        content: Any,
        options: Mapping[str, Any] | None = None,
    ) -> asyncio.Future[bool]:
        """
        Publish a message, now if possible or once a channel is available.

        Args:
            exchange: Exchange name ("" for the default exchange)
            routing_key: Routing key
            content: Message body (bytes, or any JSON-serializable object
                when the wrapper was created with json=True)
            options: Protocol publish options (content_type, headers,
                persistent, ...)

        Returns:
            Future resolving with the channel's "room remaining" flag once
            the message was handed to a channel. It rejects with
            ChannelClosedError if the wrapper closes first.
        """
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(ChannelClosedError(self.name))
            return future

        try:
            body = encode_payload(content, json=self._json)
        except SerializationError as e:
            future.set_exception(e)
            return future
        options = self._publish_options(content, options)

        channel = self._channel
        if channel is not None and self._can_send() and not self._messages:
            try:
                has_room = channel.publish(exchange, routing_key, body, options)
            except Exception as e:
                if not is_channel_closed_error(e):
                    future.set_exception(e)
                    return future
            else:
                self._channel_has_room = has_room
                self._stats.messages_published += 1
                future.set_result(has_room)
                return future

        self._messages.append(PendingMessage(exchange, routing_key, body, options, future))
        self._stats.messages_queued += 1
        self._start_worker()
        return future

    def send_to_queue(
        self,
        queue: str,
        content: Any,
        options: Mapping[str, Any] | None = None,
    ) -> asyncio.Future[bool]:
        """Publish directly to a queue through the default exchange."""
        return self.publish("", queue, content, options)

    def _publish_options(
        self,
        content: Any,
        options: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        merged = dict(options or {})
        if self._json and not isinstance(content, bytes | bytearray | memoryview):
            merged.setdefault("content_type", JSON_CONTENT_TYPE)
        return merged

    def _can_send(self) -> bool:
        return (
            not self._closed
            and self._channel is not None
            and self._setting_up is None
            and self._channel_has_room
        )

    def _on_channel_drain(self, channel: AMQPChannel) -> None:
        if channel is not self._channel:
            return
        self._channel_has_room = True
        self._start_worker()

    def _start_worker(self) -> None:
        if self._working or not self._messages or not self._can_send():
            return
        self._working = True
        self._worker_generation += 1
        self._publish_queued_messages(self._worker_generation)

    def _publish_queued_messages(self, generation: int) -> None:
        """
        Send up to one batch of queued messages, then yield to the loop.

        Each invocation carries the generation it was started with; once a
        newer worker has started, older invocations return untouched.
        """
        if generation != self._worker_generation or not self._working:
            return

        channel = self._channel
        if channel is None or not self._can_send():
            self._working = False
            return

        sends_left = self._batch_size
        while self._messages and sends_left > 0 and self._channel_has_room:
            message = self._messages.popleft()
            if message.settled:
                # Caller cancelled the publish
                continue
            sends_left -= 1
            try:
                has_room = channel.publish(
                    message.exchange,
                    message.routing_key,
                    message.body,
                    message.options,
                )
            except Exception as e:
                if is_channel_closed_error(e):
                    # Keep it at the head for the next channel
                    self._messages.appendleft(message)
                    self._working = False
                    return
                message.reject(e)
                continue
            self._channel_has_room = has_room
            self._stats.messages_published += 1
            message.resolve(has_room)

        if self._messages and self._channel_has_room:
            asyncio.get_running_loop().call_soon(self._publish_queued_messages, generation)
            return
        self._working = False

    # =========================================================================
    # Consuming
    # =========================================================================

    async def consume(
        self,
        queue: str,
        on_message: Callable[[Any], Any],
        *,
        consumer_tag: str | None = None,
        prefetch: int | None = None,
        no_ack: bool = False,
        exclusive: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> str:
        """
        Register a consumer and subscribe it if a channel is live.

        The consumer is re-subscribed automatically on every new channel
        until it is cancelled or the wrapper closes.

        Args:
            queue: Queue to consume from
            on_message: Handler called with each delivery (may be async)
            consumer_tag: Local tag; generated when omitted
            prefetch: Prefetch count set on the channel before subscribing
            no_ack: Deliveries need no acknowledgement
            exclusive: Request exclusive access to the queue
            arguments: Extra consume arguments

        Returns:
            The consumer's local tag, used with cancel()
        """
        if self._closed:
            raise ChannelClosedError(self.name)

        options = ConsumerOptions(
            consumer_tag=consumer_tag or generate_consumer_tag(),
            prefetch=prefetch,
            no_ack=no_ack,
            exclusive=exclusive,
            arguments=arguments,
        )
        consumer = Consumer(queue=queue, on_message=on_message, options=options)

        while self._setting_up is not None:
            await asyncio.wait({self._setting_up})
        if self._closed:
            raise ChannelClosedError(self.name)

        self._consumers.add(consumer)
        try:
            await self._subscribe(consumer)
        except Exception as e:
            if not is_channel_closed_error(e):
                # Channel loss keeps the consumer for the next channel
                self._consumers.remove(consumer.consumer_tag)
                raise
        return consumer.consumer_tag

    async def _subscribe(self, consumer: Consumer) -> None:
        """Subscribe a consumer on the live channel, if there is one."""
        channel = self._channel
        if channel is None or consumer.is_subscribed:
            return

        options = consumer.options
        if options.prefetch is not None:
            await channel.set_prefetch(options.prefetch)
        broker_tag = await channel.consume(
            consumer.queue,
            functools.partial(self._on_delivery, consumer),
            consumer_tag=options.consumer_tag,
            no_ack=options.no_ack,
            exclusive=options.exclusive,
            arguments=options.arguments,
        )

        if self._channel is not channel:
            return
        if consumer not in self._consumers:
            # Cancelled while subscribing
            await channel.cancel(broker_tag)
            return
        consumer.broker_tag = broker_tag
        logger.debug(
            "Consumer subscribed",
            extra={"channel": self.name, "queue": consumer.queue, "consumer_tag": broker_tag},
        )

    async def _resubscribe(self, consumer: Consumer) -> None:
        if consumer not in self._consumers:
            return
        try:
            await self._subscribe(consumer)
        except Exception as e:
            if is_not_found_error(e) or is_channel_closed_error(e):
                logger.debug(
                    "Consumer re-subscription deferred to the next setup run",
                    extra={
                        "channel": self.name,
                        "queue": consumer.queue,
                        "error": str(e),
                    },
                )
                return
            logger.warning(
                f"Failed to re-subscribe consumer: {e}",
                extra={
                    "channel": self.name,
                    "queue": consumer.queue,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            self.emit("error", e, {"name": self.name})
            return
        if consumer.is_subscribed:
            self._stats.consumers_resubscribed += 1

    def _on_delivery(self, consumer: Consumer, message: Any) -> Any:
        if message is None:
            # Broker cancelled the subscription (queue deleted, node failover)
            consumer.broker_tag = None
            logger.info(
                "Consumer cancelled by broker, re-subscribing",
                extra={"channel": self.name, "queue": consumer.queue},
            )
            self._spawn(self._resubscribe(consumer))
            return None
        return consumer.on_message(message)

    async def cancel(self, consumer_tag: str) -> None:
        """
        Cancel one consumer by its local tag.

        Unknown tags are ignored.
        """
        consumer = self._consumers.remove(consumer_tag)
        if consumer is None:
            return
        await self._cancel_on_broker(consumer)

    async def cancel_all(self) -> None:
        """Cancel every registered consumer."""
        consumers = self._consumers.drain()
        if consumers:
            await asyncio.gather(*(self._cancel_on_broker(c) for c in consumers))

    async def _cancel_on_broker(self, consumer: Consumer) -> None:
        broker_tag, consumer.broker_tag = consumer.broker_tag, None
        channel = self._channel
        if channel is None or broker_tag is None:
            return
        try:
            await channel.cancel(broker_tag)
        except Exception as e:
            if not is_channel_closed_error(e):
                raise

    def ack(self, message: Any, multiple: bool = False) -> None:
        """Acknowledge a delivery; no-op without a live channel."""
        if self._channel is not None:
            self._channel.ack(message, multiple)

    def ack_all(self) -> None:
        if self._channel is not None:
            self._channel.ack_all()

    def nack(self, message: Any, multiple: bool = False, requeue: bool = True) -> None:
        """Reject a delivery; no-op without a live channel."""
        if self._channel is not None:
            self._channel.nack(message, multiple, requeue)

    def nack_all(self, requeue: bool = True) -> None:
        if self._channel is not None:
            self._channel.nack_all(requeue)

    # =========================================================================
    # Pass-through operations
    # =========================================================================

    def _require_channel(self, operation: str) -> AMQPChannel:
        if self._closed:
            raise ChannelClosedError(self.name)
        if self._channel is None:
            raise NotConnectedError(operation)
        return self._channel

    async def declare_queue(self, queue: str, **options: Any) -> QueueDeclareResult:
        """
        Declare a queue on the live channel.

        Without a channel, returns an empty result for the given name; put
        declarations in a setup action to have them applied on connect.
        """
        if self._channel is None and not self._closed:
            return QueueDeclareResult(queue=queue)
        return await self._require_channel("declare_queue").declare_queue(queue, **options)

    async def check_queue(self, queue: str) -> QueueDeclareResult:
        return await self._require_channel("check_queue").check_queue(queue)

    async def delete_queue(
        self,
        queue: str,
        if_unused: bool = False,
        if_empty: bool = False,
    ) -> int:
        return await self._require_channel("delete_queue").delete_queue(
            queue, if_unused=if_unused, if_empty=if_empty
        )

    async def purge_queue(self, queue: str) -> int:
        return await self._require_channel("purge_queue").purge_queue(queue)

    async def bind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        """Bind a queue; no-op without a channel."""
        if self._channel is None and not self._closed:
            return
        await self._require_channel("bind_queue").bind_queue(queue, exchange, routing_key, arguments)

    async def unbind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        """Unbind a queue; no-op without a channel."""
        if self._channel is None and not self._closed:
            return
        await self._require_channel("unbind_queue").unbind_queue(
            queue, exchange, routing_key, arguments
        )

    async def declare_exchange(
        self,
        exchange: str,
        type: str = "direct",
        **options: Any,
    ) -> ExchangeDeclareResult:
        """Declare an exchange; returns an empty result without a channel."""
        if self._channel is None and not self._closed:
            return ExchangeDeclareResult(exchange=exchange)
        return await self._require_channel("declare_exchange").declare_exchange(
            exchange, type, **options
        )

    async def check_exchange(self, exchange: str) -> None:
        await self._require_channel("check_exchange").check_exchange(exchange)

    async def delete_exchange(self, exchange: str, if_unused: bool = False) -> None:
        await self._require_channel("delete_exchange").delete_exchange(
            exchange, if_unused=if_unused
        )

    async def bind_exchange(
        self,
        destination: str,
        source: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        await self._require_channel("bind_exchange").bind_exchange(
            destination, source, routing_key, arguments
        )

    async def unbind_exchange(
        self,
        destination: str,
        source: str,
        routing_key: str = "",
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        await self._require_channel("unbind_exchange").unbind_exchange(
            destination, source, routing_key, arguments
        )

    async def get(self, queue: str, no_ack: bool = False) -> Any | None:
        """Fetch a single message, or None if the queue is empty."""
        return await self._require_channel("get").get(queue, no_ack=no_ack)


__all__ = [
    "ChannelWrapper",
    "ChannelWrapperStats",
]
