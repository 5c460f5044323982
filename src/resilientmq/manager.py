"""
Connection manager: one logical broker connection that survives failures.

The manager owns a single live connection at a time, chosen round-robin from
a list of interchangeable broker endpoints. When an attempt fails the cursor
advances to the next endpoint; once every endpoint has been tried the manager
waits a fixed delay and starts another round. When a live connection drops,
the manager announces the loss and immediately starts a new round from the
next endpoint.

State Machine:
    DISCONNECTED -> CONNECTING | CLOSED
    CONNECTING -> CONNECTED | DISCONNECTED (attempt failed) | CLOSED
    CONNECTED -> BLOCKED | DISCONNECTED (transport loss) | CLOSED
    BLOCKED -> CONNECTED (unblocked) | DISCONNECTED | CLOSED
    CLOSED -> (terminal)

Events:
- ``connect(connection, url)``: a connection was established
- ``connect_failed(error, url)``: one connection attempt failed
- ``disconnect(error)``: the live connection was lost (or closed)
- ``blocked(reason)`` / ``unblocked()``: broker flow-control advisories
- ``close()``: the manager was closed

Example:
    >>> manager = ConnectionManager(
    ...     ["amqp://rabbit-a:5672/", "amqp://rabbit-b:5672/"],
    ...     ConnectionManagerConfig(heartbeat_interval=5, reconnect_delay=2),
    ... )
    >>> await manager.connect()
    >>> channel = manager.create_channel(name="orders", setup=declare_orders)
    >>> await channel.publish("orders", "order.created", b"{}")
    >>> await manager.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from resilientmq.adapters.aiopika import connect_aio_pika
from resilientmq.channel import ChannelWrapper
from resilientmq.endpoints import BrokerEndpoint, EndpointDescriptor, EndpointList
from resilientmq.events import EventEmitter
from resilientmq.exceptions import (
    ConnectionManagerClosedError,
    NoEndpointsError,
    is_access_refused_error,
)
from resilientmq.observability import (
    ATTR_ENDPOINT_COUNT,
    ATTR_ENDPOINT_INDEX,
    ATTR_MESSAGING_SYSTEM,
    ATTR_SERVER_ADDRESS,
    MESSAGING_SYSTEM_RABBITMQ,
    Tracer,
    create_tracer,
)
from resilientmq.protocols import AMQPConnection, Connector, SetupFunc
from resilientmq.publisher import MAX_MESSAGES_PER_BATCH

logger = logging.getLogger(__name__)

FindServers = Callable[
    [], Iterable[EndpointDescriptor] | Awaitable[Iterable[EndpointDescriptor]]
]
"""Returns the endpoints to use for the next connect round (sync or async)."""


class ConnectionState(Enum):
    """States of the connection manager."""

    DISCONNECTED = "disconnected"
    """No live connection; a connect round may be pending."""

    CONNECTING = "connecting"
    """A connection attempt is in flight."""

    CONNECTED = "connected"
    """Holding exactly one live connection."""

    BLOCKED = "blocked"
    """Connected, but the broker asked publishers to hold off."""

    CLOSED = "closed"
    """Closed by the caller; no further reconnects."""


@dataclass
class ConnectionManagerConfig:
    """
    Configuration for a connection manager.

    Attributes:
        heartbeat_interval: AMQP heartbeat interval in seconds. Also the
            default delay between connect rounds.
        reconnect_delay: Fixed delay in seconds between connect rounds
            (no exponential backoff). Defaults to heartbeat_interval.
        connection_options: Raw keyword arguments passed to the protocol
            client for every endpoint. Per-endpoint options take precedence.
        connect_timeout: Timeout in seconds for a single connection attempt.
            None means the protocol client's own timeout applies.
        enable_tracing: Enable OpenTelemetry tracing if available.

    Example:
        >>> config = ConnectionManagerConfig(heartbeat_interval=10)
        >>> config.effective_reconnect_delay
        10
    """

    heartbeat_interval: float = 5.0
    reconnect_delay: float | None = None
    connection_options: dict[str, Any] = field(default_factory=dict)
    connect_timeout: float | None = None
    enable_tracing: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.heartbeat_interval <= 0:
            raise ValueError(
                f"heartbeat_interval must be positive, got {self.heartbeat_interval}. "
                "Use a value like 5.0 (default) seconds."
            )
        if self.reconnect_delay is not None and self.reconnect_delay < 0:
            raise ValueError(f"reconnect_delay must be >= 0, got {self.reconnect_delay}.")
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be positive, got {self.connect_timeout}.")

    @property
    def effective_reconnect_delay(self) -> float:
        """Delay between connect rounds, falling back to the heartbeat interval."""
        if self.reconnect_delay is None:
            return self.heartbeat_interval
        return self.reconnect_delay


@dataclass
class ConnectionManagerStats:
    """
    Statistics for connection manager monitoring.

    Attributes:
        connect_attempts: Total connection attempts
        connect_failures: Attempts that failed
        connections: Successful connections
        disconnections: Live connections lost or closed
        connected_at: When the current connection was established
        last_error_at: When the last attempt failed
    """

    connect_attempts: int = 0
    connect_failures: int = 0
    connections: int = 0
    disconnections: int = 0
    connected_at: datetime | None = None
    last_error_at: datetime | None = None


class ConnectionManager(EventEmitter):
    """
    Maintains one logical connection across several interchangeable brokers.

    Channel wrappers created with ``create_channel()`` follow the manager's
    connect/disconnect events to recreate their channels, and are closed
    together with the manager.
    """

    def __init__(
        self,
        endpoints: EndpointDescriptor | Iterable[EndpointDescriptor] = (),
        config: ConnectionManagerConfig | None = None,
        *,
        connector: Connector | None = None,
        find_servers: FindServers | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        """
        Initialize the connection manager without connecting.

        Args:
            endpoints: One endpoint descriptor or an ordered sequence of them
                (URL strings, mappings with ``url``/``connection_options``,
                or BrokerEndpoint instances).
            config: Manager configuration. Defaults to ConnectionManagerConfig().
            connector: Opens a connection to one endpoint. Defaults to the
                aio-pika connector.
            find_servers: Optional discovery callable consulted before every
                connect round; its result replaces the endpoint list.
            tracer: Optional custom Tracer instance.

        Raises:
            ValueError: If no endpoints are given and find_servers is None
        """
        super().__init__()
        if isinstance(endpoints, str | Mapping | BrokerEndpoint):
            endpoints = [endpoints]
        self._endpoints = EndpointList(endpoints)
        if not self._endpoints and find_servers is None:
            raise ValueError("At least one broker endpoint (or find_servers) is required")

        self._config = config or ConnectionManagerConfig()
        self._connector: Connector = connector or connect_aio_pika
        self._find_servers = find_servers

        # Connection state
        self._state = ConnectionState.DISCONNECTED
        self._connection: AMQPConnection | None = None
        self._endpoint: BrokerEndpoint | None = None
        self._closed = False

        # Background connect loop
        self._runner: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()

        self._channels: list[ChannelWrapper] = []
        self._stats = ConnectionManagerStats()

        self._tracer = tracer or create_tracer(__name__, self._config.enable_tracing)

    @property
    def config(self) -> ConnectionManagerConfig:
        """Get the configuration."""
        return self._config

    @property
    def state(self) -> ConnectionState:
        """Current state of the manager."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """
        Check if a live connection is held.

        True in CONNECTED and in its BLOCKED sub-state; blocking is a
        flow-control advisory and does not tear the connection down.
        """
        return self._connection is not None and self._state in (
            ConnectionState.CONNECTED,
            ConnectionState.BLOCKED,
        )

    @property
    def is_blocked(self) -> bool:
        """Check if the broker has blocked the live connection."""
        return self._state is ConnectionState.BLOCKED

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def connection(self) -> AMQPConnection | None:
        """The live connection, if any."""
        return self._connection

    @property
    def url(self) -> str | None:
        """URL of the endpoint behind the live connection, if any."""
        return self._endpoint.url if self._endpoint is not None else None

    @property
    def endpoints(self) -> EndpointList:
        return self._endpoints

    @property
    def reconnect_delay(self) -> float:
        return self._config.effective_reconnect_delay

    @property
    def channel_count(self) -> int:
        """Number of open channel wrappers created by this manager."""
        return len(self._channels)

    @property
    def stats(self) -> ConnectionManagerStats:
        """Get current statistics."""
        return self._stats

    def get_stats_dict(self) -> dict[str, Any]:
        """
        Get statistics as a dictionary suitable for JSON serialization.

        Returns:
            Counters, timestamps as ISO strings, and the current state
        """
        uptime_seconds: float | None = None
        if self._stats.connected_at is not None:
            uptime_seconds = (datetime.now(UTC) - self._stats.connected_at).total_seconds()

        return {
            "connect_attempts": self._stats.connect_attempts,
            "connect_failures": self._stats.connect_failures,
            "connections": self._stats.connections,
            "disconnections": self._stats.disconnections,
            "connected_at": (
                self._stats.connected_at.isoformat() if self._stats.connected_at else None
            ),
            "last_error_at": (
                self._stats.last_error_at.isoformat() if self._stats.last_error_at else None
            ),
            "state": self._state.value,
            "url": self._endpoint.display_url if self._endpoint else None,
            "channel_count": self.channel_count,
            "uptime_seconds": uptime_seconds,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Start connecting in the background without waiting.

        Must be called from a running event loop. Calling it while a connect
        loop is already sleeping between rounds wakes it up.

        Raises:
            ConnectionManagerClosedError: If the manager has been closed
        """
        if self._closed:
            raise ConnectionManagerClosedError()
        if self._connection is not None:
            return
        if self._runner is not None and not self._runner.done():
            self._wakeup.set()
            return
        self._runner = asyncio.get_running_loop().create_task(
            self._run(),
            name="resilientmq-connection-manager",
        )
        self._runner.add_done_callback(self._on_runner_done)

    async def connect(self, timeout: float | None = None) -> None:
        """
        Connect, waiting until a connection is established.

        Returns once a connection is established. Unreachable endpoints are
        failed over in round-robin order while this call waits. An attempt
        the broker refuses (authentication, ACCESS_REFUSED, protocol
        mismatch) raises its error here; the background loop keeps retrying
        regardless.

        Args:
            timeout: Maximum seconds to wait. None waits indefinitely.

        Raises:
            ConnectionManagerClosedError: If the manager is or gets closed
            TimeoutError: If no connection was made within the timeout
            Exception: The error of an attempt the broker refused
        """
        if self._closed:
            raise ConnectionManagerClosedError()
        if self._connection is not None:
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def on_connect(connection: AMQPConnection, url: str) -> None:
            if not waiter.done():
                waiter.set_result(None)

        def on_connect_failed(error: BaseException, url: str | None) -> None:
            if is_access_refused_error(error) and not waiter.done():
                waiter.set_exception(error)

        def on_close() -> None:
            if not waiter.done():
                waiter.set_exception(ConnectionManagerClosedError())

        unsubscribers = [
            self.on("connect", on_connect),
            self.on("connect_failed", on_connect_failed),
            self.on("close", on_close),
        ]
        try:
            self.start()
            await asyncio.wait_for(waiter, timeout)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()

    async def reconnect(self) -> None:
        """
        Drop the live connection so the manager fails over to the next endpoint.

        When not connected, wakes the connect loop instead of waiting out
        the reconnect delay.
        """
        if self._closed:
            raise ConnectionManagerClosedError()
        connection = self._connection
        if connection is None:
            self.start()
            return
        logger.info(
            "Forcing reconnect",
            extra={"url": self._endpoint.display_url if self._endpoint else None},
        )
        await connection.close()

    async def close(self) -> None:
        """
        Close the manager, every channel it created, and the live connection.

        Stops all further reconnect attempts. Idempotent.
        """
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()

        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner

        channels = list(self._channels)
        if channels:
            await asyncio.gather(*(channel.close() for channel in channels))

        connection, self._connection = self._connection, None
        endpoint, self._endpoint = self._endpoint, None
        self._state = ConnectionState.CLOSED
        try:
            if connection is not None and not connection.is_closed:
                await connection.close()
        finally:
            if connection is not None:
                self._stats.disconnections += 1
                self._stats.connected_at = None
                self.emit("disconnect", None)
            logger.info(
                "Connection manager closed",
                extra={"url": endpoint.display_url if endpoint else None},
            )
            self.emit("close")

    async def __aenter__(self) -> ConnectionManager:
        """Connect when entering the context."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Close the manager when leaving the context."""
        await self.close()

    def create_channel(
        self,
        name: str | None = None,
        setup: SetupFunc | Iterable[SetupFunc] | None = None,
        *,
        json: bool = False,
        publish_batch_size: int = MAX_MESSAGES_PER_BATCH,
    ) -> ChannelWrapper:
        """
        Create a channel wrapper bound to this manager.

        Args:
            name: Debug name for the channel
            setup: Setup action(s) run on every new underlying channel
            json: Encode non-bytes payloads as JSON
            publish_batch_size: Messages sent per loop turn when draining

        Returns:
            The ChannelWrapper; it opens a channel immediately if connected
        """
        if self._closed:
            raise ConnectionManagerClosedError()
        channel = ChannelWrapper(
            self,
            name=name,
            setup=setup,
            json=json,
            publish_batch_size=publish_batch_size,
            tracer=self._tracer,
        )
        self._channels.append(channel)
        channel.once("close", functools.partial(self._forget_channel, channel))
        return channel

    def _forget_channel(self, channel: ChannelWrapper) -> None:
        with contextlib.suppress(ValueError):
            self._channels.remove(channel)

    # =========================================================================
    # Connect loop
    # =========================================================================

    async def _run(self) -> None:
        """Run connect rounds until connected or closed."""
        while not self._closed and self._connection is None:
            if await self._connect_round():
                # A connect listener may already have lost the connection
                continue
            if self._closed:
                return
            delay = self._config.effective_reconnect_delay
            logger.info(
                f"All broker endpoints failed, retrying in {delay}s",
                extra={"endpoint_count": len(self._endpoints), "delay_seconds": delay},
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)

    def _on_runner_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Connection loop crashed: {exc}",
                exc_info=exc,
                extra={"error_type": type(exc).__name__},
            )

    async def _connect_round(self) -> bool:
        """
        Try each endpoint once, starting at the cursor.

        Returns:
            True if a connection was established
        """
        self._wakeup.clear()

        if self._find_servers is not None:
            try:
                await self._refresh_endpoints()
            except Exception as e:
                self._record_failure(e, None)
                return False

        for _ in range(len(self._endpoints)):
            if self._closed:
                return False
            endpoint = self._endpoints.current
            try:
                connection = await self._attempt(endpoint)
            except Exception as e:
                self._endpoints.advance()
                self._record_failure(e, endpoint)
                continue

            if self._closed:
                await self._discard_connection(connection)
                return False
            self._on_connected(connection, endpoint)
            return True
        return False

    async def _refresh_endpoints(self) -> None:
        assert self._find_servers is not None
        found = self._find_servers()
        if inspect.isawaitable(found):
            found = await found
        endpoints = list(found)
        if not endpoints:
            raise NoEndpointsError()
        self._endpoints.replace(endpoints)
        logger.debug(
            "Discovered broker endpoints",
            extra={"endpoint_count": len(endpoints)},
        )

    async def _attempt(self, endpoint: BrokerEndpoint) -> AMQPConnection:
        """Open a connection to one endpoint."""
        self._state = ConnectionState.CONNECTING
        self._stats.connect_attempts += 1

        options = {**self._config.connection_options, **endpoint.connection_options}
        effective = endpoint.model_copy(update={"connection_options": options})

        logger.debug(
            "Connecting to broker",
            extra={"url": endpoint.display_url, "endpoint_index": self._endpoints.cursor},
        )
        with self._tracer.span(
            "resilientmq.connection_manager.connect",
            {
                ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                ATTR_SERVER_ADDRESS: endpoint.display_url,
                ATTR_ENDPOINT_INDEX: self._endpoints.cursor,
                ATTR_ENDPOINT_COUNT: len(self._endpoints),
            },
        ):
            pending = self._connector(effective, self._config.heartbeat_interval)
            if self._config.connect_timeout is None:
                return await pending
            return await asyncio.wait_for(pending, timeout=self._config.connect_timeout)

    def _record_failure(self, error: BaseException, endpoint: BrokerEndpoint | None) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._stats.connect_failures += 1
        self._stats.last_error_at = datetime.now(UTC)
        logger.warning(
            f"Failed to connect to broker: {error}",
            extra={
                "url": endpoint.display_url if endpoint else None,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        self.emit("connect_failed", error, endpoint.url if endpoint else None)

    async def _discard_connection(self, connection: AMQPConnection) -> None:
        """Close a connection that finished opening after the manager closed."""
        try:
            await connection.close()
        except Exception as e:
            logger.warning(
                f"Error closing late connection: {e}",
                extra={"error": str(e), "error_type": type(e).__name__},
            )

    # =========================================================================
    # Connection notifications
    # =========================================================================

    def _on_connected(self, connection: AMQPConnection, endpoint: BrokerEndpoint) -> None:
        self._connection = connection
        self._endpoint = endpoint
        self._state = ConnectionState.CONNECTED
        self._stats.connections += 1
        self._stats.connected_at = datetime.now(UTC)

        connection.add_close_listener(functools.partial(self._on_connection_close, connection))
        connection.add_blocked_listener(functools.partial(self._on_blocked, connection))
        connection.add_unblocked_listener(functools.partial(self._on_unblocked, connection))

        logger.info(
            "Connected to broker",
            extra={
                "url": endpoint.display_url,
                "endpoint_index": self._endpoints.cursor,
                "connections": self._stats.connections,
            },
        )
        self.emit("connect", connection, endpoint.url)

    def _on_connection_close(
        self,
        connection: AMQPConnection,
        exception: BaseException | None,
    ) -> None:
        """Handle loss of the live connection and start failing over."""
        if connection is not self._connection:
            return

        endpoint = self._endpoint
        self._connection = None
        self._endpoint = None
        self._state = ConnectionState.DISCONNECTED
        self._stats.disconnections += 1
        self._stats.connected_at = None

        if exception is not None:
            logger.warning(
                f"Broker connection lost: {exception}",
                extra={
                    "url": endpoint.display_url if endpoint else None,
                    "error": str(exception),
                    "error_type": type(exception).__name__,
                },
            )
        else:
            logger.info(
                "Broker connection closed",
                extra={"url": endpoint.display_url if endpoint else None},
            )

        self.emit("disconnect", exception)

        if not self._closed:
            self._endpoints.advance()
            self.start()

    def _on_blocked(self, connection: AMQPConnection, reason: str) -> None:
        if connection is not self._connection:
            return
        self._state = ConnectionState.BLOCKED
        logger.warning("Broker blocked the connection", extra={"reason": reason})
        self.emit("blocked", reason)

    def _on_unblocked(self, connection: AMQPConnection) -> None:
        if connection is not self._connection or self._state is not ConnectionState.BLOCKED:
            return
        self._state = ConnectionState.CONNECTED
        logger.info("Broker unblocked the connection")
        self.emit("unblocked")


def connect(
    endpoints: EndpointDescriptor | Iterable[EndpointDescriptor],
    config: ConnectionManagerConfig | None = None,
    **kwargs: Any,
) -> ConnectionManager:
    """
    Create a connection manager and start connecting in the background.

    Must be called from a running event loop.

    Args:
        endpoints: Broker endpoint descriptor(s)
        config: Manager configuration
        **kwargs: Passed to ConnectionManager (connector, find_servers, tracer)

    Returns:
        The started ConnectionManager
    """
    manager = ConnectionManager(endpoints, config, **kwargs)
    manager.start()
    return manager


__all__ = [
    "ConnectionManager",
    "ConnectionManagerConfig",
    "ConnectionManagerStats",
    "ConnectionState",
    "FindServers",
    "connect",
]
