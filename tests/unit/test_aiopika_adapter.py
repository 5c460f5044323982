"""
Unit tests for the aio-pika adapter.

These tests use mocks for the aio-pika channel and connection objects;
no RabbitMQ server is required.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aio_pika import DeliveryMode, ExchangeType

from resilientmq.adapters.aiopika import (
    AioPikaChannel,
    AioPikaConnection,
    build_message,
    connect_aio_pika,
)
from resilientmq.endpoints import BrokerEndpoint
from resilientmq.exceptions import ChannelClosedError
from tests.fixtures import URL_A, run_until


@pytest.fixture
def amqp_channel() -> MagicMock:
    """Create a mock aio-pika channel."""
    channel = MagicMock()
    channel.is_closed = False
    channel.close_callbacks = set()
    channel.default_exchange = MagicMock()
    channel.default_exchange.publish = AsyncMock()
    channel.get_exchange = AsyncMock()
    channel.set_qos = AsyncMock()
    channel.close = AsyncMock()
    channel.queue_delete = AsyncMock()
    channel.exchange_delete = AsyncMock()

    queue = MagicMock()
    queue.name = "jobs"
    queue.consume = AsyncMock(return_value="amq.ctag-1")
    queue.cancel = AsyncMock()
    queue.bind = AsyncMock()
    queue.unbind = AsyncMock()
    queue.get = AsyncMock(return_value=None)
    queue.purge = AsyncMock(return_value=MagicMock(message_count=3))
    queue.declaration_result = MagicMock(message_count=5, consumer_count=1)
    channel.get_queue = AsyncMock(return_value=queue)
    channel.declare_queue = AsyncMock(return_value=queue)

    exchange = MagicMock()
    exchange.name = "orders"
    exchange.publish = AsyncMock()
    channel.declare_exchange = AsyncMock(return_value=exchange)
    return channel


def fire_close(amqp_channel: MagicMock, exc: BaseException | None) -> None:
    for callback in list(amqp_channel.close_callbacks):
        callback(amqp_channel, exc)


class TestBuildMessage:
    """Tests for build_message()."""

    def test_plain_body(self) -> None:
        message, mandatory = build_message(b"hello")

        assert message.body == b"hello"
        assert mandatory is False

    def test_properties_copied(self) -> None:
        message, mandatory = build_message(
            b"{}",
            {
                "content_type": "application/json",
                "headers": {"x-trace": "abc"},
                "message_id": "m-1",
                "mandatory": True,
            },
        )

        assert message.content_type == "application/json"
        assert message.headers == {"x-trace": "abc"}
        assert message.message_id == "m-1"
        assert mandatory is True

    def test_persistent_flag(self) -> None:
        persistent, _ = build_message(b"x", {"persistent": True})
        transient, _ = build_message(b"x", {"persistent": False})

        assert persistent.delivery_mode == DeliveryMode.PERSISTENT
        assert transient.delivery_mode == DeliveryMode.NOT_PERSISTENT

    def test_unknown_option_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown publish options: bogus"):
            build_message(b"x", {"bogus": 1})


class TestAioPikaChannelPublish:
    """Tests for AioPikaChannel outbox publishing."""

    def test_invalid_water_marks(self, amqp_channel: MagicMock) -> None:
        with pytest.raises(ValueError, match="low_water_mark"):
            AioPikaChannel(amqp_channel, high_water_mark=10, low_water_mark=10)

    @pytest.mark.asyncio
    async def test_publish_to_default_exchange(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)

        assert channel.publish("", "jobs", b"payload") is True
        await run_until(lambda: channel.outbox_size == 0)

        amqp_channel.default_exchange.publish.assert_awaited_once()
        message = amqp_channel.default_exchange.publish.await_args.args[0]
        assert message.body == b"payload"
        assert amqp_channel.default_exchange.publish.await_args.kwargs["routing_key"] == "jobs"

    @pytest.mark.asyncio
    async def test_named_exchange_looked_up_once(self, amqp_channel: MagicMock) -> None:
        exchange = MagicMock()
        exchange.publish = AsyncMock()
        amqp_channel.get_exchange.return_value = exchange
        channel = AioPikaChannel(amqp_channel)

        channel.publish("orders", "created", b"1")
        channel.publish("orders", "created", b"2")
        await run_until(lambda: channel.outbox_size == 0)

        amqp_channel.get_exchange.assert_awaited_once_with("orders", ensure=False)
        bodies = [call.args[0].body for call in exchange.publish.await_args_list]
        assert bodies == [b"1", b"2"]

    @pytest.mark.asyncio
    async def test_high_water_mark_reports_no_room_until_drained(
        self, amqp_channel: MagicMock
    ) -> None:
        channel = AioPikaChannel(amqp_channel, high_water_mark=3, low_water_mark=1)
        drained = MagicMock()
        channel.add_drain_listener(drained)

        results = [channel.publish("", "jobs", b"x") for _ in range(3)]

        assert results == [True, True, False]
        await run_until(lambda: channel.outbox_size == 0)
        drained.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_publish_failure_is_logged_and_skipped(self, amqp_channel: MagicMock) -> None:
        amqp_channel.default_exchange.publish.side_effect = [RuntimeError("nack"), None]
        channel = AioPikaChannel(amqp_channel)

        channel.publish("", "jobs", b"1")
        channel.publish("", "jobs", b"2")
        await run_until(lambda: channel.outbox_size == 0)

        assert amqp_channel.default_exchange.publish.await_count == 2

    def test_publish_on_closed_channel_raises(self, amqp_channel: MagicMock) -> None:
        amqp_channel.is_closed = True
        channel = AioPikaChannel(amqp_channel)

        with pytest.raises(ChannelClosedError):
            channel.publish("", "jobs", b"x")


class TestAioPikaChannelClose:
    """Tests for close notifications."""

    def test_close_listener_receives_error(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)
        listener = MagicMock()
        channel.add_close_listener(listener)
        error = RuntimeError("CHANNEL_ERROR")

        fire_close(amqp_channel, error)

        listener.assert_called_once_with(error)

    @pytest.mark.asyncio
    async def test_requested_close_reports_none(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)
        listener = MagicMock()
        channel.add_close_listener(listener)

        await channel.close()
        fire_close(amqp_channel, RuntimeError("closed by client"))

        amqp_channel.close.assert_awaited_once()
        listener.assert_called_once_with(None)


class TestAioPikaChannelConsume:
    """Tests for consuming and acknowledgements."""

    @pytest.mark.asyncio
    async def test_consume_returns_broker_tag(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)

        tag = await channel.consume("jobs", MagicMock(), consumer_tag="local-1", exclusive=True)

        assert tag == "amq.ctag-1"
        queue = amqp_channel.get_queue.return_value
        kwargs = queue.consume.await_args.kwargs
        assert kwargs["consumer_tag"] == "local-1"
        assert kwargs["exclusive"] is True
        assert kwargs["no_ack"] is False

    @pytest.mark.asyncio
    async def test_delivery_supports_async_callbacks(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)
        received: list[object] = []

        async def on_message(message: object) -> None:
            received.append(message)

        await channel.consume("jobs", on_message)
        deliver = amqp_channel.get_queue.return_value.consume.await_args.args[0]
        message = MagicMock()
        await deliver(message)

        assert received == [message]

    @pytest.mark.asyncio
    async def test_cancel_known_and_unknown_tags(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)
        tag = await channel.consume("jobs", lambda message: None)
        queue = amqp_channel.get_queue.return_value

        await channel.cancel(tag)
        await channel.cancel(tag)

        queue.cancel.assert_awaited_once_with(tag)

    @pytest.mark.asyncio
    async def test_ack_all_uses_last_delivery(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)
        await channel.consume("jobs", lambda message: None)
        deliver = amqp_channel.get_queue.return_value.consume.await_args.args[0]
        message = MagicMock()
        message.ack = AsyncMock()
        await deliver(message)

        channel.ack_all()
        channel.ack_all()
        await asyncio.sleep(0)

        message.ack.assert_awaited_once_with(multiple=True)

    @pytest.mark.asyncio
    async def test_nack(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)
        message = MagicMock()
        message.nack = AsyncMock()

        channel.nack(message, requeue=False)
        await asyncio.sleep(0)

        message.nack.assert_awaited_once_with(multiple=False, requeue=False)

    @pytest.mark.asyncio
    async def test_set_prefetch(self, amqp_channel: MagicMock) -> None:
        await AioPikaChannel(amqp_channel).set_prefetch(10)

        amqp_channel.set_qos.assert_awaited_once_with(prefetch_count=10, global_=False)


class TestAioPikaChannelTopology:
    """Tests for topology pass-throughs."""

    @pytest.mark.asyncio
    async def test_declare_queue(self, amqp_channel: MagicMock) -> None:
        result = await AioPikaChannel(amqp_channel).declare_queue("jobs", durable=True)

        amqp_channel.declare_queue.assert_awaited_once_with(name="jobs", durable=True)
        assert result.queue == "jobs"
        assert result.message_count == 5
        assert result.consumer_count == 1

    @pytest.mark.asyncio
    async def test_check_queue_is_passive(self, amqp_channel: MagicMock) -> None:
        await AioPikaChannel(amqp_channel).check_queue("jobs")

        amqp_channel.declare_queue.assert_awaited_once_with(name="jobs", passive=True)

    @pytest.mark.asyncio
    async def test_declare_exchange_caches_exchange(self, amqp_channel: MagicMock) -> None:
        channel = AioPikaChannel(amqp_channel)

        result = await channel.declare_exchange("orders", "topic", durable=True)
        channel.publish("orders", "created", b"x")
        await run_until(lambda: channel.outbox_size == 0)

        assert result.exchange == "orders"
        assert amqp_channel.declare_exchange.await_args.kwargs["type"] == ExchangeType.TOPIC
        amqp_channel.get_exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bind_queue(self, amqp_channel: MagicMock) -> None:
        await AioPikaChannel(amqp_channel).bind_queue("jobs", "orders", "created")

        amqp_channel.get_queue.return_value.bind.assert_awaited_once_with(
            "orders", "created", arguments={}
        )

    @pytest.mark.asyncio
    async def test_purge_queue_returns_count(self, amqp_channel: MagicMock) -> None:
        assert await AioPikaChannel(amqp_channel).purge_queue("jobs") == 3

    @pytest.mark.asyncio
    async def test_get_does_not_fail_on_empty_queue(self, amqp_channel: MagicMock) -> None:
        assert await AioPikaChannel(amqp_channel).get("jobs") is None

        amqp_channel.get_queue.return_value.get.assert_awaited_once_with(no_ack=False, fail=False)

    @pytest.mark.asyncio
    async def test_delete_exchange(self, amqp_channel: MagicMock) -> None:
        await AioPikaChannel(amqp_channel).delete_exchange("orders", if_unused=True)

        amqp_channel.exchange_delete.assert_awaited_once_with("orders", if_unused=True)


class TestAioPikaConnection:
    """Tests for AioPikaConnection and connect_aio_pika()."""

    @pytest.mark.asyncio
    async def test_channel_is_wrapped(self, amqp_channel: MagicMock) -> None:
        amqp_connection = MagicMock()
        amqp_connection.channel = AsyncMock(return_value=amqp_channel)

        channel = await AioPikaConnection(amqp_connection).channel()

        assert isinstance(channel, AioPikaChannel)

    @pytest.mark.asyncio
    async def test_requested_close_reports_none(self) -> None:
        amqp_connection = MagicMock()
        amqp_connection.close_callbacks = set()
        amqp_connection.close = AsyncMock()
        connection = AioPikaConnection(amqp_connection)
        listener = MagicMock()
        connection.add_close_listener(listener)

        await connection.close()
        for callback in amqp_connection.close_callbacks:
            callback(amqp_connection, None)

        listener.assert_called_once_with(None)

    @pytest.mark.asyncio
    async def test_connect_passes_heartbeat_and_options(self) -> None:
        endpoint = BrokerEndpoint(url=URL_A, connection_options={"timeout": 5})
        with patch("resilientmq.adapters.aiopika.aio_pika") as mock_aio_pika:
            mock_aio_pika.connect = AsyncMock(return_value=MagicMock())

            connection = await connect_aio_pika(endpoint, heartbeat=5.0)

        mock_aio_pika.connect.assert_awaited_once_with(URL_A, timeout=5, heartbeat=5)
        assert isinstance(connection, AioPikaConnection)

    @pytest.mark.asyncio
    async def test_endpoint_heartbeat_wins(self) -> None:
        endpoint = BrokerEndpoint(url=URL_A, connection_options={"heartbeat": 30})
        with patch("resilientmq.adapters.aiopika.aio_pika") as mock_aio_pika:
            mock_aio_pika.connect = AsyncMock(return_value=MagicMock())

            await connect_aio_pika(endpoint, heartbeat=0.2)

        mock_aio_pika.connect.assert_awaited_once_with(URL_A, heartbeat=30)
