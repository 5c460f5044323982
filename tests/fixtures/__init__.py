"""
Shared test fixtures for the resilientmq library.

This module provides an in-memory fake broker implementing the AMQP
connection and channel protocols, so connection managers and channel
wrappers can be exercised without a running RabbitMQ.

Usage:
    from tests.fixtures import FakeBroker, FakeChannel, FakeConnection
"""

from tests.fixtures.broker import (
    AccessRefusedError,
    FakeBroker,
    FakeChannel,
    FakeConnection,
    NotFoundError,
)
from tests.fixtures.helpers import URL_A, URL_B, URL_C, run_until

__all__ = [
    "AccessRefusedError",
    "FakeBroker",
    "FakeChannel",
    "FakeConnection",
    "NotFoundError",
    "URL_A",
    "URL_B",
    "URL_C",
    "run_until",
]
