"""
Shared pytest fixtures for the resilientmq library tests.

This module provides:
- Fake broker fixtures (broker, tracer)
- Connection manager factory wired to the fake broker with short delays

All managers created through the factory are closed after each test.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio

from resilientmq.manager import ConnectionManager, ConnectionManagerConfig
from resilientmq.observability import MockTracer
from tests.fixtures import URL_A, FakeBroker


@pytest.fixture
def broker() -> FakeBroker:
    """Fresh fake broker; every URL is reachable unless marked otherwise."""
    return FakeBroker()


@pytest.fixture
def tracer() -> MockTracer:
    return MockTracer()


@pytest.fixture
def fast_config() -> ConnectionManagerConfig:
    """Configuration with delays short enough for unit tests."""
    return ConnectionManagerConfig(
        heartbeat_interval=5.0,
        reconnect_delay=0.01,
        enable_tracing=False,
    )


@pytest_asyncio.fixture
async def manager_factory(
    broker: FakeBroker,
    fast_config: ConnectionManagerConfig,
    tracer: MockTracer,
) -> AsyncGenerator[Callable[..., ConnectionManager], None]:
    """Factory creating managers on the fake broker; closes them on teardown."""
    managers: list[ConnectionManager] = []

    def factory(
        endpoints: Any = (URL_A,),
        config: ConnectionManagerConfig | None = None,
        **kwargs: Any,
    ) -> ConnectionManager:
        kwargs.setdefault("connector", broker.connect)
        kwargs.setdefault("tracer", tracer)
        manager = ConnectionManager(endpoints, config or fast_config, **kwargs)
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        await manager.close()


@pytest_asyncio.fixture
async def manager(
    manager_factory: Callable[..., ConnectionManager],
) -> ConnectionManager:
    """A manager connected to the fake broker."""
    manager = manager_factory()
    await manager.connect(timeout=1.0)
    return manager
