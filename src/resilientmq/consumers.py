"""
Consumer registry for channel wrappers.

Every consumer registered through ``ChannelWrapper.consume()`` is kept here
so it can be subscribed again whenever the underlying channel is recreated
or the broker cancels it.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any


def generate_consumer_tag() -> str:
    """Create a locally unique consumer tag."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ConsumerOptions:
    """
    Options for a consumer subscription.

    Attributes:
        consumer_tag: Stable local tag; generated when not supplied. Used to
            cancel the consumer and requested from the broker on every
            subscribe
        prefetch: Per-consumer prefetch count set before subscribing
        no_ack: Whether the broker considers deliveries acknowledged on send
        exclusive: Request exclusive access to the queue
        arguments: Extra consume arguments (e.g. x-priority)
    """

    consumer_tag: str = field(default_factory=generate_consumer_tag)
    prefetch: int | None = None
    no_ack: bool = False
    exclusive: bool = False
    arguments: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.prefetch is not None and self.prefetch < 0:
            raise ValueError(f"prefetch must be >= 0, got {self.prefetch}")


@dataclass(eq=False)
class Consumer:
    """
    A registered consumer.

    ``broker_tag`` is set only while the consumer is subscribed on a live
    channel; it is cleared whenever that channel is lost or the broker
    cancels the subscription.
    """

    queue: str
    on_message: Callable[[Any], Any]
    options: ConsumerOptions
    broker_tag: str | None = None

    @property
    def consumer_tag(self) -> str:
        return self.options.consumer_tag

    @property
    def is_subscribed(self) -> bool:
        return self.broker_tag is not None


class ConsumerRegistry:
    """Active consumers of one channel wrapper, in registration order."""

    def __init__(self) -> None:
        self._consumers: list[Consumer] = []

    def __len__(self) -> int:
        return len(self._consumers)

    def __iter__(self) -> Iterator[Consumer]:
        # Snapshot so callers may mutate the registry while iterating
        return iter(list(self._consumers))

    def __contains__(self, consumer: object) -> bool:
        return any(existing is consumer for existing in self._consumers)

    def add(self, consumer: Consumer) -> None:
        self._consumers.append(consumer)

    def get(self, consumer_tag: str) -> Consumer | None:
        for consumer in self._consumers:
            if consumer.consumer_tag == consumer_tag:
                return consumer
        return None

    def remove(self, consumer_tag: str) -> Consumer | None:
        """Remove the first consumer with the given local tag."""
        for index, consumer in enumerate(self._consumers):
            if consumer.consumer_tag == consumer_tag:
                del self._consumers[index]
                return consumer
        return None

    def drain(self) -> list[Consumer]:
        """Remove and return every consumer."""
        consumers, self._consumers = self._consumers, []
        return consumers

    def clear_broker_tags(self) -> None:
        """Mark every consumer as unsubscribed (its channel is gone)."""
        for consumer in self._consumers:
            consumer.broker_tag = None


__all__ = [
    "Consumer",
    "ConsumerOptions",
    "ConsumerRegistry",
    "generate_consumer_tag",
]
