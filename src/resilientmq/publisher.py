"""
Outbound message queue for channel wrappers.

Messages published while a wrapper cannot send (no channel, setup still
running, or the broker signalled flow control) wait here in publish order.
The wrapper's publish worker drains the queue; ``close()`` rejects whatever
is left exactly once.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

MAX_MESSAGES_PER_BATCH = 1000
"""Upper bound on messages sent by the publish worker in one loop turn."""


@dataclass
class PendingMessage:
    """
    A publish waiting to be handed to the underlying channel.

    Attributes:
        exchange: Target exchange ("" for the default exchange)
        routing_key: Routing key
        body: Encoded message body
        options: Protocol publish options
        future: Completion awaited by the caller; resolves with the
            channel's "room remaining" flag
    """

    exchange: str
    routing_key: str
    body: bytes
    options: Mapping[str, Any] = field(default_factory=dict)
    future: asyncio.Future[bool] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )

    @property
    def settled(self) -> bool:
        """True once the message was resolved, rejected or cancelled."""
        return self.future.done()

    def resolve(self, has_room: bool) -> None:
        if not self.future.done():
            self.future.set_result(has_room)

    def reject(self, error: BaseException) -> bool:
        """
        Fail the caller's completion.

        Returns:
            True if this call settled the message
        """
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True


class PublishQueue:
    """FIFO of pending messages; insertion order is publish call order."""

    def __init__(self) -> None:
        self._messages: deque[PendingMessage] = deque()

    def __len__(self) -> int:
        return len(self._messages)

    def __bool__(self) -> bool:
        return bool(self._messages)

    def __iter__(self) -> Iterator[PendingMessage]:
        return iter(self._messages)

    def append(self, message: PendingMessage) -> None:
        self._messages.append(message)

    def appendleft(self, message: PendingMessage) -> None:
        """Put a message back at the head (it was popped but not sent)."""
        self._messages.appendleft(message)

    def popleft(self) -> PendingMessage:
        return self._messages.popleft()

    def reject_all(self, error_factory: Callable[[], BaseException]) -> int:
        """
        Reject and drop every queued message.

        Args:
            error_factory: Callable producing the exception for each message

        Returns:
            Number of messages this call rejected (already settled ones are
            dropped without being counted)
        """
        rejected = 0
        while self._messages:
            message = self._messages.popleft()
            if message.reject(error_factory()):
                rejected += 1
        return rejected


__all__ = [
    "MAX_MESSAGES_PER_BATCH",
    "PendingMessage",
    "PublishQueue",
]
