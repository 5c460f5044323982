"""
Observer primitives shared by the connection manager and channel wrappers.

Components publish lifecycle notifications (connect, disconnect, error, ...)
through an EventEmitter. Dependents register callbacks with ``on()`` and keep
the returned unsubscribe callable so they can detach when they close; there
is no global event bus.

Listeners may be plain callables or coroutine functions. Coroutines are run
as tracked background tasks so that emitting never blocks the emitter.

Example:
    >>> emitter = EventEmitter()
    >>> unsubscribe = emitter.on("connect", lambda: print("connected"))
    >>> emitter.emit("connect")
    connected
    True
    >>> unsubscribe()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]
"""Callback invoked with the event arguments; may return an awaitable."""

Unsubscribe = Callable[[], None]


class EventEmitter:
    """
    Minimal named-event observer.

    Listener exceptions are logged and never propagate into the emitter.
    An ``error`` event emitted without any listener is logged at ERROR level
    instead of being raised.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        # Track background tasks to prevent orphaned coroutines
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> Unsubscribe:
        """
        Register a listener for an event.

        Args:
            event: Event name
            listener: Callable invoked with the event's arguments

        Returns:
            Callable that removes the listener again
        """
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            self.off(event, listener)

        return unsubscribe

    def once(self, event: str, listener: Listener) -> Unsubscribe:
        """Register a listener that is removed after its first invocation."""

        def fire_once(*args: Any) -> Any:
            self.off(event, fire_once)
            return listener(*args)

        return self.on(event, fire_once)

    def off(self, event: str, listener: Listener) -> None:
        """Remove a listener; unknown listeners are ignored."""
        listeners = self._listeners.get(event)
        if listeners is None:
            return
        with contextlib.suppress(ValueError):
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        """Get the number of listeners registered for an event."""
        return len(self._listeners.get(event, ()))

    def remove_all_listeners(self, event: str | None = None) -> None:
        """Remove every listener, or every listener of one event."""
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def emit(self, event: str, *args: Any) -> bool:
        """
        Invoke every listener of an event.

        Args:
            event: Event name
            *args: Arguments passed to each listener

        Returns:
            True if at least one listener was registered
        """
        listeners = list(self._listeners.get(event, ()))
        if not listeners:
            if event == "error":
                error = args[0] if args else None
                logger.error(
                    f"Unhandled error event from {type(self).__name__}: {error}",
                    exc_info=error if isinstance(error, BaseException) else None,
                    extra={"emitter": type(self).__name__},
                )
            return False

        for listener in listeners:
            try:
                result = listener(*args)
            except Exception as e:
                logger.error(
                    f"Listener for {event!r} raised: {e}",
                    exc_info=True,
                    extra={"event": event, "error_type": type(e).__name__},
                )
                continue
            if inspect.isawaitable(result):
                self._spawn(result)
        return True

    async def wait_for(self, event: str) -> tuple[Any, ...]:
        """
        Wait until an event is next emitted.

        Returns:
            The arguments the event was emitted with
        """
        future: asyncio.Future[tuple[Any, ...]] = asyncio.get_running_loop().create_future()

        def resolve(*args: Any) -> None:
            if not future.done():
                future.set_result(args)

        unsubscribe = self.once(event, resolve)
        try:
            return await future
        finally:
            unsubscribe()

    def _spawn(self, awaitable: Awaitable[Any]) -> asyncio.Task[Any]:
        """Run an awaitable as a tracked background task."""
        task = asyncio.ensure_future(awaitable)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_task_done)
        return task

    def _on_background_task_done(self, task: asyncio.Task[Any]) -> None:
        """Callback when a background task completes."""
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task failed: {exc}",
                exc_info=exc,
                extra={"emitter": type(self).__name__, "error_type": type(exc).__name__},
            )

    def get_background_task_count(self) -> int:
        """Get the number of currently running background tasks."""
        return len(self._background_tasks)


__all__ = [
    "EventEmitter",
    "Listener",
    "Unsubscribe",
]
