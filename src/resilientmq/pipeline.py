"""
Setup pipeline for channel wrappers.

The pipeline holds the idempotent setup actions (declare an exchange,
declare a queue, bind them, ...) given to a channel wrapper at construction.
They run in registration order against every freshly created channel,
before the channel carries any new traffic.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field

from resilientmq.exceptions import is_channel_closed_error
from resilientmq.protocols import AMQPChannel, SetupFunc

logger = logging.getLogger(__name__)


@dataclass
class SetupRunResult:
    """
    Outcome of one pipeline run.

    Attributes:
        succeeded: Number of actions that completed
        failed: Errors reported for actions that failed
        suppressed: Errors ignored because the channel had already closed
    """

    succeeded: int = 0
    failed: list[Exception] = field(default_factory=list)
    suppressed: list[Exception] = field(default_factory=list)


class SetupPipeline:
    """
    Ordered, append-only list of setup actions.

    Example:
        >>> async def declare(channel):
        ...     await channel.declare_queue("jobs", durable=True)
        >>> pipeline = SetupPipeline([declare])
        >>> result = await pipeline.run(channel, on_error=print)
    """

    def __init__(self, actions: SetupFunc | Iterable[SetupFunc] | None = None) -> None:
        if actions is None:
            self._actions: tuple[SetupFunc, ...] = ()
        elif callable(actions):
            self._actions = (actions,)
        else:
            self._actions = tuple(actions)

    def __len__(self) -> int:
        return len(self._actions)

    def __iter__(self) -> Iterator[SetupFunc]:
        return iter(self._actions)

    async def run(
        self,
        channel: AMQPChannel,
        on_error: Callable[[Exception], None],
    ) -> SetupRunResult:
        """
        Run every action against a channel, one after another.

        A failing action does not stop the remaining ones. Failures caused
        by the channel having closed underneath the action are suppressed;
        any other failure is passed to ``on_error``.

        Args:
            channel: The freshly created channel
            on_error: Called with each reportable failure

        Returns:
            SetupRunResult describing the run
        """
        result = SetupRunResult()
        for action in self._actions:
            try:
                await action(channel)
            except Exception as e:
                if is_channel_closed_error(e):
                    logger.debug(
                        "Setup action interrupted by channel close",
                        extra={"action": _action_name(action), "error": str(e)},
                    )
                    result.suppressed.append(e)
                    continue
                logger.warning(
                    f"Setup action failed: {e}",
                    extra={
                        "action": _action_name(action),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                result.failed.append(e)
                on_error(e)
            else:
                result.succeeded += 1
        return result


def _action_name(action: SetupFunc) -> str:
    return getattr(action, "__qualname__", None) or repr(action)


__all__ = [
    "SetupPipeline",
    "SetupRunResult",
]
