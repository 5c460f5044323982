"""Unit tests for the setup pipeline."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from resilientmq.exceptions import ChannelClosedError
from resilientmq.pipeline import SetupPipeline


class TestSetupPipelineConstruction:
    """Tests for building pipelines from one or many actions."""

    def test_empty(self) -> None:
        assert len(SetupPipeline()) == 0

    def test_single_action(self) -> None:
        action = AsyncMock()

        pipeline = SetupPipeline(action)

        assert list(pipeline) == [action]

    def test_sequence_keeps_order(self) -> None:
        first, second = AsyncMock(), AsyncMock()

        pipeline = SetupPipeline([first, second])

        assert list(pipeline) == [first, second]


class TestSetupPipelineRun:
    """Tests for SetupPipeline.run()."""

    @pytest.mark.asyncio
    async def test_runs_actions_sequentially(self) -> None:
        calls: list[str] = []
        channel = MagicMock()

        async def first(ch: object) -> None:
            assert ch is channel
            calls.append("first")

        async def second(ch: object) -> None:
            calls.append("second")

        result = await SetupPipeline([first, second]).run(channel, on_error=MagicMock())

        assert calls == ["first", "second"]
        assert result.succeeded == 2
        assert result.failed == []

    @pytest.mark.asyncio
    async def test_failure_reported_and_run_continues(self) -> None:
        error = RuntimeError("PRECONDITION_FAILED - inequivalent arg 'durable'")
        failing = AsyncMock(side_effect=error)
        after = AsyncMock()
        on_error = MagicMock()

        result = await SetupPipeline([failing, after]).run(MagicMock(), on_error=on_error)

        on_error.assert_called_once_with(error)
        after.assert_awaited_once()
        assert result.failed == [error]
        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_channel_closed_errors_suppressed(self) -> None:
        error = ChannelClosedError("orders")
        on_error = MagicMock()

        result = await SetupPipeline(AsyncMock(side_effect=error)).run(
            MagicMock(), on_error=on_error
        )

        on_error.assert_not_called()
        assert result.suppressed == [error]
        assert result.failed == []

    @pytest.mark.asyncio
    async def test_empty_pipeline(self) -> None:
        result = await SetupPipeline().run(MagicMock(), on_error=MagicMock())

        assert result.succeeded == 0
