"""Unit tests for task runner adapters."""

from __future__ import annotations

import asyncio

import pytest

from reposync.adapters.runner import BoundedTaskRunner, SequentialTaskRunner
from reposync.core.ports import TaskRunnerPort


async def track(state: dict, delay: float = 0.01) -> int:
    state["active"] += 1
    state["peak"] = max(state["peak"], state["active"])
    await asyncio.sleep(delay)
    state["active"] -= 1
    return state["peak"]


@pytest.mark.core
class TestRunners:
    """Tests for SequentialTaskRunner and BoundedTaskRunner."""

    def test_runners_satisfy_protocol(self) -> None:
        assert isinstance(SequentialTaskRunner(), TaskRunnerPort)
        assert isinstance(BoundedTaskRunner(), TaskRunnerPort)

    async def test_sequential_never_overlaps(self) -> None:
        runner = SequentialTaskRunner()
        state = {"active": 0, "peak": 0}

        await asyncio.gather(*(runner.run(track, state) for _ in range(5)))

        assert state["peak"] == 1

    async def test_bounded_caps_concurrency(self) -> None:
        runner = BoundedTaskRunner(max_concurrent=2)
        state = {"active": 0, "peak": 0}

        await asyncio.gather(*(runner.run(track, state) for _ in range(6)))

        assert state["peak"] == 2

    async def test_kwargs_and_results(self) -> None:
        runner = BoundedTaskRunner()
        state = {"active": 0, "peak": 0}
        assert await runner.run(track, state, delay=0) == 1

    async def test_errors_propagate(self) -> None:
        async def fail() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await BoundedTaskRunner().run(fail)

    def test_rejects_zero_slots(self) -> None:
        with pytest.raises(ValueError):
            BoundedTaskRunner(max_concurrent=0)
