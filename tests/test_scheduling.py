"""Tests for cancellable scheduled tasks."""

import asyncio

from booth.scheduling import ScheduledTask


def test_scheduled_task_fires_after_delay() -> None:
    fired: list[str] = []

    async def scenario() -> None:
        async def callback() -> None:
            fired.append("yes")

        task = ScheduledTask(0.01, callback, name="test").start()
        assert task.pending
        await task.wait()
        assert not task.pending

    asyncio.run(scenario())
    assert fired == ["yes"]


def test_cancel_prevents_callback() -> None:
    fired: list[str] = []

    async def scenario() -> None:
        async def callback() -> None:
            fired.append("yes")

        task = ScheduledTask(0.05, callback).start()
        await task.cancel()
        assert not task.pending
        await asyncio.sleep(0.08)
        await task.wait()

    asyncio.run(scenario())
    assert fired == []


def test_cancel_from_inside_callback_is_ignored() -> None:
    fired: list[str] = []

    async def scenario() -> None:
        holder: dict[str, ScheduledTask] = {}

        async def callback() -> None:
            await holder["task"].cancel()
            fired.append("finished")

        holder["task"] = ScheduledTask(0, callback).start()
        await holder["task"].wait()

    asyncio.run(scenario())
    assert fired == ["finished"]


def test_callback_errors_are_contained() -> None:
    async def scenario() -> bool:
        async def callback() -> None:
            raise RuntimeError("boom")

        task = ScheduledTask(0, callback).start()
        await task.wait()
        return task.pending

    assert asyncio.run(scenario()) is False


def test_start_twice_keeps_single_task() -> None:
    calls: list[int] = []

    async def scenario() -> None:
        async def callback() -> None:
            calls.append(1)

        task = ScheduledTask(0.01, callback)
        task.start()
        task.start()
        await task.wait()

    asyncio.run(scenario())
    assert calls == [1]
