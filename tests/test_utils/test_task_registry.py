"""
Tests for the keyed task registry.
"""

import asyncio

import pytest

from ghostwatch.utils.task_registry import TaskRegistry


async def sleeper(seconds=10.0):
    await asyncio.sleep(seconds)


# =============================================================================
# Scheduling
# =============================================================================


@pytest.mark.asyncio
async def test_schedule_tracks_task():
    registry = TaskRegistry("test")
    task = registry.schedule("a", sleeper())

    assert "a" in registry
    assert len(registry) == 1
    assert registry.get("a") is task
    assert task.get_name() == "test:a"

    await registry.cancel_all()


@pytest.mark.asyncio
async def test_schedule_replaces_previous_task():
    registry = TaskRegistry()
    first = registry.schedule(1, sleeper())
    second = registry.schedule(1, sleeper())
    await asyncio.sleep(0)

    assert first.cancelled()
    assert registry.get(1) is second
    assert len(registry) == 1

    await registry.cancel_all()


@pytest.mark.asyncio
async def test_finished_task_is_forgotten():
    registry = TaskRegistry()
    task = registry.schedule("quick", sleeper(0))
    await task
    await asyncio.sleep(0)

    assert "quick" not in registry
    assert registry.get("quick") is None


@pytest.mark.asyncio
async def test_task_can_reschedule_itself():
    registry = TaskRegistry()
    runs = []

    async def tick(n):
        runs.append(n)
        if n < 3:
            registry.schedule("tick", tick(n + 1))

    registry.schedule("tick", tick(1))
    for _ in range(10):
        await asyncio.sleep(0)

    assert runs == [1, 2, 3]
    assert "tick" not in registry


@pytest.mark.asyncio
async def test_failed_task_is_logged(caplog):
    registry = TaskRegistry()

    async def boom():
        raise RuntimeError("kaput")

    task = registry.schedule("boom", boom())
    with pytest.raises(RuntimeError):
        await task
    await asyncio.sleep(0)

    assert any("Task failed" in r.message for r in caplog.records)


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_cancel_single_task():
    registry = TaskRegistry()
    task = registry.schedule("x", sleeper())

    assert registry.cancel("x") is True
    await asyncio.sleep(0)
    assert task.cancelled()
    assert registry.cancel("x") is False


@pytest.mark.asyncio
async def test_cancel_unknown_key():
    assert TaskRegistry().cancel("missing") is False


@pytest.mark.asyncio
async def test_cancel_all():
    registry = TaskRegistry()
    tasks = [registry.schedule(i, sleeper()) for i in range(3)]

    cancelled = await registry.cancel_all()

    assert cancelled == 3
    assert all(t.cancelled() for t in tasks)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_cancel_all_empty():
    assert await TaskRegistry().cancel_all() == 0
