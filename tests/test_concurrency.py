"""Tests for bounded task execution."""

import asyncio

import pytest

from artshelf.concurrency import AdaptiveConcurrencyController, ConcurrencyController
from artshelf.errors import TaskCancelledError


@pytest.mark.asyncio
async def test_bound_is_never_exceeded():
    """Test that at most max_concurrency tasks run at once and results keep order."""
    controller = ConcurrencyController(3)
    running = 0
    peak = 0

    async def work(n):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return n * 2

    results = await controller.execute_all([lambda n=n: work(n) for n in range(20)])
    assert results == [n * 2 for n in range(20)]
    assert peak == 3
    assert controller.peak_running == 3
    assert controller.completed == 20
    assert controller.status() == {"max_concurrency": 3, "running": 0, "queued": 0, "total": 0}


@pytest.mark.asyncio
async def test_execute_all_settled_keeps_failures_in_place():
    controller = ConcurrencyController(2)

    async def ok():
        return "ok"

    async def boom():
        raise RuntimeError("boom")

    outcomes = await controller.execute_all_settled([ok, boom, ok])
    assert outcomes[0] == "ok"
    assert isinstance(outcomes[1], RuntimeError)
    assert outcomes[2] == "ok"
    assert controller.failed == 1


@pytest.mark.asyncio
async def test_execute_all_raises_first_failure():
    controller = ConcurrencyController(2)

    async def boom():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await controller.execute_all([boom])


@pytest.mark.asyncio
async def test_clear_rejects_queued_tasks():
    """Test that clear() rejects queued tasks but lets running ones finish."""
    controller = ConcurrencyController(1)
    release = asyncio.Event()

    async def blocker():
        await release.wait()
        return "done"

    first = controller.execute(blocker)
    queued = [controller.execute(blocker) for _ in range(3)]
    await asyncio.sleep(0)
    assert controller.status()["queued"] == 3

    assert controller.clear() == 3
    for future in queued:
        with pytest.raises(TaskCancelledError):
            await future

    release.set()
    assert await first == "done"
    await asyncio.wait_for(controller.wait_for_completion(), timeout=1)


@pytest.mark.asyncio
async def test_growing_the_bound_starts_queued_tasks():
    controller = ConcurrencyController(1)
    release = asyncio.Event()

    async def blocker():
        await release.wait()

    futures = [controller.execute(blocker) for _ in range(3)]
    await asyncio.sleep(0)
    assert controller.running == 1

    controller.set_max_concurrency(3)
    await asyncio.sleep(0)
    assert controller.running == 3
    release.set()
    await asyncio.gather(*futures)


@pytest.mark.parametrize("bad", [0, -1, 1.5, "2"])
def test_invalid_bound_is_rejected(bad):
    with pytest.raises(ValueError):
        ConcurrencyController(bad)


@pytest.mark.asyncio
async def test_wait_for_completion_when_idle_returns_immediately():
    controller = ConcurrencyController(2)
    await asyncio.wait_for(controller.wait_for_completion(), timeout=0.5)


@pytest.mark.asyncio
async def test_adaptive_controller_shrinks_and_grows():
    """Test that memory pressure shrinks the bound and headroom grows it."""
    usage = {"rss": 1200}
    controller = AdaptiveConcurrencyController(
        10, memory_threshold_bytes=1000, memory_reader=lambda: usage["rss"]
    )
    controller.max_limit = 16

    assert controller.adjust() == 8
    usage["rss"] = 1200
    assert controller.adjust() == 6
    usage["rss"] = 100
    assert controller.adjust() == 7
    usage["rss"] = 700
    assert controller.adjust() == 7

    controller.max_concurrency = 1
    usage["rss"] = 5000
    assert controller.adjust() == 1


@pytest.mark.asyncio
async def test_adaptive_controller_respects_max_limit():
    controller = AdaptiveConcurrencyController(
        4, memory_threshold_bytes=1000, memory_reader=lambda: 0
    )
    controller.max_limit = 5
    assert controller.adjust() == 5
    assert controller.adjust() == 5
    controller.start()
    await controller.stop()
