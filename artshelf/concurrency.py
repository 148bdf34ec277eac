"""Bounded asyncio task execution.

ConcurrencyController runs zero-argument coroutine functions with at most
`max_concurrency` of them in flight; the rest wait in a FIFO queue.
"""

from __future__ import annotations

import asyncio
import os
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

import psutil

from .errors import TaskCancelledError
from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
TaskFactory = Callable[[], Awaitable[T]]


def _cpu_count() -> int:
    return os.cpu_count() or 1


class ConcurrencyController:
    def __init__(self, max_concurrency: Optional[int] = None):
        self._max_concurrency = self._validate(
            max_concurrency if max_concurrency is not None else _cpu_count() * 2
        )
        self._queue: deque[tuple[TaskFactory[Any], asyncio.Future]] = deque()
        self._running = 0
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self.peak_running = 0
        self.completed = 0
        self.failed = 0

    @staticmethod
    def _validate(value: int) -> int:
        if not isinstance(value, int) or value < 1:
            raise ValueError(f"max_concurrency must be an integer >= 1, got {value!r}")
        return value

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @max_concurrency.setter
    def max_concurrency(self, value: int) -> None:
        value = self._validate(value)
        grew = value > self._max_concurrency
        self._max_concurrency = value
        if grew:
            self._dispatch()

    def set_max_concurrency(self, value: int) -> None:
        self.max_concurrency = value

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._queue)

    def execute(self, task: TaskFactory[T]) -> "asyncio.Future[T]":
        """Queue task and return a future resolving with its outcome.

        Must be called from a running event loop.
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append((task, future))
        self._idle.clear()
        self._dispatch()
        return future

    async def execute_all(self, tasks: Iterable[TaskFactory[T]]) -> list[T]:
        """Run tasks and return their results in order; raises the first failure."""
        return list(await asyncio.gather(*(self.execute(t) for t in tasks)))

    async def execute_all_settled(self, tasks: Iterable[TaskFactory[T]]) -> list[Any]:
        """Run tasks; each slot holds either the result or the raised exception."""
        return list(
            await asyncio.gather(*(self.execute(t) for t in tasks), return_exceptions=True)
        )

    def _dispatch(self) -> None:
        while self._queue and self._running < self._max_concurrency:
            task, future = self._queue.popleft()
            if future.done():
                continue
            self._running += 1
            self.peak_running = max(self.peak_running, self._running)
            runner = asyncio.ensure_future(self._run(task, future))
            self._tasks.add(runner)
            runner.add_done_callback(self._tasks.discard)

    async def _run(self, task: TaskFactory[Any], future: asyncio.Future) -> None:
        try:
            result = await task()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as exc:
            self.failed += 1
            if not future.done():
                future.set_exception(exc)
        else:
            self.completed += 1
            if not future.done():
                future.set_result(result)
        finally:
            self._running -= 1
            self._dispatch()
            if not self._queue and self._running == 0:
                self._idle.set()

    async def wait_for_completion(self) -> None:
        """Wait until nothing is queued or running."""
        await self._idle.wait()

    def clear(self) -> int:
        """Reject every queued (not yet started) task. Returns how many."""
        cancelled = 0
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(TaskCancelledError())
                cancelled += 1
        if self._running == 0:
            self._idle.set()
        if cancelled:
            logger.debug(f"Cleared {cancelled} queued task(s)")
        return cancelled

    def status(self) -> dict[str, int]:
        return {
            "max_concurrency": self._max_concurrency,
            "running": self._running,
            "queued": len(self._queue),
            "total": self._running + len(self._queue),
        }

    def utilization(self) -> float:
        return self._running / self._max_concurrency


class AdaptiveConcurrencyController(ConcurrencyController):
    """Resizes its bound from process memory, sampled every `check_interval` seconds.

    Above the threshold the bound shrinks by 20% (floor 1); below half the
    threshold it grows by 20% (capped at 4 x CPU count).
    """

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        memory_threshold_bytes: int = 500 * 1024 * 1024,
        check_interval: float = 5.0,
        memory_reader: Optional[Callable[[], int]] = None,
    ):
        super().__init__(max_concurrency)
        self.memory_threshold_bytes = memory_threshold_bytes
        self.check_interval = check_interval
        self.max_limit = _cpu_count() * 4
        self._memory_reader = memory_reader or _process_rss
        self._monitor_task: Optional[asyncio.Task] = None

    def adjust(self) -> int:
        """Take one memory sample and resize the bound. Returns the new bound."""
        used = self._memory_reader()
        current = self.max_concurrency
        if used > self.memory_threshold_bytes:
            target = max(1, int(current * 0.8))
        elif used < self.memory_threshold_bytes / 2 and current < self.max_limit:
            target = min(self.max_limit, max(current + 1, int(current * 1.2)))
        else:
            target = current
        if target != current:
            logger.debug(
                f"[CONCURRENCY] {current} -> {target} (rss {used // (1024 * 1024)}MB)"
            )
            self.max_concurrency = target
        return self.max_concurrency

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            self.adjust()

    def start(self) -> None:
        if self._monitor_task is None:
            self._monitor_task = asyncio.ensure_future(self._monitor())

    async def stop(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None


def _process_rss() -> int:
    return psutil.Process().memory_info().rss
