"""Uniform envelope for storage calls.

Every call made through DatabaseOptimizer.execute_optimized takes a slot
from a bounded connection pool, runs under a timeout and is retried with
linear backoff. Large inserts are coalesced by TransactionBatchManager
into a single transaction. Rolling statistics feed a health
classification used by the performance monitor.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Type, TypeVar

from sqlmodel import SQLModel

from .config import DatabaseConfig
from .errors import DatabaseOperationError, ScanError
from .logging_config import get_logger
from .repository import Repository

logger = get_logger(__name__)

T = TypeVar("T")

# Inserts above this many rows go through the transaction batch manager
TRANSACTION_THRESHOLD = 50
# Payloads above this many rows are split into PAGE_SIZE chunks
PAGINATE_THRESHOLD = 1000
PAGE_SIZE = 500
LATENCY_WINDOW = 100


class ConnectionPoolManager:
    """Counting semaphore that tracks active and waiting callers."""

    def __init__(self, max_connections: int = 10):
        if max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        self.max_connections = max_connections
        self._semaphore = asyncio.Semaphore(max_connections)
        self.active = 0
        self.waiting = 0

    async def acquire(self) -> None:
        self.waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.waiting -= 1
        self.active += 1

    def release(self) -> None:
        self.active -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    @property
    def utilization(self) -> float:
        """Active connections as a percentage of the pool."""
        return self.active / self.max_connections * 100


@dataclasses.dataclass
class HealthStatus:
    status: str
    issues: list[str]
    recommendations: list[str]


@dataclasses.dataclass
class _PendingOperation:
    model: Type[SQLModel]
    rows: list[dict[str, Any]]
    future: asyncio.Future


class TransactionBatchManager:
    """Coalesces queued inserts and commits them in one transaction.

    A batch is committed when the queued row count reaches max_batch_size
    or batch_timeout seconds after the first operation was queued. Each
    caller awaits a future that resolves with its own inserted row count.
    """

    def __init__(
        self,
        optimizer: "DatabaseOptimizer",
        max_batch_size: int = 1000,
        batch_timeout: float = 5.0,
    ):
        self.optimizer = optimizer
        self.max_batch_size = max_batch_size
        self.batch_timeout = batch_timeout
        self._pending: list[_PendingOperation] = []
        self._pending_rows = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flushes: set[asyncio.Task] = set()

    @property
    def pending_rows(self) -> int:
        return self._pending_rows

    def add(self, model: Type[SQLModel], rows: list[dict[str, Any]]) -> "asyncio.Future[int]":
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending.append(_PendingOperation(model, rows, future))
        self._pending_rows += len(rows)

        if self._pending_rows >= self.max_batch_size:
            self._schedule_flush()
        elif self._timer is None:
            self._timer = loop.call_later(self.batch_timeout, self._schedule_flush)
        return future

    def _schedule_flush(self) -> None:
        task = asyncio.ensure_future(self.flush())
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def flush(self) -> int:
        """Commit everything queued so far. Returns the number of rows inserted."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        operations, self._pending = self._pending, []
        self._pending_rows = 0
        if not operations:
            return 0

        async def _commit() -> list[int]:
            counts = []
            async with self.optimizer.repository.transaction() as tx:
                for op in operations:
                    counts.append(await tx.create_many(op.model, op.rows))
            return counts

        try:
            counts = await self.optimizer.execute_optimized(
                _commit, f"transaction_batch({len(operations)} ops)"
            )
        except Exception as exc:
            for op in operations:
                if not op.future.done():
                    op.future.set_exception(exc)
            return 0

        self.optimizer.transaction_count += 1
        for op, count in zip(operations, counts):
            if not op.future.done():
                op.future.set_result(count)
        return sum(counts)

    async def close(self) -> None:
        await self.flush()
        if self._flushes:
            await asyncio.gather(*self._flushes, return_exceptions=True)


class DatabaseOptimizer:
    def __init__(
        self,
        repository: Repository,
        pool_size: int = 10,
        query_timeout: float = 30.0,
        batch_timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        max_batch_size: int = 1000,
    ):
        self.repository = repository
        self.pool = ConnectionPoolManager(pool_size)
        self.query_timeout = query_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.batch_manager = TransactionBatchManager(
            self, max_batch_size=max_batch_size, batch_timeout=batch_timeout
        )

        self.total_queries = 0
        self.successful_queries = 0
        self.failed_queries = 0
        self.transaction_count = 0
        self.batch_operations = 0
        self._latencies: deque[float] = deque(maxlen=LATENCY_WINDOW)

    @classmethod
    def from_config(
        cls, repository: Repository, db: DatabaseConfig, default_pool_size: int = 10
    ) -> "DatabaseOptimizer":
        """Build an optimizer from the [database] section. pool_size 0 uses default_pool_size."""
        return cls(
            repository,
            pool_size=db.pool_size or default_pool_size,
            query_timeout=db.query_timeout,
            batch_timeout=db.batch_timeout,
            retry_attempts=db.retry_attempts,
            retry_delay=db.retry_delay,
        )

    async def execute_optimized(self, fn: Callable[[], Awaitable[T]], name: str) -> T:
        """Run fn under a pool slot and timeout, retrying failures with backoff.

        Pipeline errors (ScanError) are not retried. Anything else is retried
        until retry_attempts is used up, then wrapped in DatabaseOperationError.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.retry_attempts + 1):
            started = time.perf_counter()
            async with self.pool.slot():
                try:
                    result = await asyncio.wait_for(fn(), timeout=self.query_timeout)
                except ScanError:
                    self._record(started, ok=False)
                    raise
                except asyncio.TimeoutError:
                    self._record(started, ok=False)
                    last_error = TimeoutError(f"timed out after {self.query_timeout}s")
                except Exception as exc:
                    self._record(started, ok=False)
                    last_error = exc
                else:
                    self._record(started, ok=True)
                    return result

            if attempt < self.retry_attempts:
                logger.warning(
                    f"[DB] {name} attempt {attempt}/{self.retry_attempts} failed: "
                    f"{last_error}; retrying"
                )
                await asyncio.sleep(self.retry_delay * attempt)

        logger.error(f"✗ [DB] {name} failed: {last_error}")
        raise DatabaseOperationError(name, str(last_error), self.retry_attempts) from last_error

    def _record(self, started: float, ok: bool) -> None:
        self.total_queries += 1
        if ok:
            self.successful_queries += 1
        else:
            self.failed_queries += 1
        self._latencies.append((time.perf_counter() - started) * 1000)

    async def batch_create(self, model: Type[SQLModel], rows: list[dict[str, Any]]) -> int:
        """Insert rows skipping duplicates; returns the inserted count."""
        if not rows:
            return 0
        self.batch_operations += 1
        if len(rows) > TRANSACTION_THRESHOLD:
            return await self.batch_manager.add(model, rows)
        return await self.execute_optimized(
            lambda: self.repository.create_many(model, rows),
            f"create_many({model.__tablename__}, {len(rows)})",
        )

    async def batch_create_and_return(
        self,
        model: Type[SQLModel],
        rows: list[dict[str, Any]],
        returning: Optional[tuple[str, ...]] = None,
    ) -> list[dict[str, Any]]:
        """Insert rows skipping duplicates; returns the inserted rows."""
        if not rows:
            return []
        self.batch_operations += 1
        pages = (
            [rows[i:i + PAGE_SIZE] for i in range(0, len(rows), PAGE_SIZE)]
            if len(rows) > PAGINATE_THRESHOLD
            else [rows]
        )
        inserted: list[dict[str, Any]] = []
        for page in pages:
            inserted.extend(
                await self.execute_optimized(
                    lambda page=page: self.repository.create_many_and_return(
                        model, page, returning=returning
                    ),
                    f"create_many_and_return({model.__tablename__}, {len(page)})",
                )
            )
        return inserted

    @property
    def average_query_time_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    @property
    def failure_rate(self) -> float:
        """Failed attempts as a percentage of all attempts."""
        if not self.total_queries:
            return 0.0
        return self.failed_queries / self.total_queries * 100

    def stats(self) -> dict[str, Any]:
        return {
            "total_queries": self.total_queries,
            "successful_queries": self.successful_queries,
            "failed_queries": self.failed_queries,
            "failure_rate": round(self.failure_rate, 2),
            "average_query_time_ms": round(self.average_query_time_ms, 2),
            "connection_pool_usage": round(self.pool.utilization, 2),
            "active_connections": self.pool.active,
            "waiting_connections": self.pool.waiting,
            "transaction_count": self.transaction_count,
            "batch_operations": self.batch_operations,
            "pending_transaction_rows": self.batch_manager.pending_rows,
        }

    def health(self) -> HealthStatus:
        issues: list[str] = []
        recommendations: list[str] = []
        level = 0

        failure_rate = self.failure_rate
        if failure_rate > 10:
            level = 2
            issues.append(f"high failure rate: {failure_rate:.1f}%")
        elif failure_rate > 5:
            level = max(level, 1)
            issues.append(f"elevated failure rate: {failure_rate:.1f}%")
        if failure_rate > 5:
            recommendations.append("check database locks and disk health")

        latency = self.average_query_time_ms
        if latency > 5000:
            level = 2
            issues.append(f"very slow queries: {latency:.0f}ms average")
        elif latency > 2000:
            level = max(level, 1)
            issues.append(f"slow queries: {latency:.0f}ms average")
        if latency > 2000:
            recommendations.append("reduce micro-batch size or add indexes")

        usage = self.pool.utilization
        if usage > 90:
            level = 2
            issues.append(f"connection pool exhausted: {usage:.0f}% in use")
        elif usage > 75:
            level = max(level, 1)
            issues.append(f"connection pool busy: {usage:.0f}% in use")
        if usage > 75:
            recommendations.append("increase the connection pool size")

        status = ("healthy", "warning", "critical")[level]
        return HealthStatus(status, issues, recommendations)

    async def flush(self) -> int:
        return await self.batch_manager.flush()

    async def close(self) -> None:
        await self.batch_manager.close()
