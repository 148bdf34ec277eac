"""Performance monitoring for scan runs.

PerformanceMonitor samples process and pipeline metrics on a fixed
interval, keeps a bounded history for trend analysis, raises and resolves
alerts, and detects stalls through BlockingDetector. Observers register
for typed events with `subscribe(EventType, handler)`.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import deque
from typing import Any, Callable, Optional, Type, TypeVar

import psutil

from .config import MonitoringConfig
from .logging_config import get_logger
from .records import ScanProgress

logger = get_logger(__name__)

E = TypeVar("E")


# Events

@dataclasses.dataclass(frozen=True)
class BlockingDetected:
    duration: float


@dataclasses.dataclass(frozen=True)
class BlockingContinues:
    duration: float


@dataclasses.dataclass(frozen=True)
class BlockingResolved:
    duration: float


@dataclasses.dataclass
class Alert:
    id: str
    severity: str
    message: str
    raised_at: float
    resolved_at: Optional[float] = None


@dataclasses.dataclass(frozen=True)
class AlertRaised:
    alert: Alert


@dataclasses.dataclass(frozen=True)
class AlertResolved:
    alert: Alert


@dataclasses.dataclass
class PerformanceMetrics:
    timestamp: float = 0.0
    memory_rss: int = 0
    memory_percent: float = 0.0
    system_memory_percent: float = 0.0
    cpu_user: float = 0.0
    cpu_system: float = 0.0
    scanning_rate: float = 0.0
    scanning_processed: int = 0
    scanning_total: int = 0
    batch_queue_length: int = 0
    batch_running: int = 0
    batch_failure_rate: float = 0.0
    db_average_query_ms: float = 0.0
    db_failure_rate: float = 0.0
    db_pool_usage: float = 0.0
    db_health: str = "healthy"
    concurrency_running: int = 0
    concurrency_queued: int = 0
    concurrency_utilization: float = 0.0


@dataclasses.dataclass(frozen=True)
class MetricsCollected:
    metrics: PerformanceMetrics


@dataclasses.dataclass
class PerformanceTrend:
    metric: str
    direction: str
    change_percent: float
    confidence: float


@dataclasses.dataclass
class PerformanceReport:
    metrics: Optional[PerformanceMetrics]
    trends: list[PerformanceTrend]
    alerts: list[Alert]
    is_healthy: bool
    issues: list[str]
    recommendations: list[str]


class BlockingDetector:
    """Flags a stall when no progress update arrives within `threshold` seconds."""

    def __init__(
        self,
        emit: Callable[[Any], None],
        threshold: float = 5.0,
        check_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.emit = emit
        self.threshold = threshold
        self.check_interval = check_interval
        self._clock = clock
        self.last_progress = clock()
        self.blocking = False
        self._task: Optional[asyncio.Task] = None

    def update_progress(self) -> None:
        now = self._clock()
        if self.blocking:
            self.blocking = False
            self.emit(BlockingResolved(now - self.last_progress))
        self.last_progress = now

    def check(self) -> bool:
        """Run one check; returns whether the scan is currently blocked."""
        stalled_for = self._clock() - self.last_progress
        if stalled_for <= self.threshold:
            return self.blocking
        if not self.blocking:
            self.blocking = True
            self.emit(BlockingDetected(stalled_for))
        else:
            self.emit(BlockingContinues(stalled_for))
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            self.check()

    def start(self) -> None:
        self.last_progress = self._clock()
        self.blocking = False
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class TrendAnalyzer:
    """Compares the last 10 samples of each metric against the 10 before."""

    WINDOW = 10
    # metric -> True when a higher value is better
    TRACKED = {
        "scanning_rate": True,
        "memory_rss": False,
        "db_average_query_ms": False,
        "db_failure_rate": False,
        "batch_queue_length": False,
    }
    STABLE_BAND = 5.0

    def __init__(self, max_history: int = 1000):
        self.history: deque[PerformanceMetrics] = deque(maxlen=max_history)

    def add(self, metrics: PerformanceMetrics) -> None:
        self.history.append(metrics)

    def analyze(self) -> list[PerformanceTrend]:
        if len(self.history) < self.WINDOW:
            return []
        samples = list(self.history)
        recent = samples[-self.WINDOW:]
        older = samples[-2 * self.WINDOW:-self.WINDOW]
        if not older:
            return []
        confidence = min(len(samples) / (2 * self.WINDOW), 1.0)

        trends = []
        for metric, higher_is_better in self.TRACKED.items():
            recent_mean = sum(getattr(m, metric) for m in recent) / len(recent)
            older_mean = sum(getattr(m, metric) for m in older) / len(older)
            if older_mean == 0:
                change = 0.0 if recent_mean == 0 else 100.0
            else:
                change = (recent_mean - older_mean) / abs(older_mean) * 100

            if abs(change) < self.STABLE_BAND:
                direction = "stable"
            elif (change > 0) == higher_is_better:
                direction = "improving"
            else:
                direction = "degrading"
            trends.append(PerformanceTrend(metric, direction, round(change, 2), confidence))
        return trends


class PerformanceMonitor:
    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        memory_threshold_bytes: int = 500 * 1024 * 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or MonitoringConfig()
        self.memory_threshold_bytes = memory_threshold_bytes
        self._clock = clock
        self._subscribers: dict[type, list[Callable[[Any], None]]] = {}
        self.blocking_detector = BlockingDetector(
            self._emit, threshold=self.config.blocking_threshold, clock=clock
        )
        self.trends = TrendAnalyzer(self.config.max_history)
        self.alerts: dict[str, Alert] = {}
        self.latest: Optional[PerformanceMetrics] = None
        self._process = psutil.Process()
        self._task: Optional[asyncio.Task] = None

        self.progress_tracker = None
        self.processor = None
        self.optimizer = None
        self.controller = None

        self.subscribe(BlockingDetected, self._on_blocking_detected)
        self.subscribe(BlockingResolved, self._on_blocking_resolved)

    # Observers

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register handler for event_type. Returns a function that unregisters it."""
        handlers = self._subscribers.setdefault(event_type, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def _emit(self, event: Any) -> None:
        for handler in list(self._subscribers.get(type(event), ())):
            try:
                handler(event)
            except Exception as exc:
                logger.error(f"[MONITOR] {type(event).__name__} handler failed: {exc}")

    # Components

    def register(self, progress_tracker=None, processor=None, optimizer=None, controller=None) -> None:
        """Attach the pipeline components whose state is sampled."""
        if progress_tracker is not None:
            self.progress_tracker = progress_tracker
        if processor is not None:
            self.processor = processor
        if optimizer is not None:
            self.optimizer = optimizer
        if controller is not None:
            self.controller = controller

    def update_progress(self, progress: Optional[ScanProgress] = None) -> None:
        self.blocking_detector.update_progress()
        if progress is not None and self.progress_tracker is not None:
            self.progress_tracker.update(progress)

    # Sampling

    def collect_metrics(self) -> PerformanceMetrics:
        memory = self._process.memory_info()
        cpu = self._process.cpu_times()
        metrics = PerformanceMetrics(
            timestamp=self._clock(),
            memory_rss=memory.rss,
            memory_percent=memory.rss / self.memory_threshold_bytes * 100,
            system_memory_percent=psutil.virtual_memory().percent,
            cpu_user=cpu.user,
            cpu_system=cpu.system,
        )

        if self.progress_tracker is not None:
            metrics.scanning_rate = self.progress_tracker.rate
            metrics.scanning_processed = self.progress_tracker.processed
            metrics.scanning_total = self.progress_tracker.total

        if self.processor is not None:
            queue = self.processor.flush_queue.status()
            metrics.batch_queue_length = queue["queued"] + queue["pending_retries"]
            metrics.batch_running = queue["running"]
            finished = queue["completed"] + queue["failed"]
            metrics.batch_failure_rate = queue["failed"] / finished * 100 if finished else 0.0
            if self.progress_tracker is not None:
                self.progress_tracker.update_batching(self.processor.progress())

        if self.optimizer is not None:
            metrics.db_average_query_ms = self.optimizer.average_query_time_ms
            metrics.db_failure_rate = self.optimizer.failure_rate
            metrics.db_pool_usage = self.optimizer.pool.utilization
            metrics.db_health = self.optimizer.health().status

        if self.controller is not None:
            status = self.controller.status()
            metrics.concurrency_running = status["running"]
            metrics.concurrency_queued = status["queued"]
            metrics.concurrency_utilization = self.controller.utilization() * 100

        return metrics

    def record(self, metrics: PerformanceMetrics) -> None:
        """Store a sample, update alerts and notify observers."""
        self.latest = metrics
        self.trends.add(metrics)
        self.evaluate_alerts(metrics)
        self._emit(MetricsCollected(metrics))

    def sample(self) -> PerformanceMetrics:
        metrics = self.collect_metrics()
        self.record(metrics)
        return metrics

    # Alerts

    def raise_alert(self, alert_id: str, severity: str, message: str) -> Optional[Alert]:
        """Raise an alert once; repeated raises only refresh severity and message."""
        current = self.alerts.get(alert_id)
        if current is not None:
            current.severity = severity
            current.message = message
            return None
        alert = Alert(alert_id, severity, message, self._clock())
        self.alerts[alert_id] = alert
        logger.warning(f"[MONITOR] {severity.upper()} {alert_id}: {message}")
        self._emit(AlertRaised(alert))
        return alert

    def resolve_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self.alerts.pop(alert_id, None)
        if alert is None:
            return None
        alert.resolved_at = self._clock()
        logger.info(f"[MONITOR] Resolved {alert_id}")
        self._emit(AlertResolved(alert))
        return alert

    def _check(self, alert_id: str, condition: bool, severity: str, message: str) -> None:
        if condition:
            self.raise_alert(alert_id, severity, message)
        else:
            self.resolve_alert(alert_id)

    def evaluate_alerts(self, metrics: PerformanceMetrics) -> None:
        cfg = self.config
        self._check(
            "memory",
            metrics.memory_percent > cfg.memory_usage_percent,
            "critical" if metrics.memory_percent > 95 else "warning",
            f"memory at {metrics.memory_percent:.1f}% of threshold",
        )
        self._check(
            "database_slow",
            metrics.db_average_query_ms > cfg.average_query_ms,
            "warning",
            f"average query time {metrics.db_average_query_ms:.0f}ms",
        )
        self._check(
            "database_failures",
            metrics.db_failure_rate > cfg.failure_rate_percent,
            "warning",
            f"database failure rate {metrics.db_failure_rate:.1f}%",
        )
        self._check(
            "pool_usage",
            metrics.db_pool_usage > cfg.pool_usage_percent,
            "warning",
            f"connection pool at {metrics.db_pool_usage:.0f}%",
        )
        self._check(
            "queue_length",
            metrics.batch_queue_length > cfg.queue_length,
            "warning",
            f"{metrics.batch_queue_length} batches waiting to flush",
        )

    def _on_blocking_detected(self, event: BlockingDetected) -> None:
        self.raise_alert("blocking", "critical", f"no progress for {event.duration:.1f}s")

    def _on_blocking_resolved(self, event: BlockingResolved) -> None:
        self.resolve_alert("blocking")

    # Reporting

    def recommendations(self, metrics: Optional[PerformanceMetrics] = None) -> list[str]:
        metrics = metrics or self.latest
        if metrics is None:
            return []
        advice = []
        if metrics.batch_queue_length > 500:
            advice.append("increase max_concurrent_flushes to drain the flush queue")
        if metrics.db_average_query_ms > 1000:
            advice.append("optimize database writes (smaller batches, fewer indexes)")
        if metrics.memory_percent > self.config.memory_usage_percent:
            advice.append("lower max_concurrency or stream_buffer_size to reduce memory")
        if self.optimizer is not None:
            advice.extend(self.optimizer.health().recommendations)
        return advice

    def is_healthy(self) -> bool:
        if self.alerts:
            return False
        return not any(
            t.direction == "degrading" and t.confidence > 0.7 for t in self.trends.analyze()
        )

    def report(self) -> PerformanceReport:
        trends = self.trends.analyze()
        issues = [f"{a.id}: {a.message}" for a in self.alerts.values()]
        issues += [
            f"{t.metric} degrading ({t.change_percent:+.1f}%)"
            for t in trends
            if t.direction == "degrading" and t.confidence > 0.7
        ]
        return PerformanceReport(
            metrics=self.latest,
            trends=trends,
            alerts=list(self.alerts.values()),
            is_healthy=self.is_healthy(),
            issues=issues,
            recommendations=self.recommendations(),
        )

    # Lifecycle

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.config.interval)
            try:
                self.sample()
            except psutil.Error as exc:
                logger.warning(f"[MONITOR] Sampling failed: {exc}")

    def start(self) -> None:
        if self._task is not None:
            return
        self.blocking_detector.start()
        self._task = asyncio.ensure_future(self._run())
        logger.debug(f"[MONITOR] Sampling every {self.config.interval}s")

    async def stop(self) -> None:
        await self.blocking_detector.stop()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
