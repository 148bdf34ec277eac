"""Tests for performance monitoring, stall detection and trends."""

import pytest

from artshelf.config import MonitoringConfig
from artshelf.monitor import (
    AlertRaised,
    AlertResolved,
    BlockingContinues,
    BlockingDetected,
    BlockingDetector,
    BlockingResolved,
    MetricsCollected,
    PerformanceMetrics,
    PerformanceMonitor,
    TrendAnalyzer,
)
from artshelf.progress import ProgressTracker
from artshelf.records import ScanPhase, ScanProgress


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def test_blocking_detector_detects_continues_and_resolves():
    """Test the detected -> continues -> resolved event sequence."""
    clock = FakeClock()
    events = []
    detector = BlockingDetector(events.append, threshold=5, clock=clock)

    clock.advance(3)
    assert detector.check() is False
    assert events == []

    clock.advance(3)
    assert detector.check() is True
    clock.advance(1)
    assert detector.check() is True
    detector.update_progress()

    assert [type(e) for e in events] == [BlockingDetected, BlockingContinues, BlockingResolved]
    assert events[0].duration == pytest.approx(6)
    assert events[2].duration == pytest.approx(7)
    assert detector.blocking is False
    assert detector.check() is False


def test_progress_resets_the_stall_timer():
    clock = FakeClock()
    events = []
    detector = BlockingDetector(events.append, threshold=5, clock=clock)
    for _ in range(5):
        clock.advance(4)
        detector.update_progress()
        detector.check()
    assert events == []


def test_monitor_raises_blocking_alert_from_detector():
    clock = FakeClock()
    monitor = PerformanceMonitor(MonitoringConfig(blocking_threshold=2), clock=clock)
    raised = []
    resolved = []
    monitor.subscribe(AlertRaised, raised.append)
    monitor.subscribe(AlertResolved, resolved.append)

    clock.advance(3)
    monitor.blocking_detector.check()
    assert "blocking" in monitor.alerts
    assert monitor.alerts["blocking"].severity == "critical"
    assert not monitor.is_healthy()

    monitor.update_progress()
    assert "blocking" not in monitor.alerts
    assert [e.alert.id for e in raised] == ["blocking"]
    assert [e.alert.id for e in resolved] == ["blocking"]


def test_alerts_are_deduplicated_and_resolved():
    """Test that one alert id stays one alert until its condition clears."""
    monitor = PerformanceMonitor(MonitoringConfig(), clock=FakeClock())
    raised = []
    monitor.subscribe(AlertRaised, raised.append)

    slow = PerformanceMetrics(db_average_query_ms=4000.0, batch_queue_length=1500)
    monitor.record(slow)
    monitor.record(slow)
    assert sorted(monitor.alerts) == ["database_slow", "queue_length"]
    assert len(raised) == 2

    monitor.record(PerformanceMetrics())
    assert monitor.alerts == {}
    assert monitor.is_healthy()


def test_memory_alert_severity():
    monitor = PerformanceMonitor(MonitoringConfig(), clock=FakeClock())
    monitor.record(PerformanceMetrics(memory_percent=90.0))
    assert monitor.alerts["memory"].severity == "warning"
    monitor.record(PerformanceMetrics(memory_percent=99.0))
    assert monitor.alerts["memory"].severity == "critical"


def test_unsubscribe_stops_delivery():
    monitor = PerformanceMonitor(MonitoringConfig(), clock=FakeClock())
    seen = []
    unsubscribe = monitor.subscribe(MetricsCollected, seen.append)
    monitor.record(PerformanceMetrics())
    unsubscribe()
    monitor.record(PerformanceMetrics())
    assert len(seen) == 1


def test_failing_observer_does_not_break_emit():
    monitor = PerformanceMonitor(MonitoringConfig(), clock=FakeClock())
    seen = []

    def broken(event):
        raise RuntimeError("observer bug")

    monitor.subscribe(MetricsCollected, broken)
    monitor.subscribe(MetricsCollected, seen.append)
    monitor.record(PerformanceMetrics())
    assert len(seen) == 1


def test_collect_metrics_reads_registered_tracker():
    clock = FakeClock()
    monitor = PerformanceMonitor(MonitoringConfig(), clock=clock)
    tracker = ProgressTracker(clock=clock)
    tracker.start()
    monitor.register(progress_tracker=tracker)

    tracker.update(ScanProgress(ScanPhase.SCANNING, "x", current=0, total=10))
    clock.advance(2)
    tracker.update(ScanProgress(ScanPhase.SCANNING, "x", current=4, total=10))

    metrics = monitor.sample()
    assert metrics.memory_rss > 0
    assert metrics.scanning_processed == 4
    assert metrics.scanning_total == 10
    assert metrics.scanning_rate == pytest.approx(2.0)
    assert monitor.latest is metrics


def _series(metric, values):
    return [PerformanceMetrics(**{metric: v}) for v in values]


def test_trend_needs_two_windows():
    trends = TrendAnalyzer()
    for m in _series("scanning_rate", [10.0] * 10):
        trends.add(m)
    assert trends.analyze() == []


def test_trend_directions():
    trends = TrendAnalyzer()
    history = [
        PerformanceMetrics(scanning_rate=10.0, memory_rss=100, db_average_query_ms=50.0)
        for _ in range(10)
    ] + [
        PerformanceMetrics(scanning_rate=20.0, memory_rss=200, db_average_query_ms=51.0)
        for _ in range(10)
    ]
    for m in history:
        trends.add(m)

    by_metric = {t.metric: t for t in trends.analyze()}
    assert by_metric["scanning_rate"].direction == "improving"
    assert by_metric["scanning_rate"].change_percent == 100.0
    assert by_metric["memory_rss"].direction == "degrading"
    assert by_metric["db_average_query_ms"].direction == "stable"
    assert by_metric["db_failure_rate"].direction == "stable"
    assert by_metric["scanning_rate"].confidence == 1.0


def test_history_is_bounded():
    trends = TrendAnalyzer(max_history=15)
    for m in _series("memory_rss", range(40)):
        trends.add(m)
    assert len(trends.history) == 15


def test_report_lists_degrading_trends_as_issues():
    monitor = PerformanceMonitor(MonitoringConfig(), clock=FakeClock())
    for value in [100] * 10 + [300] * 10:
        monitor.record(PerformanceMetrics(memory_rss=value))
    report = monitor.report()
    assert not report.is_healthy
    assert any("memory_rss degrading" in issue for issue in report.issues)
    assert report.metrics.memory_rss == 300


@pytest.mark.asyncio
async def test_monitor_start_and_stop():
    monitor = PerformanceMonitor(MonitoringConfig(interval=0.01))
    monitor.start()
    await monitor.stop()
    assert monitor.report().alerts == []
