"""Scan progress bookkeeping: phase, throughput and ETA."""

from __future__ import annotations

import time
from collections import deque
from typing import Any, Callable, Optional

from .records import ScanPhase, ScanProgress

# Seconds of history used for the scanning rate
RATE_WINDOW = 10.0


class ProgressTracker:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.phase = ScanPhase.COUNTING
        self.message = ""
        self.processed = 0
        self.total = 0
        self.percentage = 0.0
        self.batch_progress: Optional[dict[str, Any]] = None
        self._samples: deque[tuple[float, int]] = deque()
        self.started_at: Optional[float] = None
        self.stopped_at: Optional[float] = None

    def start(self) -> None:
        self.started_at = self._clock()
        self.stopped_at = None

    def stop(self) -> None:
        if self.started_at is not None and self.stopped_at is None:
            self.stopped_at = self._clock()

    @property
    def active(self) -> bool:
        return self.started_at is not None and self.stopped_at is None

    def update(self, progress: ScanProgress) -> None:
        self.phase = progress.phase
        self.message = progress.message
        self.percentage = progress.percentage
        if progress.total is not None:
            self.total = progress.total
        if progress.current is not None:
            self.update_scanning(progress.current, self.total)

    def update_scanning(self, processed: int, total: int) -> None:
        now = self._clock()
        self.processed = processed
        self.total = total
        self._samples.append((now, processed))
        while self._samples and now - self._samples[0][0] > RATE_WINDOW:
            self._samples.popleft()

    def update_batching(self, batch_progress: dict[str, Any]) -> None:
        self.batch_progress = batch_progress

    @property
    def rate(self) -> float:
        """Items per second over the recent window."""
        if len(self._samples) < 2:
            return 0.0
        (t0, n0), (t1, n1) = self._samples[0], self._samples[-1]
        if t1 <= t0:
            return 0.0
        return max(0.0, (n1 - n0) / (t1 - t0))

    @property
    def eta_seconds(self) -> Optional[float]:
        rate = self.rate
        if rate <= 0 or self.total <= self.processed:
            return None
        return (self.total - self.processed) / rate

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.stopped_at if self.stopped_at is not None else self._clock()
        return end - self.started_at

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "processed": self.processed,
            "total": self.total,
            "percentage": self.percentage,
            "rate": round(self.rate, 2),
            "eta_seconds": self.eta_seconds,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "batching": self.batch_progress,
        }
