"""Scan orchestration for artshelf.

ScanOrchestrator is the public entry point: it picks a strategy, validates
the options, wires progress tracking and performance monitoring around the
run and always tears them down, whatever the outcome.

Per-item problems end up in ScanResult.errors. Fatal problems (unsupported
strategy, invalid options, unreadable scan root) are recorded there too and
the run stops; only programmer errors propagate to the caller.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import ArtshelfConfig
from .database import get_engine, init_db
from .errors import ScanError, ScanValidationError, UnsupportedStrategyError
from .logging_config import get_logger
from .monitor import PerformanceMonitor, PerformanceReport
from .progress import ProgressTracker
from .records import ScanOptions, ScanPhase, ScanProgress, ScanResult
from .repository import Repository
from .strategies import STRATEGIES, ScanStrategy, ScanStrategyType

logger = get_logger(__name__)


class ScanOrchestrator:
    def __init__(
        self,
        config: ArtshelfConfig,
        engine: Optional[AsyncEngine] = None,
        repository: Optional[Repository] = None,
    ):
        self.config = config
        self.engine = engine or get_engine(config.database_path)
        self.repository = repository or Repository(self.engine, config.library_path)
        self.state = "idle"
        self.last_report: Optional[PerformanceReport] = None
        self.progress_tracker: Optional[ProgressTracker] = None
        self.monitor: Optional[PerformanceMonitor] = None
        self._cancelled = False

    def available_strategies(self) -> list[dict[str, str]]:
        return [
            {"type": kind.value, "name": cls.name, "description": cls.description}
            for kind, cls in STRATEGIES.items()
        ]

    def select_strategy(
        self,
        scan_type: Optional[str],
        monitor: Optional[PerformanceMonitor] = None,
    ) -> ScanStrategy:
        """Build the strategy for scan_type, or the configured default."""
        kind = ScanStrategyType.parse(scan_type or self.config.scanner.default_strategy)
        return STRATEGIES[kind](
            self.config, self.repository, monitor=monitor, is_cancelled=self.is_cancelled
        )

    def cancel(self) -> None:
        """Ask the running scan to stop at the next phase boundary."""
        if self.state == "running":
            logger.info("[SCAN] Cancellation requested")
        self._cancelled = True

    def is_cancelled(self) -> bool:
        return self._cancelled

    async def estimate(self, options: Optional[ScanOptions] = None) -> float:
        options = options or ScanOptions()
        strategy = self.select_strategy(options.scan_type)
        return await strategy.estimated_duration(options)

    def _new_monitor(self, options: ScanOptions) -> Optional[PerformanceMonitor]:
        if not self.config.monitoring.enabled:
            return None
        threshold = options.memory_threshold_bytes or self.config.scanner.memory_threshold_bytes
        return PerformanceMonitor(self.config.monitoring, memory_threshold_bytes=threshold)

    async def scan(self, options: Optional[ScanOptions] = None) -> ScanResult:
        options = options or ScanOptions()
        self._cancelled = False
        result = ScanResult()

        monitor = self._new_monitor(options)
        try:
            strategy = self.select_strategy(options.scan_type, monitor)
        except UnsupportedStrategyError as exc:
            logger.error(f"✗ {exc}")
            result.add_error(exc)
            self.state = "failed"
            return result.finish()
        self.state = "strategy-selected"

        problems = strategy.validate(options)
        if problems:
            for problem in problems:
                logger.error(f"✗ {problem}")
                result.add_error(ScanValidationError(problem))
            self.state = "failed"
            return result.finish()
        self.state = "validated"

        tracker = ProgressTracker()
        tracker.start()
        self.progress_tracker = tracker
        self.monitor = monitor
        if monitor is not None:
            monitor.register(progress_tracker=tracker)
            monitor.start()

        def _on_progress(progress: ScanProgress) -> None:
            tracker.update(progress)
            if monitor is not None:
                monitor.update_progress()
            if options.on_progress is not None:
                options.on_progress(progress)

        logger.info(f"[SCAN] Starting {strategy.name} scan")
        self.state = "running"
        try:
            result = await strategy.execute(dataclasses.replace(options, on_progress=_on_progress))
            self.state = "complete"
        except ScanError as exc:
            logger.error(f"✗ {strategy.name} scan aborted: {exc}")
            result.add_error(exc)
            self.state = "failed"
        except BaseException:
            self.state = "failed"
            raise
        finally:
            if monitor is not None:
                await monitor.stop()
                self.last_report = monitor.report()
            tracker.stop()
            self.state = f"cleaned-up ({self.state})"

        result.finish()
        _on_progress(
            ScanProgress(
                ScanPhase.COMPLETE,
                f"Scan finished: {result.new_artworks} new artworks, {len(result.errors)} errors",
                current=tracker.total,
                total=tracker.total,
                percentage=100.0,
            )
        )
        logger.info(
            f"✓ Scan completed in {result.processing_time_ms}ms: "
            f"{result.new_artworks} artworks, {result.new_images} images, "
            f"{result.skipped_artworks} skipped, {result.removed_artworks} removed, "
            f"{len(result.errors)} errors"
        )
        return result


async def scan_library(
    config: ArtshelfConfig,
    path: Optional[Path] = None,
    force: bool = False,
    scan_type: Optional[str] = None,
    engine: Optional[AsyncEngine] = None,
    **overrides,
) -> ScanResult:
    """Scan the library (or a subfolder of it) and sync it into the database.

    :param config: Loaded artshelf configuration.
    :param path: Optional subfolder to limit the scan.
    :param force: Re-ingest artworks that are already stored.
    :param scan_type: Strategy name; defaults to the configured one.
    :param overrides: Extra ScanOptions fields (max_concurrency, batch_size, ...).
    """
    engine = engine or get_engine(config.database_path)
    await init_db(engine)
    orchestrator = ScanOrchestrator(config, engine=engine)
    options = ScanOptions(
        scan_path=(path or config.library_path).expanduser().resolve(),
        force_update=force,
        scan_type=scan_type,
        **overrides,
    )
    return await orchestrator.scan(options)
