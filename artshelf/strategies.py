"""Scan strategies.

Each strategy composes discovery, parsing/association and batch ingestion
for one scope:

- metadata: artists, artworks and tags from `{id}-meta.txt` files
- media:    image rows for artworks already in the database
- full:     metadata then media, reported on one 0-100% scale
- unified:  one pass per directory staging everything at once

A strategy builds a fresh ScanContext for every run; all per-run state
(entity mapping, buffers, counters, seen ids) lives there.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
from enum import Enum
from pathlib import Path
from typing import Any, Callable, NamedTuple, Optional, Union

from .batching import BatchResult, StreamingBatchProcessor
from .concurrency import AdaptiveConcurrencyController, ConcurrencyController
from .config import ArtshelfConfig
from .db_optimizer import DatabaseOptimizer
from .errors import DuplicateArtworkError, ScanError, UnsupportedStrategyError
from .logging_config import get_logger
from .media import ArtworkDirectory, MediaFile, collect_media, discover_artwork_directories
from .metadata import ArtworkMetadata, read_metadata_file
from .models import Artwork
from .monitor import PerformanceMonitor
from .path_utils import UNKNOWN_ARTIST, parse_artwork_path, to_absolute, to_relative
from .records import (
    ArtistRecord,
    ArtworkRecord,
    ArtworkTagRecord,
    ImageRecord,
    ProgressCallback,
    ScanOptions,
    ScanPhase,
    ScanProgress,
    ScanResult,
    TagRecord,
)
from .repository import Repository

logger = get_logger(__name__)


class ScanStrategyType(str, Enum):
    METADATA = "metadata"
    MEDIA = "media"
    FULL = "full"
    UNIFIED = "unified"

    @classmethod
    def parse(cls, value: Union[str, "ScanStrategyType"]) -> "ScanStrategyType":
        try:
            return cls(value.lower() if isinstance(value, str) else value)
        except ValueError:
            raise UnsupportedStrategyError(str(value)) from None


@dataclasses.dataclass
class ScanSettings:
    """Config values merged with one run's options."""

    scan_path: Path
    library_root: Path
    force_update: bool
    max_concurrency: int
    batch_size: int
    stream_buffer_size: int
    memory_threshold_bytes: int
    adaptive_concurrency: bool
    max_concurrent_flushes: int
    flush_retry_delay: float
    progress_interval: float
    max_depth: int
    ignore_patterns: tuple[str, ...]
    pool_size: int
    query_timeout: float
    batch_timeout: float
    retry_attempts: int
    retry_delay: float

    @classmethod
    def resolve(cls, config: ArtshelfConfig, options: ScanOptions) -> "ScanSettings":
        scanner = config.scanner
        db = config.database
        scan_path = Path(options.scan_path) if options.scan_path else config.library_path
        return cls(
            scan_path=scan_path,
            library_root=config.library_path,
            force_update=options.force_update,
            max_concurrency=options.max_concurrency or scanner.max_concurrency,
            batch_size=options.batch_size or scanner.micro_batch_size,
            stream_buffer_size=options.stream_buffer_size or scanner.stream_buffer_size,
            memory_threshold_bytes=(
                options.memory_threshold_bytes or scanner.memory_threshold_bytes
            ),
            adaptive_concurrency=scanner.adaptive_concurrency,
            max_concurrent_flushes=scanner.max_concurrent_flushes,
            flush_retry_delay=scanner.flush_retry_delay,
            progress_interval=scanner.progress_interval,
            max_depth=scanner.max_depth,
            ignore_patterns=tuple(scanner.ignore_patterns),
            pool_size=db.pool_size or scanner.max_concurrent_flushes * 2,
            query_timeout=db.query_timeout,
            batch_timeout=db.batch_timeout,
            retry_attempts=db.retry_attempts,
            retry_delay=db.retry_delay,
        )


class MetadataEntry(NamedTuple):
    artwork_id: str
    path: Path
    directory: ArtworkDirectory


@dataclasses.dataclass
class ScanContext:
    """Everything one strategy run shares between its stages."""

    settings: ScanSettings
    repository: Repository
    optimizer: DatabaseOptimizer
    processor: StreamingBatchProcessor
    controller: ConcurrencyController
    result: ScanResult
    on_progress: Optional[ProgressCallback] = None
    monitor: Optional[PerformanceMonitor] = None
    is_cancelled: Callable[[], bool] = lambda: False
    total: int = 0
    done: int = 0
    _last_flushed: int = -1

    def emit(
        self,
        phase: ScanPhase,
        message: str,
        percentage: float,
        current: Optional[int] = None,
        total: Optional[int] = None,
    ) -> None:
        if self.on_progress is None:
            return
        progress = ScanProgress(phase, message, current, total, round(min(percentage, 100.0), 2))
        try:
            self.on_progress(progress)
        except Exception as exc:
            logger.error(f"Progress callback failed: {exc}")

    def item_done(self, start: float = 10.0, span: float = 70.0) -> None:
        self.done += 1
        pct = start + span * (self.done / self.total if self.total else 1.0)
        self.emit(
            ScanPhase.SCANNING,
            f"Processed {self.done}/{self.total}",
            pct,
            current=self.done,
            total=self.total,
        )

    def on_batch_progress(self, progress: dict[str, Any]) -> None:
        flushed = sum(e["processed"] for e in progress["entities"].values())
        if self.monitor is None or flushed == self._last_flushed:
            return
        self._last_flushed = flushed
        self.monitor.update_progress()
        if self.monitor.progress_tracker is not None:
            self.monitor.progress_tracker.update_batching(progress)

    def record_error(self, error: Exception | str) -> None:
        self.result.add_error(error)

    def apply_batch(self, batch: BatchResult) -> None:
        self.result.new_artists += batch.created["artists"]
        self.result.new_artworks += batch.created["artworks"]
        self.result.new_images += batch.created["images"]
        self.result.new_tags += batch.created["tags"]
        self.result.updated_artworks += batch.updated["artworks"]
        self.result.errors.extend(batch.errors)

    async def close(self) -> None:
        if not self.processor.finalized:
            # in-flight flushes always run to completion
            self.apply_batch(await self.processor.finalize())
        if isinstance(self.controller, AdaptiveConcurrencyController):
            await self.controller.stop()


# Shared stages

def dedupe_metadata(
    directories: list[ArtworkDirectory],
    result: Optional[ScanResult] = None,
) -> list[MetadataEntry]:
    """Keep the first metadata file per artwork id in sorted path order.

    Every extra file claiming a taken id is recorded as a duplicate error.
    """
    entries = sorted(
        (MetadataEntry(artwork_id, path, directory)
         for directory in directories
         for artwork_id, path in directory.metadata),
        key=lambda e: str(e.path),
    )
    kept: dict[str, MetadataEntry] = {}
    for entry in entries:
        first = kept.get(entry.artwork_id)
        if first is None:
            kept[entry.artwork_id] = entry
            continue
        error = DuplicateArtworkError(entry.artwork_id, first.path, entry.path)
        logger.warning(f"✗ {error}")
        if result is not None:
            result.add_error(error)
    return list(kept.values())


def group_by_directory(entries: list[MetadataEntry]) -> list[tuple[ArtworkDirectory, list[MetadataEntry]]]:
    groups: dict[Path, tuple[ArtworkDirectory, list[MetadataEntry]]] = {}
    for entry in entries:
        groups.setdefault(entry.directory.path, (entry.directory, []))[1].append(entry)
    return list(groups.values())


def stage_artwork(
    ctx: ScanContext,
    entry: MetadataEntry,
    meta: ArtworkMetadata,
    media: Optional[list[MediaFile]] = None,
) -> None:
    """Stage the artist, artwork, tags and (optionally) images of one artwork."""
    settings = ctx.settings
    artist_name = meta.user
    if not artist_name:
        hints = parse_artwork_path(entry.directory.path, settings.library_root.resolve())
        artist_name = hints.artist.name if hints.artist else UNKNOWN_ARTIST

    processor = ctx.processor
    processor.add_artist(
        ArtistRecord(name=artist_name, username=meta.user, user_id=meta.user_id)
    )
    processor.add_artwork(
        ArtworkRecord(
            external_id=entry.artwork_id,
            title=meta.title,
            artist_name=artist_name,
            artist_user_id=meta.user_id,
            description=meta.description,
            source_url=meta.url,
            original_url=meta.original,
            thumbnail_url=meta.thumbnail,
            x_restrict=meta.x_restrict,
            is_ai_generated=meta.ai,
            size=meta.size,
            bookmark_count=meta.bookmark,
            source_date=meta.date,
            image_count=len(media) if media else 0,
            directory_created_at=entry.directory.created_at,
        )
    )
    for tag in meta.tags:
        processor.add_tag(TagRecord(name=tag))
        processor.add_artwork_tag(ArtworkTagRecord(artwork_external_id=entry.artwork_id, tag_name=tag))
    for media_file in media or ():
        stage_image(ctx, entry.artwork_id, media_file)


def stage_image(ctx: ScanContext, artwork_id: str, media_file: MediaFile) -> None:
    ctx.processor.add_image(
        ImageRecord(
            artwork_external_id=artwork_id,
            path=to_relative(media_file.path.resolve(), ctx.settings.library_root.resolve()),
            sort_order=media_file.page,
            size=media_file.size,
        )
    )


async def run_chunked(ctx: ScanContext, tasks: list[Callable[[], Any]]) -> None:
    """Run tasks through the controller, at most stream_buffer_size at a time.

    Failures are recorded; they never stop the remaining tasks.
    """
    size = max(1, ctx.settings.stream_buffer_size)
    for start in range(0, len(tasks), size):
        outcomes = await ctx.controller.execute_all_settled(tasks[start:start + size])
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error(f"✗ {outcome}")
                ctx.record_error(outcome)


async def cleanup_library(
    repo: Repository,
    settings: ScanSettings,
    on_progress: Optional[ProgressCallback] = None,
) -> int:
    """Drop rows for vanished files and entities left without children.

    Returns the number of artworks removed.
    """
    if on_progress is not None:
        on_progress(ScanProgress(ScanPhase.CLEANUP, "Removing stale records", percentage=95.0))

    root = settings.library_root.resolve()
    images = await repo.images_under(settings.scan_path)

    def _missing() -> list[dict[str, Any]]:
        return [img for img in images if not to_absolute(img["path"], root).exists()]

    missing = await asyncio.to_thread(_missing)
    if missing:
        await repo.delete_images(img["id"] for img in missing)
        await repo.refresh_image_counts({img["artwork_id"] for img in missing})
        logger.info(f"[-] Removed {len(missing)} missing image(s)")

    stale = await repo.artworks_without_images()
    removed = await repo.delete_artworks(stale) if stale else 0
    artists = await repo.delete_orphan_artists()
    tags = await repo.delete_orphan_tags()
    if removed or artists or tags:
        logger.info(f"[-] Removed {removed} artworks, {artists} artists, {tags} tags")
    return removed


# Strategies

class ScanStrategy(abc.ABC):
    type: ScanStrategyType
    name: str
    description: str
    # Rough seconds per metadata file, used for estimates
    cost_per_item: float = 0.01

    def __init__(
        self,
        config: ArtshelfConfig,
        repository: Repository,
        monitor: Optional[PerformanceMonitor] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ):
        self.config = config
        self.repository = repository
        self.monitor = monitor
        self.is_cancelled = is_cancelled or (lambda: False)

    def validate(self, options: ScanOptions) -> list[str]:
        """Return problems with options; an empty list means they are usable."""
        settings = ScanSettings.resolve(self.config, options)
        problems = []
        if not str(settings.scan_path):
            problems.append("scan path is required")
        elif not settings.scan_path.is_absolute():
            problems.append(f"scan path must be absolute: {settings.scan_path}")
        if settings.batch_size < 1:
            problems.append("batch size must be >= 1")
        if settings.stream_buffer_size < 1:
            problems.append("stream buffer size must be >= 1")
        return problems

    async def estimated_duration(self, options: ScanOptions) -> float:
        """Estimated run time in seconds from the number of metadata files."""
        settings = ScanSettings.resolve(self.config, options)
        directories, _ = await discover_artwork_directories(
            settings.scan_path, settings.ignore_patterns, settings.max_depth
        )
        files = sum(len(d.metadata) for d in directories)
        concurrency = max(1, min(settings.max_concurrency, 8))
        return round(files * self.cost_per_item * 8 / concurrency, 2)

    def new_context(self, options: ScanOptions) -> ScanContext:
        settings = ScanSettings.resolve(self.config, options)
        if settings.adaptive_concurrency:
            controller: ConcurrencyController = AdaptiveConcurrencyController(
                settings.max_concurrency,
                memory_threshold_bytes=settings.memory_threshold_bytes,
            )
            controller.start()
        else:
            controller = ConcurrencyController(settings.max_concurrency)

        optimizer = DatabaseOptimizer(
            self.repository,
            pool_size=settings.pool_size,
            query_timeout=settings.query_timeout,
            batch_timeout=settings.batch_timeout,
            retry_attempts=settings.retry_attempts,
            retry_delay=settings.retry_delay,
        )
        ctx = ScanContext(
            settings=settings,
            repository=self.repository,
            optimizer=optimizer,
            processor=None,  # set below; needs the context's callback
            controller=controller,
            result=ScanResult(),
            on_progress=options.on_progress,
            monitor=self.monitor,
            is_cancelled=self.is_cancelled,
        )
        ctx.processor = StreamingBatchProcessor(
            self.repository,
            micro_batch_size=settings.batch_size,
            max_concurrent_flushes=settings.max_concurrent_flushes,
            flush_retry_delay=settings.flush_retry_delay,
            progress_interval=settings.progress_interval,
            optimizer=optimizer,
            on_progress=ctx.on_batch_progress,
        )
        if self.monitor is not None:
            self.monitor.register(
                processor=ctx.processor, optimizer=optimizer, controller=controller
            )
        return ctx

    async def discover(self, ctx: ScanContext, report_errors: bool = True) -> list[MetadataEntry]:
        """Find metadata files and drop duplicate ids.

        Duplicates and unreadable directories are recorded unless report_errors
        is False (a second pass over a tree another phase already reported).
        """
        settings = ctx.settings
        ctx.emit(ScanPhase.COUNTING, f"Discovering metadata files in {settings.scan_path}", 0.0)
        directories, walk_errors = await discover_artwork_directories(
            settings.scan_path, settings.ignore_patterns, settings.max_depth
        )
        if report_errors:
            for message in walk_errors:
                ctx.record_error(message)
        entries = dedupe_metadata(directories, ctx.result if report_errors else None)
        ctx.result.total_artworks = len(entries)
        ctx.emit(
            ScanPhase.COUNTING,
            f"Found {len(entries)} artworks in {len(directories)} directories",
            10.0,
            current=0,
            total=len(entries),
        )
        logger.info(f"[SCAN] {settings.scan_path} ({len(entries)} artworks)")
        return entries

    async def filter_existing(
        self,
        ctx: ScanContext,
        entries: list[MetadataEntry],
        with_images_only: bool = False,
        reingest_media: bool = True,
    ) -> list[MetadataEntry]:
        """Skip artworks already stored, or re-ingest them on force_update.

        With reingest_media the stored artworks are deleted with their images
        and staged again from scratch. Without it their rows are updated in
        place, only the tag links are rebuilt and images are kept.
        """
        ids = [e.artwork_id for e in entries]
        existing = await ctx.optimizer.execute_optimized(
            lambda: self.repository.artwork_ids_by_external_id(ids, with_images_only),
            "lookup_existing_artworks",
        )
        if not existing:
            return entries
        if ctx.settings.force_update and reingest_media:
            deleted = await self.repository.delete_artworks(existing.values())
            logger.info(f"[SCAN] Force update: re-ingesting {deleted} existing artworks")
            return entries
        if ctx.settings.force_update:
            await ctx.optimizer.execute_optimized(
                lambda: self.repository.delete_artwork_tags(existing.values()), "clear_artwork_tags"
            )
            ctx.processor.update_artworks(existing)
            logger.info(f"[SCAN] Force update: refreshing {len(existing)} existing artworks in place")
            return entries
        ctx.result.skipped_artworks += len(existing)
        return [e for e in entries if e.artwork_id not in existing]

    async def finalize(self, ctx: ScanContext) -> None:
        ctx.emit(ScanPhase.SCANNING, "Writing remaining batches", 85.0)
        ctx.apply_batch(await ctx.processor.finalize())

    def cancelled(self, ctx: ScanContext) -> bool:
        if self.is_cancelled():
            ctx.result.cancelled = True
            logger.info(f"[SCAN] {self.name} cancelled")
            return True
        return False

    @abc.abstractmethod
    async def execute(self, options: ScanOptions) -> ScanResult:
        raise NotImplementedError


class MetadataScanStrategy(ScanStrategy):
    type = ScanStrategyType.METADATA
    name = "metadata"
    description = "Parse metadata files into artists, artworks and tags"

    async def execute(self, options: ScanOptions) -> ScanResult:
        ctx = self.new_context(options)
        try:
            entries = await self.discover(ctx)
            entries = await self.filter_existing(ctx, entries, reingest_media=False)
            if self.cancelled(ctx):
                return ctx.result.finish()

            ctx.total = len(entries)

            async def _ingest(entry: MetadataEntry) -> None:
                try:
                    meta = await read_metadata_file(entry.path)
                    stage_artwork(ctx, entry, meta)
                finally:
                    ctx.item_done()

            await run_chunked(ctx, [lambda e=e: _ingest(e) for e in entries])
            await self.finalize(ctx)
        finally:
            await ctx.close()
        return ctx.result.finish()


class MediaScanStrategy(ScanStrategy):
    type = ScanStrategyType.MEDIA
    name = "media"
    description = "Attach media files to artworks already in the database"
    cost_per_item = 0.02

    async def execute(self, options: ScanOptions, report_duplicates: bool = True) -> ScanResult:
        ctx = self.new_context(options)
        try:
            artworks = await ctx.optimizer.execute_optimized(
                self.repository.artworks_with_external_ids, "load_artworks"
            )
            if not artworks:
                logger.info("[SCAN] No artworks in database; nothing to associate")
                return ctx.result.finish()
            ctx.processor.seed_artworks(artworks)

            entries = await self.discover(ctx, report_errors=report_duplicates)
            entries = [e for e in entries if e.artwork_id in artworks]
            ctx.result.total_artworks = len(entries)
            if self.cancelled(ctx):
                return ctx.result.finish()

            ctx.total = len(entries)

            async def _associate(directory: ArtworkDirectory, group: list[MetadataEntry]) -> None:
                for entry in group:
                    try:
                        files = await collect_media(
                            directory.path, entry.artwork_id, directory.filenames
                        )
                    except ScanError as exc:
                        ctx.record_error(exc)
                        continue
                    finally:
                        ctx.item_done()
                    for media_file in files:
                        stage_image(ctx, entry.artwork_id, media_file)

            await run_chunked(
                ctx, [lambda d=d, g=g: _associate(d, g) for d, g in group_by_directory(entries)]
            )
            await self.finalize(ctx)
            await ctx.optimizer.execute_optimized(
                lambda: self.repository.refresh_image_counts(artworks[e.artwork_id] for e in entries),
                "refresh_image_counts",
            )
        finally:
            await ctx.close()
        return ctx.result.finish()


def _scaled(callback: Optional[ProgressCallback], start: float, span: float) -> Optional[ProgressCallback]:
    """Map a sub-strategy's 0-100% onto start..start+span of the parent's scale."""
    if callback is None:
        return None

    def _emit(progress: ScanProgress) -> None:
        if progress.phase == ScanPhase.COMPLETE:
            return
        callback(dataclasses.replace(progress, percentage=round(start + span * progress.percentage / 100, 2)))

    return _emit


class FullScanStrategy(ScanStrategy):
    type = ScanStrategyType.FULL
    name = "full"
    description = "Metadata scan followed by media association and cleanup"
    cost_per_item = 0.03

    async def execute(self, options: ScanOptions) -> ScanResult:
        result = ScanResult()
        existing_before = await self.repository.count(Artwork)

        metadata = MetadataScanStrategy(self.config, self.repository, self.monitor, self.is_cancelled)
        result.merge(
            await metadata.execute(
                dataclasses.replace(options, on_progress=_scaled(options.on_progress, 0, 70))
            )
        )
        if result.cancelled or self.is_cancelled():
            result.cancelled = True
            return result.finish()

        if not options.force_update and result.new_artworks == 0 and existing_before == 0:
            logger.info("[SCAN] No artworks to associate; skipping media phase")
        else:
            media = MediaScanStrategy(self.config, self.repository, self.monitor, self.is_cancelled)
            media_result = await media.execute(
                dataclasses.replace(options, on_progress=_scaled(options.on_progress, 70, 25)),
                report_duplicates=False,
            )
            media_result.total_artworks = 0
            result.merge(media_result)

        if result.cancelled or self.is_cancelled():
            result.cancelled = True
            return result.finish()

        result.removed_artworks += await cleanup_library(
            self.repository, ScanSettings.resolve(self.config, options), options.on_progress
        )
        return result.finish()


class UnifiedScanStrategy(ScanStrategy):
    type = ScanStrategyType.UNIFIED
    name = "unified"
    description = "Single pass: metadata and media per directory"
    cost_per_item = 0.02

    async def execute(self, options: ScanOptions) -> ScanResult:
        ctx = self.new_context(options)
        try:
            entries = await self.discover(ctx)
            entries = await self.filter_existing(ctx, entries, with_images_only=True)
            if self.cancelled(ctx):
                return ctx.result.finish()

            ctx.total = len(entries)

            async def _process(directory: ArtworkDirectory, group: list[MetadataEntry]) -> None:
                for entry in group:
                    try:
                        meta = await read_metadata_file(entry.path)
                        files = await collect_media(
                            directory.path, entry.artwork_id, directory.filenames
                        )
                    except ScanError as exc:
                        ctx.record_error(exc)
                        continue
                    finally:
                        ctx.item_done()
                    stage_artwork(ctx, entry, meta, files)

            await run_chunked(
                ctx, [lambda d=d, g=g: _process(d, g) for d, g in group_by_directory(entries)]
            )
            await self.finalize(ctx)
            # artworks that existed without images keep their row; recount them
            mapping = ctx.processor.mapping
            staged = [
                mapping.artwork_id(e.artwork_id) for e in entries
                if mapping.artwork_id(e.artwork_id) is not None
            ]
            await ctx.optimizer.execute_optimized(
                lambda: self.repository.refresh_image_counts(staged), "refresh_image_counts"
            )
            if self.cancelled(ctx):
                return ctx.result.finish()
            ctx.result.removed_artworks += await cleanup_library(
                self.repository, ctx.settings, ctx.on_progress
            )
        finally:
            await ctx.close()
        return ctx.result.finish()


STRATEGIES: dict[ScanStrategyType, type[ScanStrategy]] = {
    ScanStrategyType.METADATA: MetadataScanStrategy,
    ScanStrategyType.MEDIA: MediaScanStrategy,
    ScanStrategyType.FULL: FullScanStrategy,
    ScanStrategyType.UNIFIED: UnifiedScanStrategy,
}
