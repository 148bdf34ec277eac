"""Streaming micro-batch ingestion.

StreamingBatchProcessor turns a stream of single-record `add_*` calls into
bulk inserts. Each entity type has its own buffer; a full buffer is handed
to an AsyncFlushQueue which writes it through the DatabaseOptimizer.

Foreign keys are resolved from the run's EntityMapping right before a
write. A batch whose parent rows are not mapped yet raises
UnresolvedReferenceError and goes back through the queue after a delay, so
artworks wait for their artist and images wait for their artwork without
any global ordering between buffers. The failing batch pushes its parents'
partial buffers into the queue, and while a parent batch is still buffered
or in flight the wait does not count against the retry budget.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from .config import DatabaseConfig
from .db_optimizer import DatabaseOptimizer
from .errors import ScanError, UnresolvedReferenceError
from .logging_config import get_logger
from .models import Artist, Artwork, ArtworkTag, Image, Tag
from .records import (
    ArtistRecord,
    ArtworkRecord,
    ArtworkTagRecord,
    ImageRecord,
    TagRecord,
    artist_key,
)
from .repository import Repository

logger = get_logger(__name__)

ENTITY_TYPES = ("artists", "artworks", "images", "tags", "artwork_tags")

# Entity types whose ids a batch of the given type needs
PARENTS = {
    "artists": (),
    "artworks": ("artists",),
    "images": ("artworks",),
    "tags": (),
    "artwork_tags": ("artworks", "tags"),
}

PROGRESS_WEIGHTS = {
    "artists": 0.1,
    "artworks": 0.2,
    "images": 0.6,
    "tags": 0.05,
    "artwork_tags": 0.05,
}


class EntityMapping:
    """Natural key -> database id for one scan run."""

    def __init__(self):
        self.artists: dict[str, int] = {}
        self.artworks: dict[str, int] = {}
        self.tags: dict[str, int] = {}

    def add_artist(self, artist_id: int, user_id: Optional[str], name: Optional[str]) -> None:
        self.artists[artist_key(user_id, name)] = artist_id
        if user_id and name:
            # name alias for records that only know the artist by name
            self.artists.setdefault(artist_key(None, name), artist_id)

    def artist_id(self, user_id: Optional[str], name: Optional[str]) -> Optional[int]:
        if user_id:
            found = self.artists.get(artist_key(user_id, None))
            if found is not None:
                return found
        return self.artists.get(artist_key(None, name))

    def artwork_id(self, external_id: str) -> Optional[int]:
        return self.artworks.get(external_id)

    def tag_id(self, name: str) -> Optional[int]:
        return self.tags.get(name)

    def sizes(self) -> dict[str, int]:
        return {
            "artists": len(self.artists),
            "artworks": len(self.artworks),
            "tags": len(self.tags),
        }

    def clear(self) -> None:
        self.artists.clear()
        self.artworks.clear()
        self.tags.clear()


@dataclasses.dataclass
class MicroBatch:
    entity: str
    items: list[Any]
    number: int
    attempt: int = 0


@dataclasses.dataclass
class BatchResult:
    created: dict[str, int]
    duplicates: dict[str, int]
    updated: dict[str, int]
    failed: dict[str, int]
    errors: list[str]
    processing_time_ms: int

    @property
    def error_count(self) -> int:
        return len(self.errors)


class AsyncFlushQueue:
    """FIFO of flush tasks with its own concurrency bound and retry policy.

    A failed batch is re-queued after `retry_delay * attempt` seconds and
    runs under the same bound as fresh batches. After max_retries retries
    the failure callback gets the batch and the last error. When `defer`
    returns True for a failure, the batch is re-queued after `retry_delay`
    without using up an attempt.
    """

    def __init__(
        self,
        handler: Callable[[MicroBatch], Awaitable[None]],
        on_failure: Callable[[MicroBatch, Exception], None],
        max_concurrent: int = 3,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        on_success: Optional[Callable[[MicroBatch], None]] = None,
        defer: Optional[Callable[[MicroBatch, Exception], bool]] = None,
    ):
        self.handler = handler
        self.on_failure = on_failure
        self.on_success = on_success
        self.defer = defer
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._queue: deque[MicroBatch] = deque()
        self._running = 0
        self._pending_retries = 0
        self._retry_handles: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

        self.completed = 0
        self.failed = 0
        self.retried = 0
        self.deferred = 0
        self.peak_running = 0

    def submit(self, batch: MicroBatch) -> None:
        self._queue.append(batch)
        self._idle.clear()
        self._pump()

    def _pump(self) -> None:
        while self._queue and self._running < self.max_concurrent:
            batch = self._queue.popleft()
            self._running += 1
            self.peak_running = max(self.peak_running, self._running)
            task = asyncio.ensure_future(self._run(batch))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, batch: MicroBatch) -> None:
        try:
            await self.handler(batch)
        except Exception as exc:
            if self.defer is not None and self.defer(batch, exc):
                self.deferred += 1
                logger.debug(
                    f"[FLUSH] {batch.entity} #{batch.number} waiting on parents: {exc}"
                )
                self._schedule_retry(batch, self.retry_delay)
            elif batch.attempt < self.max_retries:
                batch.attempt += 1
                self.retried += 1
                delay = self.retry_delay * batch.attempt
                logger.debug(
                    f"[FLUSH] {batch.entity} #{batch.number} retry "
                    f"{batch.attempt}/{self.max_retries} in {delay:.2f}s: {exc}"
                )
                self._schedule_retry(batch, delay)
            else:
                self.failed += 1
                self.on_failure(batch, exc)
        else:
            self.completed += 1
            if self.on_success is not None:
                self.on_success(batch)
        finally:
            self._running -= 1
            self._pump()
            self._check_idle()

    def _schedule_retry(self, batch: MicroBatch, delay: float) -> None:
        self._pending_retries += 1
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _requeue() -> None:
            self._retry_handles.discard(handle)
            self._pending_retries -= 1
            self.submit(batch)

        handle = loop.call_later(delay, _requeue)
        self._retry_handles.add(handle)

    def _check_idle(self) -> None:
        if not self._queue and self._running == 0 and self._pending_retries == 0:
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until no batch is queued, running or waiting to be retried."""
        await self._idle.wait()

    def status(self) -> dict[str, int]:
        return {
            "queued": len(self._queue),
            "running": self._running,
            "pending_retries": self._pending_retries,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "deferred": self.deferred,
        }


class StreamingBatchProcessor:
    """Buffers entity records per type and flushes them as micro-batches.

    Owns the run's EntityMapping; nothing outside this class mutates it.
    """

    def __init__(
        self,
        repository: Repository,
        micro_batch_size: int = 50,
        max_concurrent_flushes: int = 3,
        flush_retry_delay: float = 1.0,
        max_retries: int = 3,
        progress_interval: float = 1.0,
        optimizer: Optional[DatabaseOptimizer] = None,
        on_progress: Optional[Callable[[dict[str, Any]], None]] = None,
    ):
        if micro_batch_size < 1:
            raise ValueError("micro_batch_size must be >= 1")
        self.repository = repository
        self.micro_batch_size = micro_batch_size
        self.progress_interval = progress_interval
        self.on_progress = on_progress
        self.optimizer = optimizer or DatabaseOptimizer.from_config(
            repository, DatabaseConfig(), default_pool_size=max_concurrent_flushes * 2
        )
        self.mapping = EntityMapping()
        self.flush_queue = AsyncFlushQueue(
            self._flush,
            self._on_flush_failed,
            max_concurrent=max_concurrent_flushes,
            max_retries=max_retries,
            retry_delay=flush_retry_delay,
            on_success=self._on_flush_done,
            defer=self._wait_for_parents,
        )

        self._buffers: dict[str, list[Any]] = {t: [] for t in ENTITY_TYPES}
        self._staged = {t: 0 for t in ENTITY_TYPES}
        self._processed = {t: 0 for t in ENTITY_TYPES}
        self.created = {t: 0 for t in ENTITY_TYPES}
        self.duplicates = {t: 0 for t in ENTITY_TYPES}
        self.updated = {t: 0 for t in ENTITY_TYPES}
        self.failed = {t: 0 for t in ENTITY_TYPES}
        self._in_flight = {t: 0 for t in ENTITY_TYPES}
        self.errors: list[str] = []
        self.batches_submitted = 0

        self._staged_artists: set[str] = set()
        self._staged_tags: set[str] = set()
        self._artwork_updates: dict[str, int] = {}
        self._handlers = {
            "artists": self._flush_artists,
            "artworks": self._flush_artworks,
            "images": self._flush_images,
            "tags": self._flush_tags,
            "artwork_tags": self._flush_artwork_tags,
        }
        self._started = time.monotonic()
        self._progress_task: Optional[asyncio.Task] = None
        self._finalized = False

    # Staging

    def add_artist(self, record: ArtistRecord) -> bool:
        """Stage an artist once per run. Returns False when already staged."""
        if record.key in self._staged_artists:
            return False
        self._staged_artists.add(record.key)
        self._add("artists", record)
        return True

    def add_artwork(self, record: ArtworkRecord) -> None:
        self._add("artworks", record)

    def add_image(self, record: ImageRecord) -> None:
        self._add("images", record)

    def add_tag(self, record: TagRecord) -> bool:
        """Stage a tag once per run. Returns False when already staged."""
        if record.name in self._staged_tags:
            return False
        self._staged_tags.add(record.name)
        self._add("tags", record)
        return True

    def add_artwork_tag(self, record: ArtworkTagRecord) -> None:
        self._add("artwork_tags", record)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def seed_artworks(self, artwork_ids: dict[str, int]) -> None:
        """Load artwork ids looked up from the store into the mapping."""
        self.mapping.artworks.update(artwork_ids)

    def update_artworks(self, artwork_ids: dict[str, int]) -> None:
        """Overwrite these stored artworks in place when they are staged again."""
        self._artwork_updates.update(artwork_ids)

    def _add(self, entity: str, record: Any) -> None:
        if self._finalized:
            raise RuntimeError("processor already finalized")
        self._start_progress_reporting()
        if len(self._buffers[entity]) >= self.micro_batch_size:
            self._submit(entity)
        self._buffers[entity].append(record)
        self._staged[entity] += 1

    def _submit(self, entity: str) -> None:
        items, self._buffers[entity] = self._buffers[entity], []
        if not items:
            return
        self.batches_submitted += 1
        self._in_flight[entity] += 1
        self.flush_queue.submit(MicroBatch(entity, items, self.batches_submitted))

    # Flushing

    async def _flush(self, batch: MicroBatch) -> None:
        await self._handlers[batch.entity](batch.items)

    def _on_flush_done(self, batch: MicroBatch) -> None:
        self._in_flight[batch.entity] -= 1
        self._processed[batch.entity] += len(batch.items)

    def _wait_for_parents(self, batch: MicroBatch, error: Exception) -> bool:
        """Push parent buffers out and report whether a parent batch is still pending."""
        if not isinstance(error, UnresolvedReferenceError):
            return False
        waiting = False
        for parent in PARENTS[batch.entity]:
            self._submit(parent)
            if self._in_flight[parent]:
                waiting = True
        return waiting

    def _on_flush_failed(self, batch: MicroBatch, error: Exception) -> None:
        self._in_flight[batch.entity] -= 1
        count = len(batch.items)
        self._processed[batch.entity] += count
        self.failed[batch.entity] += count
        kind = error.kind if isinstance(error, ScanError) else "database"
        message = (
            f"{kind}: flush of {count} {batch.entity} failed after "
            f"{batch.attempt + 1} attempts: {error}"
        )
        logger.error(f"✗ [FLUSH] {message}")
        self.errors.append(message)

    async def _flush_artists(self, records: list[ArtistRecord]) -> None:
        pending = [r for r in records if r.key not in self.mapping.artists]
        if not pending:
            return

        existing = await self._lookup_artists(pending)
        for record in pending:
            if record.key in existing:
                self.mapping.add_artist(existing[record.key], record.user_id, record.name)
                self.duplicates["artists"] += 1
        pending = [r for r in pending if r.key not in self.mapping.artists]

        inserted = await self.optimizer.batch_create_and_return(
            Artist, [r.to_row() for r in pending], returning=("id", "user_id", "name")
        )
        for row in inserted:
            self.mapping.add_artist(row["id"], row["user_id"], row["name"])
        self.created["artists"] += len(inserted)

        # Rows inserted concurrently by another flush since the lookup
        missed = [r for r in pending if r.key not in self.mapping.artists]
        if missed:
            existing = await self._lookup_artists(missed)
            for record in missed:
                if record.key in existing:
                    self.mapping.add_artist(existing[record.key], record.user_id, record.name)
                    self.duplicates["artists"] += 1
            still = [r.key for r in missed if r.key not in self.mapping.artists]
            if still:
                raise UnresolvedReferenceError("artist", still)

    async def _lookup_artists(self, records: list[ArtistRecord]) -> dict[str, int]:
        user_ids = [r.user_id for r in records if r.user_id]
        names = [r.name for r in records if not r.user_id]
        return await self.optimizer.execute_optimized(
            lambda: self.repository.artist_ids_by_key(user_ids, names), "lookup_artists"
        )

    async def _flush_artworks(self, records: list[ArtworkRecord]) -> None:
        unresolved = sorted({
            r.artist_key for r in records
            if self.mapping.artist_id(r.artist_user_id, r.artist_name) is None
        })
        if unresolved:
            raise UnresolvedReferenceError("artist", unresolved)

        pending = [r for r in records if r.external_id not in self.mapping.artworks]
        updates = [r for r in pending if r.external_id in self._artwork_updates]
        if updates:
            rows = [
                r.to_row(self.mapping.artist_id(r.artist_user_id, r.artist_name))
                for r in updates
            ]
            count = await self.optimizer.execute_optimized(
                lambda: self.repository.update_artworks(rows), "update_artworks"
            )
            for record in updates:
                self.mapping.artworks[record.external_id] = self._artwork_updates[record.external_id]
            self.updated["artworks"] += count
            pending = [r for r in pending if r.external_id not in self._artwork_updates]
        if not pending:
            return
        rows = [
            r.to_row(self.mapping.artist_id(r.artist_user_id, r.artist_name))
            for r in pending
        ]
        inserted = await self.optimizer.batch_create_and_return(
            Artwork, rows, returning=("id", "external_id")
        )
        for row in inserted:
            self.mapping.artworks[row["external_id"]] = row["id"]
        self.created["artworks"] += len(inserted)

        missed = [r.external_id for r in pending if r.external_id not in self.mapping.artworks]
        if missed:
            existing = await self.optimizer.execute_optimized(
                lambda: self.repository.artwork_ids_by_external_id(missed), "lookup_artworks"
            )
            self.mapping.artworks.update(existing)
            self.duplicates["artworks"] += len(existing)

    async def _flush_images(self, records: list[ImageRecord]) -> None:
        unresolved = sorted({
            r.artwork_external_id for r in records
            if self.mapping.artwork_id(r.artwork_external_id) is None
        })
        if unresolved:
            raise UnresolvedReferenceError("artwork", unresolved)

        rows = [r.to_row(self.mapping.artwork_id(r.artwork_external_id)) for r in records]
        count = await self.optimizer.batch_create(Image, rows)
        self.created["images"] += count
        self.duplicates["images"] += len(rows) - count

    async def _flush_tags(self, records: list[TagRecord]) -> None:
        pending = [r.name for r in records if r.name not in self.mapping.tags]
        if not pending:
            return
        inserted = await self.optimizer.batch_create_and_return(
            Tag, [{"name": name} for name in pending], returning=("id", "name")
        )
        for row in inserted:
            self.mapping.tags[row["name"]] = row["id"]
        self.created["tags"] += len(inserted)

        missed = [name for name in pending if name not in self.mapping.tags]
        if missed:
            existing = await self.optimizer.execute_optimized(
                lambda: self.repository.tag_ids_by_name(missed), "lookup_tags"
            )
            self.mapping.tags.update(existing)
            self.duplicates["tags"] += len(existing)
            still = [name for name in missed if name not in self.mapping.tags]
            if still:
                raise UnresolvedReferenceError("tag", still)

    async def _flush_artwork_tags(self, records: list[ArtworkTagRecord]) -> None:
        unresolved = sorted(
            {
                f"artwork {r.artwork_external_id}" for r in records
                if self.mapping.artwork_id(r.artwork_external_id) is None
            }
            | {
                f"tag {r.tag_name}" for r in records
                if self.mapping.tag_id(r.tag_name) is None
            }
        )
        if unresolved:
            raise UnresolvedReferenceError("artwork/tag", unresolved)

        rows = [
            {
                "artwork_id": self.mapping.artwork_id(r.artwork_external_id),
                "tag_id": self.mapping.tag_id(r.tag_name),
            }
            for r in records
        ]
        count = await self.optimizer.batch_create(ArtworkTag, rows)
        self.created["artwork_tags"] += count
        self.duplicates["artwork_tags"] += len(rows) - count

    # Progress and completion

    def progress(self) -> dict[str, Any]:
        per_type = {}
        overall = 0.0
        for entity in ENTITY_TYPES:
            staged = self._staged[entity]
            done = self._processed[entity]
            ratio = done / staged if staged else 1.0
            per_type[entity] = {"processed": done, "total": staged}
            overall += PROGRESS_WEIGHTS[entity] * ratio
        return {
            "percentage": round(min(overall, 1.0) * 100, 2),
            "entities": per_type,
            "elapsed_ms": int((time.monotonic() - self._started) * 1000),
        }

    def _start_progress_reporting(self) -> None:
        if self.on_progress is None or self._progress_task is not None:
            return
        self._progress_task = asyncio.ensure_future(self._report_progress())

    async def _report_progress(self) -> None:
        while True:
            await asyncio.sleep(self.progress_interval)
            self.on_progress(self.progress())

    async def _stop_progress_reporting(self) -> None:
        if self._progress_task is None:
            return
        self._progress_task.cancel()
        try:
            await self._progress_task
        except asyncio.CancelledError:
            pass
        self._progress_task = None

    async def finalize(self) -> BatchResult:
        """Flush partial buffers, wait for every flush to settle, return totals."""
        self._finalized = True
        for entity in ENTITY_TYPES:
            self._submit(entity)
        await self.flush_queue.wait_idle()
        await self.optimizer.close()
        await self._stop_progress_reporting()
        if self.on_progress is not None:
            self.on_progress(self.progress())

        result = BatchResult(
            created=dict(self.created),
            duplicates=dict(self.duplicates),
            updated=dict(self.updated),
            failed=dict(self.failed),
            errors=list(self.errors),
            processing_time_ms=int((time.monotonic() - self._started) * 1000),
        )
        logger.info(
            f"[FLUSH] Done: {result.created['artworks']} artworks, "
            f"{result.created['images']} images, {result.created['tags']} tags "
            f"in {self.batches_submitted} batches ({result.error_count} errors)"
        )
        return result

    def stats(self) -> dict[str, Any]:
        return {
            "batches": {entity: len(items) for entity, items in self._buffers.items()},
            "queue": self.flush_queue.status(),
            "progress": self.progress(),
            "result": {
                "created": dict(self.created),
                "duplicates": dict(self.duplicates),
                "updated": dict(self.updated),
                "failed": dict(self.failed),
                "errors": len(self.errors),
            },
        }
