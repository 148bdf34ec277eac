"""Transient entity records and scan run types.

Records carry natural keys (artist user id or name, artwork external id,
tag name) instead of database ids. The batch processor resolves those
keys into ids right before it writes a row.
"""

from __future__ import annotations

import dataclasses
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel


def artist_key(user_id: Optional[str], name: Optional[str]) -> str:
    """Natural key for an artist: external user id first, name as fallback."""
    if user_id:
        return f"uid:{user_id}"
    return f"name:{name or ''}"


class ArtistRecord(BaseModel):
    model_config = {"extra": "ignore"}

    name: str
    username: Optional[str] = None
    user_id: Optional[str] = None
    bio: Optional[str] = None

    @property
    def key(self) -> str:
        return artist_key(self.user_id, self.name)

    def to_row(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "username": self.username,
            "user_id": self.user_id,
            "bio": self.bio,
        }


class ArtworkRecord(BaseModel):
    model_config = {"extra": "ignore"}

    external_id: str
    title: str
    artist_name: str
    artist_user_id: Optional[str] = None
    description: Optional[str] = None
    source_url: Optional[str] = None
    original_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    x_restrict: Optional[str] = None
    is_ai_generated: Optional[bool] = None
    size: Optional[str] = None
    bookmark_count: Optional[int] = None
    source_date: Optional[datetime] = None
    image_count: int = 0
    directory_created_at: Optional[datetime] = None

    @property
    def artist_key(self) -> str:
        return artist_key(self.artist_user_id, self.artist_name)

    def to_row(self, artist_id: int) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "artist_id": artist_id,
            "external_id": self.external_id,
            "source_url": self.source_url,
            "original_url": self.original_url,
            "thumbnail_url": self.thumbnail_url,
            "x_restrict": self.x_restrict,
            "is_ai_generated": self.is_ai_generated,
            "size": self.size,
            "bookmark_count": self.bookmark_count,
            "source_date": self.source_date,
            "image_count": self.image_count,
            "directory_created_at": self.directory_created_at,
        }


class ImageRecord(BaseModel):
    model_config = {"extra": "ignore"}

    artwork_external_id: str
    path: str
    sort_order: int
    size: Optional[int] = None

    def to_row(self, artwork_id: int) -> dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "sort_order": self.sort_order,
            "artwork_id": artwork_id,
        }


class TagRecord(BaseModel):
    name: str


class ArtworkTagRecord(BaseModel):
    artwork_external_id: str
    tag_name: str


class ScanPhase(str, Enum):
    COUNTING = "counting"
    SCANNING = "scanning"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


@dataclasses.dataclass
class ScanProgress:
    phase: ScanPhase
    message: str
    current: Optional[int] = None
    total: Optional[int] = None
    percentage: float = 0.0


ProgressCallback = Callable[[ScanProgress], None]


@dataclasses.dataclass
class ScanOptions:
    """Options for one scan run. None means "use the configured value"."""

    scan_path: Optional[Path] = None
    force_update: bool = False
    scan_type: Optional[str] = None
    max_concurrency: Optional[int] = None
    batch_size: Optional[int] = None
    stream_buffer_size: Optional[int] = None
    memory_threshold_bytes: Optional[int] = None
    on_progress: Optional[ProgressCallback] = None


@dataclasses.dataclass
class ScanResult:
    total_artworks: int = 0
    new_artists: int = 0
    new_artworks: int = 0
    new_images: int = 0
    new_tags: int = 0
    skipped_artworks: int = 0
    updated_artworks: int = 0
    removed_artworks: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)
    processing_time_ms: int = 0
    cancelled: bool = False
    _started: float = dataclasses.field(default_factory=time.monotonic, repr=False)

    def add_error(self, error: Exception | str) -> None:
        if isinstance(error, Exception) and hasattr(error, "describe"):
            self.errors.append(error.describe())
        else:
            self.errors.append(str(error))

    def merge(self, other: "ScanResult") -> None:
        """Add another result's counters and errors into this one."""
        self.new_artists += other.new_artists
        self.new_artworks += other.new_artworks
        self.new_images += other.new_images
        self.new_tags += other.new_tags
        self.skipped_artworks += other.skipped_artworks
        self.updated_artworks += other.updated_artworks
        self.removed_artworks += other.removed_artworks
        self.total_artworks = max(self.total_artworks, other.total_artworks)
        self.errors.extend(other.errors)
        self.cancelled = self.cancelled or other.cancelled

    def finish(self) -> "ScanResult":
        self.processing_time_ms = int((time.monotonic() - self._started) * 1000)
        return self

    def as_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data.pop("_started", None)
        return data
