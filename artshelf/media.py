"""Media discovery and association.

Finds `{id}-meta.txt` files under a library tree and matches each artwork
id to its sibling media files:

- `{id}_p{n}.ext`  explicit zero-based page n
- `{id}.ext`       page 0
- `{id}_{n}.ext`   legacy numbering, page n

Only allow-listed extensions count, whatever the filename looks like.
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple, Optional

from .errors import AssociationError, ScanRootError
from .logging_config import get_logger
from .metadata import extract_artwork_id

logger = get_logger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff", ".tif"}
VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".wmv", ".flv", ".mkv", ".webm"}
MEDIA_EXTENSIONS = IMAGE_EXTENSIONS | VIDEO_EXTENSIONS


class MediaFile(NamedTuple):
    path: Path
    page: int
    size: Optional[int] = None


@dataclasses.dataclass
class ArtworkDirectory:
    """A directory holding one or more metadata files and their media."""

    path: Path
    metadata: list[tuple[str, Path]]
    filenames: list[str]
    created_at: Optional[datetime] = None


def is_media_file(name: str) -> bool:
    return Path(name).suffix.lower() in MEDIA_EXTENSIONS


def page_index(filename: str, artwork_id: str) -> Optional[int]:
    """Return the page index a media filename claims for artwork_id, or None."""
    if not is_media_file(filename):
        return None
    aid = re.escape(artwork_id)
    match = re.match(rf"^{aid}_p(\d+)\.\w+$", filename)
    if match:
        return int(match.group(1))
    if re.match(rf"^{aid}\.\w+$", filename):
        return 0
    match = re.match(rf"^{aid}_(\d+)\.\w+$", filename)
    if match:
        return int(match.group(1))
    return None


def match_media(
    filenames: Iterable[str], directory: Path, artwork_id: str
) -> list[MediaFile]:
    """Pick the media files of one artwork from a directory listing, sorted by page."""
    matched = []
    for name in filenames:
        page = page_index(name, artwork_id)
        if page is not None:
            matched.append(MediaFile(directory / name, page))
    matched.sort(key=lambda m: (m.page, m.path.name))
    return matched


def validate_association(artwork_id: str, files: list[MediaFile]) -> None:
    """Reject empty, split or page-colliding associations."""
    if not files:
        raise AssociationError(artwork_id, "no media files matched")
    directories = {f.path.parent for f in files}
    if len(directories) > 1:
        raise AssociationError(artwork_id, "media files span several directories")
    seen: dict[int, Path] = {}
    for media in files:
        if media.page in seen:
            raise AssociationError(
                artwork_id,
                f"page {media.page} claimed by both {seen[media.page].name} and {media.path.name}",
                media.path.parent,
            )
        seen[media.page] = media.path


def _stat_media(files: list[MediaFile]) -> list[MediaFile]:
    result = []
    for media in files:
        try:
            size = media.path.stat().st_size
        except OSError as exc:
            logger.warning(f"✗ {media.path.name} - Unable to stat: {exc}")
            size = None
        result.append(media._replace(size=size))
    return result


async def collect_media(
    directory: Path,
    artwork_id: str,
    filenames: Optional[list[str]] = None,
) -> list[MediaFile]:
    """Return the validated, ordered media files of artwork_id in directory.

    Raises AssociationError when nothing matches or pages collide.
    """
    if filenames is None:
        filenames = await asyncio.to_thread(_list_files, directory)
    files = match_media(filenames, directory, artwork_id)
    validate_association(artwork_id, files)
    return await asyncio.to_thread(_stat_media, files)


def _list_files(directory: Path) -> list[str]:
    with os.scandir(directory) as entries:
        return [entry.name for entry in entries if entry.is_file()]


def _should_ignore(name: str, ignore_patterns: Iterable[str]) -> bool:
    """Check if file/folder should be ignored based on patterns or macOS temp files."""
    if name.startswith("._"):
        return True
    return name in ignore_patterns


def check_scan_root(root: Path) -> None:
    """Raise ScanRootError unless root is a readable directory."""
    if not root.exists():
        raise ScanRootError(f"scan path does not exist: {root}")
    if not root.is_dir():
        raise ScanRootError(f"scan path is not a directory: {root}")
    try:
        with os.scandir(root) as entries:
            next(entries, None)
    except OSError as exc:
        raise ScanRootError(f"cannot read scan path {root}: {exc}") from exc


def walk_library(
    root: Path,
    ignore_patterns: tuple[str, ...] = (),
    max_depth: int = 0,
    errors: Optional[list[str]] = None,
) -> Iterator[ArtworkDirectory]:
    """Yield directories under root that contain metadata files.

    max_depth limits how many levels below root are visited (0 means
    unbounded). Unreadable subdirectories are logged, appended to errors
    and skipped.
    """
    root = root.resolve()

    def _onerror(exc: OSError) -> None:
        message = f"filesystem: {exc.filename}: {exc.strerror or exc}"
        logger.warning(f"✗ {message}")
        if errors is not None:
            errors.append(message)

    for dirpath, dirnames, filenames in os.walk(root, onerror=_onerror):
        dir_path = Path(dirpath)
        depth = len(dir_path.relative_to(root).parts)

        if max_depth and depth >= max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = sorted(
                d for d in dirnames if not _should_ignore(d, ignore_patterns)
            )

        files = sorted(f for f in filenames if not _should_ignore(f, ignore_patterns))
        metadata = []
        for name in files:
            artwork_id = extract_artwork_id(name)
            if artwork_id is not None:
                metadata.append((artwork_id, dir_path / name))
        if metadata:
            yield ArtworkDirectory(dir_path, metadata, files)


def directory_created_at(directory: Path) -> Optional[datetime]:
    """Birth time where the platform records it, else the change time."""
    try:
        stat = directory.stat()
    except OSError:
        return None
    timestamp = getattr(stat, "st_birthtime", None) or stat.st_ctime
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _discover(
    root: Path, ignore_patterns: tuple[str, ...], max_depth: int
) -> tuple[list[ArtworkDirectory], list[str]]:
    errors: list[str] = []
    directories = []
    for directory in walk_library(root, ignore_patterns, max_depth, errors):
        directory.created_at = directory_created_at(directory.path)
        directories.append(directory)
    directories.sort(key=lambda d: str(d.path))
    return directories, errors


async def discover_artwork_directories(
    root: Path,
    ignore_patterns: tuple[str, ...] = (),
    max_depth: int = 0,
) -> tuple[list[ArtworkDirectory], list[str]]:
    """Walk root off the event loop. Returns directories and per-directory errors."""
    await asyncio.to_thread(check_scan_root, root)
    return await asyncio.to_thread(_discover, root, ignore_patterns, max_depth)
