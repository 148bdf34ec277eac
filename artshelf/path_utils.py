"""Path utilities.

Converts between absolute paths and the library-root-relative strings
stored in the database, and derives artist/artwork naming hints from
directory names when a metadata file leaves them blank.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import NamedTuple, Optional

UNKNOWN_ARTIST = "Unknown Artist"

_ARTIST_DIR_HINTS = (
    re.compile(r"-\d+$"),
    re.compile(r"user[_-]?\d+", re.IGNORECASE),
    re.compile(r"artist|author|creator", re.IGNORECASE),
)

# Tried in order: "user_123", "name-123" / "name_123", "name (123)"
_ARTIST_DIR_PATTERNS = (
    re.compile(r"^user[_-]?(\d+)$", re.IGNORECASE),
    re.compile(r"^(.+?)[-_](\d+)$"),
    re.compile(r"^(.+?)\s*\((\d+)\)$"),
)


class ArtistHint(NamedTuple):
    name: str
    user_id: Optional[str] = None


class PathHints(NamedTuple):
    artist: Optional[ArtistHint]
    title: Optional[str]


def to_relative(absolute_path: Path, library_root: Path) -> str:
    """Convert an absolute path to a relative path string.

    Example:
        >>> to_relative(Path("/library/alice-7/123_p0.jpg"), Path("/library"))
        "alice-7/123_p0.jpg"
    """
    try:
        rel_path = absolute_path.relative_to(library_root)
        return rel_path.as_posix()
    except ValueError:
        return str(absolute_path)


def to_absolute(relative_path: str, library_root: Path) -> Path:
    """Convert a relative path string to an absolute Path object."""
    return library_root / relative_path


def clean_name(name: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[_-]+", " ", name)).strip()


def looks_like_artist_directory(name: str) -> bool:
    return any(pattern.search(name) for pattern in _ARTIST_DIR_HINTS)


def parse_artist_directory(name: str) -> ArtistHint:
    """Extract an artist name and numeric user id from a directory name."""
    name = name.strip()
    for pattern in _ARTIST_DIR_PATTERNS:
        match = pattern.match(name)
        if not match:
            continue
        if pattern.groups == 1:
            user_id = match.group(1)
            return ArtistHint(f"User {user_id}", user_id)
        return ArtistHint(clean_name(match.group(1)) or UNKNOWN_ARTIST, match.group(2))
    return ArtistHint(clean_name(name) or UNKNOWN_ARTIST, None)


def parse_artwork_path(path: Path, root: Path) -> PathHints:
    """Derive artist and title hints from a directory below root.

    The first directory that looks like an artist directory names the
    artist. The last directory names the artwork unless it is purely numeric.
    """
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        parts = path.parts[-2:]
    if not parts:
        return PathHints(None, None)

    artist = None
    for part in parts:
        if looks_like_artist_directory(part):
            artist = parse_artist_directory(part)
            break
    if artist is None and len(parts) > 1:
        artist = parse_artist_directory(parts[0])

    last = parts[-1]
    title = None if last.isdigit() else clean_name(last) or None
    if artist is not None and len(parts) == 1:
        title = None
    return PathHints(artist, title)
