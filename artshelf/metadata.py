"""Metadata file parsing for artshelf.

A metadata file is named `{id}-meta.txt` and holds blocks separated by
blank lines. The first line of a block is the field name, the remaining
lines are its value:

    ID
    123

    TAGS
    #landscape #sky
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel

from .errors import MetadataError
from .logging_config import get_logger

logger = get_logger(__name__)

METADATA_FILE_RE = re.compile(r"^(\d+)-meta\.txt$", re.IGNORECASE)

# Block keys (upper-cased) -> model fields
TAG_MAP = {
    "ID": "id",
    "URL": "url",
    "ORIGINAL": "original",
    "THUMBNAIL": "thumbnail",
    "XRESTRICT": "x_restrict",
    "AI": "ai",
    "USER": "user",
    "USERID": "user_id",
    "TITLE": "title",
    "DESCRIPTION": "description",
    "TAGS": "tags",
    "SIZE": "size",
    "BOOKMARK": "bookmark",
    "DATE": "date",
}

_TRUE = {"yes", "true", "1"}
_FALSE = {"no", "false", "0"}

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
)


class ArtworkMetadata(BaseModel):
    """Fields parsed from one metadata file (all optional until validated)."""

    model_config = {"extra": "ignore"}

    id: Optional[str] = None
    url: Optional[str] = None
    original: Optional[str] = None
    thumbnail: Optional[str] = None
    x_restrict: Optional[str] = None
    ai: Optional[bool] = None
    user: Optional[str] = None
    user_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = []
    size: Optional[str] = None
    bookmark: Optional[int] = None
    date: Optional[datetime] = None

    @property
    def is_restricted(self) -> bool:
        return bool(self.x_restrict) and self.x_restrict.strip().lower() != "allages"


def is_metadata_file(name: str) -> bool:
    return METADATA_FILE_RE.match(name) is not None


def extract_artwork_id(name: str) -> Optional[str]:
    """Return the leading numeric id of a metadata filename, if it is one."""
    match = METADATA_FILE_RE.match(name)
    return match.group(1) if match else None


def _int_or_none(s: Optional[str]) -> Optional[int]:
    if s is None:
        return None
    try:
        return int(s.strip().replace(",", ""))
    except ValueError:
        return None


def _bool_or_none(s: str) -> Optional[bool]:
    value = s.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return None


def parse_tags(value: str) -> list[str]:
    """Split a TAGS value on whitespace, dropping '#' prefixes, blanks and repeats."""
    tags: list[str] = []
    for token in value.split():
        tag = token[1:] if token.startswith("#") else token
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def parse_date(value: str) -> Optional[datetime]:
    """Parse a DATE value. Values without an offset are taken as UTC."""
    value = value.strip()
    parsed = None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _blocks(text: str) -> list[list[str]]:
    blocks: list[list[str]] = []
    current: list[str] = []
    for line in text.splitlines():
        if line.strip():
            current.append(line.rstrip())
        elif current:
            blocks.append(current)
            current = []
    if current:
        blocks.append(current)
    return blocks


def parse_metadata_text(text: str) -> ArtworkMetadata:
    """Parse metadata file content into a model. Unknown blocks are ignored."""
    raw: dict[str, object] = {}
    for block in _blocks(text.lstrip("\ufeff")):
        key = TAG_MAP.get(block[0].strip().upper())
        if key is None:
            continue
        value = "\n".join(line.strip() for line in block[1:]).strip()
        if not value:
            continue

        if key == "tags":
            raw[key] = parse_tags(value)
        elif key == "ai":
            parsed = _bool_or_none(value)
            if parsed is not None:
                raw[key] = parsed
        elif key == "bookmark":
            parsed = _int_or_none(value)
            if parsed is not None:
                raw[key] = parsed
        elif key == "date":
            parsed = parse_date(value)
            if parsed is None:
                logger.warning(f"Unparseable DATE value: {value!r}")
            else:
                raw[key] = parsed
        elif key == "description":
            raw[key] = value
        else:
            raw[key] = " ".join(value.split())

    return ArtworkMetadata.model_validate(raw)


def _is_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def validate_metadata(meta: ArtworkMetadata, expected_id: Optional[str] = None) -> list[str]:
    """Return a list of problems; empty when the metadata is usable."""
    problems: list[str] = []
    # USER may be blank; the artist name then comes from the directory name
    for field, label in (("id", "ID"), ("user_id", "USERID"), ("title", "TITLE")):
        if not getattr(meta, field):
            problems.append(f"missing {label}")

    if meta.id and not meta.id.isdigit():
        problems.append(f"ID is not numeric: {meta.id!r}")
    if meta.user_id and not meta.user_id.isdigit():
        problems.append(f"USERID is not numeric: {meta.user_id!r}")
    if expected_id and meta.id and meta.id != expected_id:
        problems.append(f"ID {meta.id} does not match filename id {expected_id}")

    for field in ("url", "original", "thumbnail"):
        value = getattr(meta, field)
        if value and not _is_url(value):
            problems.append(f"invalid {field.upper()} URL: {value!r}")

    if meta.bookmark is not None and meta.bookmark < 0:
        problems.append(f"negative BOOKMARK: {meta.bookmark}")
    return problems


def load_metadata_file(path: Path) -> ArtworkMetadata:
    """Read and validate one metadata file. Raises MetadataError."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise MetadataError(path, f"unreadable: {exc}") from exc

    meta = parse_metadata_text(text)
    problems = validate_metadata(meta, expected_id=extract_artwork_id(path.name))
    if problems:
        raise MetadataError(path, "; ".join(problems))
    return meta


async def read_metadata_file(path: Path) -> ArtworkMetadata:
    """Async wrapper around load_metadata_file; file I/O runs off the event loop."""
    return await asyncio.to_thread(load_metadata_file, path)
