"""Shared fixtures: temporary libraries, configs and databases."""

from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio

from artshelf.config import (
    ArtshelfConfig,
    DatabaseConfig,
    LibraryConfig,
    MonitoringConfig,
    ScannerConfig,
)
from artshelf.database import create_db_engine, init_db
from artshelf.repository import Repository


def write_meta(
    directory: Path,
    artwork_id: str,
    user: Optional[str] = "Alice",
    user_id: Optional[str] = "7",
    title: Optional[str] = None,
    tags: tuple[str, ...] = ("a", "b"),
    extra: str = "",
) -> Path:
    """Write a `{id}-meta.txt` file and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    blocks = [f"ID\n{artwork_id}"]
    if user is not None:
        blocks.append(f"USER\n{user}")
    if user_id is not None:
        blocks.append(f"USERID\n{user_id}")
    blocks.append(f"TITLE\n{title or f'Artwork {artwork_id}'}")
    blocks.append("URL\nhttps://www.pixiv.net/artworks/" + artwork_id)
    if tags:
        blocks.append("TAGS\n" + " ".join(f"#{t}" for t in tags))
    if extra:
        blocks.append(extra)
    path = directory / f"{artwork_id}-meta.txt"
    path.write_text("\n\n".join(blocks) + "\n", encoding="utf-8")
    return path


def write_media(directory: Path, *names: str) -> list[Path]:
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = directory / name
        path.write_bytes(b"\x89PNG fake image data")
        paths.append(path)
    return paths


def make_config(library: Path, db_path: Optional[Path] = None, **scanner) -> ArtshelfConfig:
    scanner.setdefault("max_concurrency", 4)
    scanner.setdefault("flush_retry_delay", 0.1)
    scanner.setdefault("progress_interval", 0.05)
    return ArtshelfConfig(
        library=LibraryConfig(path=library, name="Test Library"),
        scanner=ScannerConfig(**scanner),
        database=DatabaseConfig(path=db_path, retry_delay=0.01),
        monitoring=MonitoringConfig(enabled=True, interval=0.05),
    )


@pytest.fixture
def library(tmp_path):
    root = tmp_path / "library"
    root.mkdir()
    return root


@pytest.fixture
def config(library, tmp_path):
    return make_config(library, tmp_path / "library.db")


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_db_engine(tmp_path / "library.db")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def repository(engine, library):
    return Repository(engine, library)
