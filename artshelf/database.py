"""Async database engine management using SQLModel over aiosqlite."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

from .config import DATA_DIR
from .logging_config import get_logger

logger = get_logger(__name__)

DB_PATH = DATA_DIR / "library.db"

# Seconds SQLite waits on a locked database before raising
BUSY_TIMEOUT = 30

_engine: Optional[AsyncEngine] = None


def sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def create_db_engine(db_path: Path, echo: bool = False) -> AsyncEngine:
    """Create an async engine with WAL and foreign keys enabled per connection."""
    engine = create_async_engine(
        sqlite_url(db_path),
        echo=echo,
        connect_args={"timeout": BUSY_TIMEOUT},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT * 1000}")
        cursor.close()

    return engine


def get_engine(db_path: Optional[Path] = None) -> AsyncEngine:
    """Return the global engine instance, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(db_path or DB_PATH)
    return _engine


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create database tables."""
    # Import models to ensure they are registered with SQLModel.metadata
    from . import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def reset_database(db_path: Optional[Path] = None) -> None:
    """Delete the database file and recreate it."""
    global _engine
    path = db_path or DB_PATH
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    for suffix in ("", "-wal", "-shm"):
        candidate = path.with_name(path.name + suffix)
        if candidate.exists():
            candidate.unlink()
    logger.info(f"[DB] Reset {path}")
    await init_db(get_engine(path))


async def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
