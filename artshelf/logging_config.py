"""Logging configuration for artshelf.

Two handlers hang off the root logger:
- `artshelf.log` in DATA_DIR, rotated at 10MB with 5 backups, always DEBUG
- a Rich console handler on stderr at the configured level

Scan modules log with short bracketed tags ([SCAN], [FLUSH], [DB],
[MONITOR]) and ✓/✗ marks so the console output stays greppable.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

LOG_FILE_NAME = "artshelf.log"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Loggers that are chatty at INFO/DEBUG during bulk inserts
QUIET_LOGGERS = ("aiosqlite", "sqlalchemy.engine", "sqlalchemy.pool")

_logging_initialized = False


def _get_data_dir() -> Path:
    """Return the data directory (same as config.DATA_DIR without circular import)."""
    env = os.environ.get("DATA_DIR")
    if env:
        return Path(env)
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parents[1]


def _file_handler(data_dir: Path) -> logging.Handler:
    data_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        data_dir / LOG_FILE_NAME,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(levelname)-8s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    return handler


def _console_handler(level: int) -> logging.Handler:
    theme = Theme({
        "logging.level.info": "bold magenta",
        "logging.level.warning": "bold yellow",
    })
    handler = RichHandler(
        console=Console(theme=theme, stderr=True),
        rich_tracebacks=True,
        show_time=False,
        show_path=False,
    )
    handler.setLevel(level)
    return handler


def setup_logging(log_level: str = "INFO", data_dir: Optional[Path] = None) -> None:
    """Attach the file and console handlers once per process.

    Args:
        log_level: Console level (DEBUG, INFO, WARNING, ERROR). Unknown
            names fall back to INFO.
        data_dir: Where artshelf.log goes; defaults to DATA_DIR.
    """
    global _logging_initialized
    if _logging_initialized:
        return

    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(_file_handler(data_dir or _get_data_dir()))
    root.addHandler(_console_handler(level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _logging_initialized = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the specified module."""
    return logging.getLogger(name)
