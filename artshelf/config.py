"""Config management for artshelf.

Reads `config.ini` from DATA_DIR (the project root unless the DATA_DIR
environment variable points elsewhere).
"""

from __future__ import annotations

import configparser
import dataclasses
import os
import pathlib
import sys
from typing import Optional

from .logging_config import get_logger

logger = get_logger(__name__)


def _get_project_root() -> pathlib.Path:
    if getattr(sys, "frozen", False):
        return pathlib.Path(sys.executable).resolve().parent
    return pathlib.Path(__file__).resolve().parents[1]


PROJECT_ROOT = _get_project_root()

# DATA_DIR holds all persistent state (config.ini, library.db, artshelf.log).
DATA_DIR = pathlib.Path(os.environ.get("DATA_DIR", str(PROJECT_ROOT)))
DEFAULT_CONFIG_PATH = DATA_DIR / "config.ini"

STRATEGY_NAMES = ("metadata", "media", "full", "unified")


def _default_concurrency() -> int:
    return (os.cpu_count() or 1) * 2


@dataclasses.dataclass
class LibraryConfig:
    path: pathlib.Path
    name: str = "My Art Library"


@dataclasses.dataclass
class ScannerConfig:
    default_strategy: str = "unified"
    max_concurrency: int = dataclasses.field(default_factory=_default_concurrency)
    micro_batch_size: int = 50
    max_concurrent_flushes: int = 3
    stream_buffer_size: int = 100
    memory_threshold_mb: int = 500
    adaptive_concurrency: bool = False
    max_depth: int = 0
    flush_retry_delay: float = 1.0
    progress_interval: float = 1.0
    ignore_patterns: tuple[str, ...] = (".DS_Store", "Thumbs.db", "@eaDir")

    @property
    def memory_threshold_bytes(self) -> int:
        return self.memory_threshold_mb * 1024 * 1024


@dataclasses.dataclass
class DatabaseConfig:
    path: Optional[pathlib.Path] = None
    pool_size: int = 0
    query_timeout: float = 30.0
    batch_timeout: float = 5.0
    retry_attempts: int = 3
    retry_delay: float = 1.0


@dataclasses.dataclass
class MonitoringConfig:
    enabled: bool = True
    interval: float = 2.0
    blocking_threshold: float = 5.0
    max_history: int = 1000
    memory_usage_percent: float = 85.0
    failure_rate_percent: float = 5.0
    average_query_ms: float = 3000.0
    pool_usage_percent: float = 80.0
    queue_length: int = 1000


@dataclasses.dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclasses.dataclass
class ArtshelfConfig:
    library: LibraryConfig
    scanner: ScannerConfig = dataclasses.field(default_factory=ScannerConfig)
    database: DatabaseConfig = dataclasses.field(default_factory=DatabaseConfig)
    monitoring: MonitoringConfig = dataclasses.field(default_factory=MonitoringConfig)
    logging: LoggingConfig = dataclasses.field(default_factory=LoggingConfig)

    @property
    def library_path(self) -> pathlib.Path:
        return self.library.path

    @property
    def database_path(self) -> pathlib.Path:
        return self.database.path or DATA_DIR / "library.db"


def _parse_bool(value: str, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_list(value: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in value.split(",") if p.strip())


def load_config(config_path: Optional[pathlib.Path] = None) -> ArtshelfConfig:
    """Load configuration from config.ini.

    Defaults to `config.ini` in DATA_DIR. Unknown strategy names fall back
    to `unified` with a warning.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    parser = configparser.ConfigParser()
    parser.read(path)

    lib_path = pathlib.Path(
        parser.get("library", "path", fallback="/path/to/library")
    ).expanduser()
    lib_name = parser.get("library", "name", fallback="My Art Library")

    strategy = parser.get("scanner", "default_strategy", fallback="unified").strip().lower()
    if strategy not in STRATEGY_NAMES:
        logger.warning(f"Unknown default_strategy '{strategy}', using 'unified'")
        strategy = "unified"

    scanner = ScannerConfig(
        default_strategy=strategy,
        max_concurrency=parser.getint(
            "scanner", "max_concurrency", fallback=_default_concurrency()
        ),
        micro_batch_size=parser.getint("scanner", "micro_batch_size", fallback=50),
        max_concurrent_flushes=parser.getint(
            "scanner", "max_concurrent_flushes", fallback=3
        ),
        stream_buffer_size=parser.getint("scanner", "stream_buffer_size", fallback=100),
        memory_threshold_mb=parser.getint("scanner", "memory_threshold_mb", fallback=500),
        adaptive_concurrency=_parse_bool(
            parser.get("scanner", "adaptive_concurrency", fallback="false"), False
        ),
        max_depth=parser.getint("scanner", "max_depth", fallback=0),
        flush_retry_delay=parser.getfloat("scanner", "flush_retry_delay", fallback=1.0),
        progress_interval=parser.getfloat("scanner", "progress_interval", fallback=1.0),
        ignore_patterns=_split_list(
            parser.get(
                "scanner",
                "ignore_patterns",
                fallback=".DS_Store,Thumbs.db,@eaDir",
            )
        ),
    )

    db_path = parser.get("database", "path", fallback="").strip()
    database = DatabaseConfig(
        path=pathlib.Path(db_path).expanduser() if db_path else None,
        pool_size=parser.getint("database", "pool_size", fallback=0),
        query_timeout=parser.getfloat("database", "query_timeout", fallback=30.0),
        batch_timeout=parser.getfloat("database", "batch_timeout", fallback=5.0),
        retry_attempts=parser.getint("database", "retry_attempts", fallback=3),
        retry_delay=parser.getfloat("database", "retry_delay", fallback=1.0),
    )

    monitoring = MonitoringConfig(
        enabled=_parse_bool(
            parser.get("monitoring", "enabled", fallback="true"), True
        ),
        interval=parser.getfloat("monitoring", "interval", fallback=2.0),
        blocking_threshold=parser.getfloat(
            "monitoring", "blocking_threshold", fallback=5.0
        ),
        max_history=parser.getint("monitoring", "max_history", fallback=1000),
        memory_usage_percent=parser.getfloat(
            "monitoring", "memory_usage_percent", fallback=85.0
        ),
        failure_rate_percent=parser.getfloat(
            "monitoring", "failure_rate_percent", fallback=5.0
        ),
        average_query_ms=parser.getfloat(
            "monitoring", "average_query_ms", fallback=3000.0
        ),
        pool_usage_percent=parser.getfloat(
            "monitoring", "pool_usage_percent", fallback=80.0
        ),
        queue_length=parser.getint("monitoring", "queue_length", fallback=1000),
    )

    logging_cfg = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO").strip().upper(),
    )

    return ArtshelfConfig(
        library=LibraryConfig(path=lib_path, name=lib_name),
        scanner=scanner,
        database=database,
        monitoring=monitoring,
        logging=logging_cfg,
    )


_cached_config: Optional[ArtshelfConfig] = None


def get_config() -> ArtshelfConfig:
    """Return the cached config singleton. Loads from disk on first call."""
    global _cached_config
    if _cached_config is None:
        _cached_config = load_config()
    return _cached_config


def reset_config_cache() -> None:
    """Clear the cached config (useful for tests)."""
    global _cached_config
    _cached_config = None


def write_default_config(
    library_path: pathlib.Path,
    library_name: str = "My Art Library",
    config_path: Optional[pathlib.Path] = None,
) -> pathlib.Path:
    """Write a config.ini with default settings for the given library."""
    path = config_path or DEFAULT_CONFIG_PATH
    defaults = ScannerConfig()
    parser = configparser.ConfigParser()

    parser["library"] = {
        "path": str(library_path.expanduser()),
        "name": library_name,
    }
    parser["scanner"] = {
        "default_strategy": defaults.default_strategy,
        "max_concurrency": str(defaults.max_concurrency),
        "micro_batch_size": str(defaults.micro_batch_size),
        "max_concurrent_flushes": str(defaults.max_concurrent_flushes),
        "stream_buffer_size": str(defaults.stream_buffer_size),
        "memory_threshold_mb": str(defaults.memory_threshold_mb),
        "adaptive_concurrency": "false",
        "max_depth": "0",
        "ignore_patterns": ",".join(defaults.ignore_patterns),
    }
    parser["database"] = {
        "query_timeout": "30",
        "retry_attempts": "3",
        "retry_delay": "1.0",
    }
    parser["monitoring"] = {
        "enabled": "true",
        "interval": "2",
        "blocking_threshold": "5",
    }
    parser["logging"] = {"level": "INFO"}

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        parser.write(handle)

    logger.debug(f"Wrote default config to {path}")
    return path
