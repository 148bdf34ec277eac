"""artshelf: concurrent scan-and-ingest pipeline for artwork libraries.

Modules:
- config: INI configuration
- logging_config: console and file logging
- models / database / repository: SQLite storage
- metadata / media / path_utils: file parsing and association
- concurrency / batching / db_optimizer: bounded async execution and writes
- progress / monitor: telemetry
- strategies / scanner: scan strategies and the orchestrator
"""

__version__ = "0.1.0"
