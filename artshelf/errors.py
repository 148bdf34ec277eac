"""Exception types raised by the scan pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class ScanError(Exception):
    """Base class for all scan pipeline errors."""

    kind = "scan"

    def describe(self) -> str:
        """Render the error for a scan result's error list."""
        return f"{self.kind}: {self}"


class MetadataError(ScanError):
    kind = "metadata"

    def __init__(self, path: Path | str, message: str):
        self.path = str(path)
        super().__init__(f"{self.path}: {message}")


class AssociationError(ScanError):
    kind = "association"

    def __init__(self, artwork_id: str, message: str, directory: Optional[Path | str] = None):
        self.artwork_id = artwork_id
        self.directory = str(directory) if directory is not None else None
        where = f" in {self.directory}" if self.directory else ""
        super().__init__(f"artwork {artwork_id}{where}: {message}")


class DuplicateArtworkError(ScanError):
    kind = "duplicate"

    def __init__(self, artwork_id: str, kept: Path | str, duplicate: Path | str):
        self.artwork_id = artwork_id
        self.kept = str(kept)
        self.duplicate = str(duplicate)
        super().__init__(
            f"artwork id {artwork_id} found in {self.duplicate}, "
            f"already taken by {self.kept}"
        )


class UnresolvedReferenceError(ScanError):
    """A flush referenced an entity whose id is not in the mapping yet."""

    kind = "unresolved"

    def __init__(self, entity: str, keys: list[str]):
        self.entity = entity
        self.keys = keys
        preview = ", ".join(keys[:5])
        more = f" (+{len(keys) - 5} more)" if len(keys) > 5 else ""
        super().__init__(f"{len(keys)} unresolved {entity} reference(s): {preview}{more}")


class DatabaseOperationError(ScanError):
    kind = "database"

    def __init__(self, operation: str, message: str, attempts: int = 1):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} failed after {attempts} attempt(s): {message}")


class StrategyError(ScanError):
    kind = "strategy"


class UnsupportedStrategyError(StrategyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"unsupported scan strategy '{name}'")


class ScanValidationError(StrategyError):
    kind = "validation"


class ScanRootError(ScanError):
    kind = "scan-root"


class TaskCancelledError(ScanError):
    kind = "cancelled"

    def __init__(self, message: str = "Task cancelled"):
        super().__init__(message)
