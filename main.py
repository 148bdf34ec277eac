"""Artshelf CLI entry point."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from artshelf import __version__
from artshelf.config import DEFAULT_CONFIG_PATH, ArtshelfConfig, load_config, write_default_config
from artshelf.database import dispose_engine, get_engine, init_db, reset_database
from artshelf.logging_config import setup_logging
from artshelf.monitor import PerformanceReport
from artshelf.records import ScanOptions, ScanResult
from artshelf.repository import Repository
from artshelf.scanner import ScanOrchestrator

app = typer.Typer(add_completion=False, help="Artshelf artwork library CLI")
logger = logging.getLogger("artshelf")


def _ensure_config() -> ArtshelfConfig:
    try:
        config = load_config()
    except FileNotFoundError:
        typer.echo("[ERROR] config.ini not found. Run: artshelf init --library /path/to/artworks")
        raise typer.Exit(code=1)
    setup_logging(config.logging.level)
    return config


def _options(
    config: ArtshelfConfig,
    path: Optional[Path],
    scan_type: Optional[str],
    force: bool = False,
    max_concurrency: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> ScanOptions:
    return ScanOptions(
        scan_path=(path or config.library_path).expanduser().resolve(),
        force_update=force,
        scan_type=scan_type,
        max_concurrency=max_concurrency,
        batch_size=batch_size,
    )


def _print_result(result: ScanResult) -> None:
    mark = "✗" if result.cancelled else "✓"
    typer.echo(
        f"{mark} Scan {'cancelled' if result.cancelled else 'completed'} "
        f"in {result.processing_time_ms / 1000:.1f}s: "
        f"{result.new_artworks} artworks, {result.new_images} images, "
        f"{result.new_artists} artists, {result.new_tags} tags added, "
        f"{result.skipped_artworks} skipped, {result.updated_artworks} updated, "
        f"{result.removed_artworks} removed."
    )
    if result.errors:
        typer.echo(f"[WARN] {len(result.errors)} errors:")
        for error in result.errors[:20]:
            typer.echo(f"  - {error}")
        if len(result.errors) > 20:
            typer.echo(f"  ... and {len(result.errors) - 20} more (see artshelf.log)")


def _print_report(report: Optional[PerformanceReport]) -> None:
    if report is None:
        typer.echo("[INFO] Monitoring disabled; no performance report.")
        return
    typer.echo(f"Performance: {'healthy' if report.is_healthy else 'degraded'}")
    if report.metrics is not None:
        m = report.metrics
        typer.echo(f"  Memory RSS: {m.memory_rss / (1024 ** 2):.0f} MB")
        typer.echo(f"  Scan rate: {m.scanning_rate:.1f} items/s")
        typer.echo(f"  Avg query: {m.db_average_query_ms:.0f} ms")
    for trend in report.trends:
        typer.echo(
            f"  {trend.metric}: {trend.direction} ({trend.change_percent:+.1f}%, "
            f"confidence {trend.confidence:.0%})"
        )
    for issue in report.issues:
        typer.echo(f"  [ISSUE] {issue}")
    for tip in report.recommendations:
        typer.echo(f"  [TIP] {tip}")


@app.command()
def init(
    library: Path = typer.Option(..., "--library", help="Path to your artwork folder"),
    name: str = typer.Option("My Art Library", "--name", help="Library name"),
) -> None:
    """Initialize config.ini with default settings."""
    config_path = write_default_config(library, name, DEFAULT_CONFIG_PATH)
    typer.echo(f"[OK] Config created at {config_path}")


@app.command()
def scan(
    scan_type: Optional[str] = typer.Option(
        None, "--type", help="Strategy: metadata, media, full or unified"
    ),
    force: bool = typer.Option(False, "--force", help="Re-ingest artworks already stored"),
    path: Optional[Path] = typer.Option(None, "--path", help="Scan a subfolder"),
    max_concurrency: Optional[int] = typer.Option(None, "--max-concurrency"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size"),
    report: bool = typer.Option(False, "--report", help="Print the performance report"),
) -> None:
    """Scan the library and update the database."""
    config = _ensure_config()
    options = _options(config, path, scan_type, force, max_concurrency, batch_size)

    async def _run() -> tuple[ScanResult, Optional[PerformanceReport]]:
        engine = get_engine(config.database_path)
        try:
            await init_db(engine)
            orchestrator = ScanOrchestrator(config, engine=engine)
            result = await orchestrator.scan(options)
            return result, orchestrator.last_report
        finally:
            await dispose_engine()

    result, perf = asyncio.run(_run())
    _print_result(result)
    if report:
        _print_report(perf)
    if result.errors and result.new_artworks == 0 and result.total_artworks == 0:
        raise typer.Exit(code=1)


@app.command()
def estimate(
    scan_type: Optional[str] = typer.Option(None, "--type", help="Strategy name"),
    path: Optional[Path] = typer.Option(None, "--path", help="Estimate a subfolder"),
) -> None:
    """Estimate how long a scan would take."""
    config = _ensure_config()
    options = _options(config, path, scan_type)

    async def _run() -> float:
        try:
            return await ScanOrchestrator(config, engine=get_engine(config.database_path)).estimate(options)
        finally:
            await dispose_engine()

    seconds = asyncio.run(_run())
    typer.echo(f"[INFO] Estimated scan time: {seconds:.1f}s")


@app.command()
def stats() -> None:
    """Show library statistics."""
    config = _ensure_config()

    async def _run() -> dict[str, int]:
        engine = get_engine(config.database_path)
        try:
            await init_db(engine)
            return await Repository(engine, config.library_path).library_stats()
        finally:
            await dispose_engine()

    counts = asyncio.run(_run())
    typer.echo(f"Library Statistics ({config.library.name}):")
    typer.echo(f"  Artists: {counts['artists']}")
    typer.echo(f"  Artworks: {counts['artworks']}")
    typer.echo(f"  Images: {counts['images']}")
    typer.echo(f"  Tags: {counts['tags']}")


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", help="Confirm destructive reset"),
) -> None:
    """Delete the database and recreate an empty schema."""
    if not yes:
        typer.echo("[ERROR] This will delete your database. Use --yes.")
        raise typer.Exit(code=1)
    config = _ensure_config()

    async def _run() -> None:
        try:
            await reset_database(config.database_path)
        finally:
            await dispose_engine()

    asyncio.run(_run())
    typer.echo(f"[OK] Database reset at {config.database_path}")


@app.command()
def version() -> None:
    """Print the artshelf version."""
    typer.echo(__version__)


if __name__ == "__main__":
    app()
