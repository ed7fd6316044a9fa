"""
Subgraph Sync CLI - Command Line Interface.

Incremental replication of a GraphQL subgraph into D1/SQLite and GraphDB.

Commands:
    sync      Run one pass over the selected partitions and sections
    watch     Run passes continuously until interrupted
    status    Show stored checkpoints
    reset     Clear checkpoints (and graph contexts)
    sections  List sections and group aliases
    config    Manage configuration
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from subgraph_sync import __version__
from subgraph_sync.config import Settings, StoreBackend, load_settings
from subgraph_sync.core.engine import SyncOrchestrator, SyncStats, summarize
from subgraph_sync.core.watch import WatchRunner
from subgraph_sync.sections import REGISTRY, SECTION_GROUPS, resolve_sections
from subgraph_sync.utils.display import (
    print_checkpoints,
    print_error,
    print_info,
    print_section_errors,
    print_sections,
    print_success,
    print_summary,
    print_warning,
)
from subgraph_sync.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="subgraph-sync",
    help="Incremental subgraph replication into D1/SQLite and GraphDB.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]subgraph-sync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Subgraph Sync - checkpointed subgraph replication."""


# Shared option declarations
SECTION_OPTION = typer.Option(
    None,
    "--section",
    "-s",
    help="Section or group to sync (can be repeated).",
)
PARTITION_OPTION = typer.Option(
    None,
    "--partition",
    "-p",
    help="Partition name or chain id (can be repeated).",
)
CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file (TOML or JSON).",
    exists=True,
    dir_okay=False,
)


# =============================================================================
# SYNC Command
# =============================================================================
@app.command()
def sync(
    sections: Optional[list[str]] = SECTION_OPTION,
    partitions: Optional[list[str]] = PARTITION_OPTION,
    reset: bool = typer.Option(
        False,
        "--reset",
        help="Clear checkpoints and graph contexts of the selection first.",
    ),
    batch_size: Optional[int] = typer.Option(
        None,
        "--batch-size",
        min=1,
        help="Write operations per flush (overrides config).",
    ),
    page_size: Optional[int] = typer.Option(
        None,
        "--page-size",
        min=1,
        help="Records per upstream page (overrides config).",
    ),
    fetch_documents: Optional[bool] = typer.Option(
        None,
        "--fetch-documents/--no-fetch-documents",
        help="Fetch agent registration documents.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print the run summary as JSON.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """
    Run one incremental pass.

    Example:
        subgraph-sync sync -p sepolia -s agents -s feedback
    """
    settings = _prepare(
        config_file,
        quiet,
        batch_size=batch_size,
        page_size=page_size,
        fetch_documents=fetch_documents,
    )
    _check_selection(sections)

    if reset:
        print_warning("Resetting checkpoints for the selected sections")

    orchestrator = SyncOrchestrator(settings)
    try:
        stats = asyncio.run(orchestrator.run_all(partitions, sections, reset=reset))
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    _report(stats, quiet, json_output)
    raise typer.Exit(stats.exit_code)


# =============================================================================
# WATCH Command
# =============================================================================
@app.command()
def watch(
    sections: Optional[list[str]] = SECTION_OPTION,
    partitions: Optional[list[str]] = PARTITION_OPTION,
    reset: bool = typer.Option(
        False,
        "--reset",
        help="Reset before the first pass only.",
    ),
    interval: Optional[float] = typer.Option(
        None,
        "--interval",
        min=0.1,
        help="Seconds between pass starts (overrides config).",
    ),
    min_delay: Optional[float] = typer.Option(
        None,
        "--min-delay",
        min=0,
        help="Minimum pause between passes (overrides config).",
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Write operations per flush."),
    page_size: Optional[int] = typer.Option(None, "--page-size", min=1, help="Records per upstream page."),
    fetch_documents: Optional[bool] = typer.Option(
        None,
        "--fetch-documents/--no-fetch-documents",
        help="Fetch agent registration documents.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Minimal output."),
) -> None:
    """
    Run passes continuously. Ctrl+C finishes the current pass and stops.

    Example:
        subgraph-sync watch --interval 30 -s agents
    """
    settings = _prepare(
        config_file,
        quiet,
        batch_size=batch_size,
        page_size=page_size,
        fetch_documents=fetch_documents,
    )
    _check_selection(sections)
    if interval is not None:
        settings.watch.interval_seconds = interval
    if min_delay is not None:
        settings.watch.min_delay_seconds = min_delay

    def on_pass(number: int, stats: SyncStats) -> None:
        if not quiet:
            print_summary(stats, title=f"Pass {number}")
            print_section_errors(stats)

    async def run() -> SyncStats | None:
        runner = WatchRunner(
            SyncOrchestrator(settings),
            interval=settings.watch.interval_seconds,
            min_delay=settings.watch.min_delay_seconds,
            on_pass=on_pass,
        )
        runner.install_signal_handlers()
        return await runner.run(partitions, sections, reset=reset)

    if not quiet:
        print_info(
            f"Watching every {settings.watch.interval_seconds:g}s "
            f"(min delay {settings.watch.min_delay_seconds:g}s). Ctrl+C to stop."
        )
    try:
        last = asyncio.run(run())
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    print_success("Watch stopped.")
    raise typer.Exit(last.exit_code if last is not None else 0)


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    partitions: Optional[list[str]] = PARTITION_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Show stored checkpoints."""
    settings = _prepare(config_file, quiet=True)
    try:
        entries = asyncio.run(SyncOrchestrator(settings).status(partitions))
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if not entries:
        print_info("No checkpoints stored yet. Run a sync first.")
        raise typer.Exit(0)
    print_checkpoints(entries)


# =============================================================================
# RESET Command
# =============================================================================
@app.command()
def reset(
    sections: Optional[list[str]] = SECTION_OPTION,
    partitions: Optional[list[str]] = PARTITION_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Clear checkpoints so the next pass starts from the origin."""
    settings = _prepare(config_file, quiet=True)
    names = _check_selection(sections)
    if not yes:
        typer.confirm(f"Reset {', '.join(names)}?", abort=True)

    try:
        done = asyncio.run(SyncOrchestrator(settings).reset(partitions, sections))
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Reset {len(names)} section(s) on {', '.join(done) or 'no partitions'}")


# =============================================================================
# SECTIONS Command
# =============================================================================
@app.command()
def sections() -> None:
    """List sections in run order and the group aliases."""
    print_sections(REGISTRY, SECTION_GROUPS)


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with the current settings (secrets redacted).",
    ),
    output: Path = typer.Option(
        Path("subgraph-sync.json"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Manage configuration."""
    settings = _load(config_file)

    if init:
        settings.to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("Partitions", ", ".join(f"{p.name} ({p.chain_id})" for p in settings.partitions) or "[dim]none[/dim]")
        table.add_row("Store", settings.writes.backend.value)
        if settings.writes.backend == StoreBackend.SQLITE:
            table.add_row("SQLite Path", str(settings.writes.sqlite_path))
        else:
            table.add_row("Account ID", settings.cloudflare_account_id or "[dim]not set[/dim]")
            table.add_row("Database ID", settings.cloudflare_d1_database_id or "[dim]not set[/dim]")
        table.add_row("Checkpoints", settings.sync.checkpoint_backend.value)
        table.add_row("GraphDB", settings.graphdb.base_url or "[dim]disabled[/dim]")
        table.add_row("Page Size", f"{settings.upstream.page_size} records")
        table.add_row("Batch Size", f"{settings.writes.batch_size} ops")
        table.add_row("Sections", ", ".join(settings.sync.sections) or "all")
        table.add_row("Watch Interval", f"{settings.watch.interval_seconds:g}s")

        console.print(table)
        return

    # Default: show help
    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _load(config_file: Path | None) -> Settings:
    try:
        return load_settings(config_file)
    except (ValidationError, ValueError, FileNotFoundError) as e:
        print_error(f"Invalid configuration: {e}")
        raise typer.Exit(1)


def _prepare(config_file: Path | None, quiet: bool, **overrides: Any) -> Settings:
    """Load settings, apply CLI overrides, validate and set up logging."""
    settings = _load(config_file)

    if overrides.get("batch_size"):
        settings.writes.batch_size = overrides["batch_size"]
    if overrides.get("page_size"):
        settings.upstream.page_size = overrides["page_size"]
    if overrides.get("fetch_documents") is not None:
        settings.sync.fetch_documents = overrides["fetch_documents"]

    errors = settings.validate_credentials()
    if errors:
        for err in errors:
            print_error(err)
        print_info("Use --help for configuration options.")
        raise typer.Exit(1)

    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )
    return settings


def _check_selection(sections: list[str] | None) -> list[str]:
    try:
        return [s.name for s in resolve_sections(sections)]
    except KeyError as e:
        print_error(str(e.args[0]) if e.args else str(e))
        raise typer.Exit(1)


def _report(stats: SyncStats, quiet: bool, json_output: bool) -> None:
    if json_output:
        console.print_json(json.dumps(summarize(stats)))
        return
    if not quiet:
        console.print()
        print_summary(stats)
    print_section_errors(stats)
    if stats.exit_code == 0:
        if not quiet:
            print_success("Sync completed successfully!")
    else:
        print_warning("Sync finished with failures.")


if __name__ == "__main__":
    app()
