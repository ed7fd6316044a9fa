"""
Rich Terminal Display Components.

Console output for the CLI:
- Per-section summary table after a pass
- Checkpoint and section listings
- Status messages
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from subgraph_sync.core.checkpoints import CheckpointEntry
    from subgraph_sync.core.engine import SyncStats
    from subgraph_sync.sections.base import SectionSpec


console = Console()


def format_status(status: str) -> str:
    """Format status with color."""
    colors = {
        "ok": "[green]✓ ok[/green]",
        "failed": "[red]✗ failed[/red]",
        "unavailable": "[dim]unavailable[/dim]",
        "aborted": "[yellow]aborted[/yellow]",
    }
    return colors.get(status, status)


def print_summary(stats: "SyncStats", title: str = "Sync Summary") -> None:
    """Print one row per (partition, section) after a pass."""
    table = Table(title=title, border_style="green")
    table.add_column("Partition", style="cyan")
    table.add_column("Section")
    table.add_column("Status")
    table.add_column("Fetched", justify="right")
    table.add_column("Written", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Errored", justify="right")
    table.add_column("Cursor", style="dim")

    for partition in stats.partitions:
        if partition.error and not partition.sections:
            table.add_row(partition.partition, "-", format_status("failed"), "", "", "", "", partition.error[:60])
            continue
        for section in partition.sections:
            status = "aborted" if section.stopped == "aborted" else section.status
            cursor = section.end_cursor or section.start_cursor
            table.add_row(
                partition.partition,
                section.section,
                format_status(status),
                f"{section.fetched:,}",
                f"{section.written:,}",
                f"{section.skipped:,}",
                f"{section.errored:,}",
                str(cursor) if cursor is not None else "",
            )

    console.print(table)
    console.print(
        f"[dim]{stats.fetched:,} fetched, {stats.written:,} written, "
        f"{stats.errored:,} errored in {stats.duration_seconds:.1f}s[/dim]"
    )


def print_section_errors(stats: "SyncStats", limit: int = 10) -> None:
    """List section and partition errors."""
    errors = [f"{p.partition}: {p.error}" for p in stats.partitions if p.error]
    errors += [f"{s.partition}/{s.section}: {s.error}" for s in stats.sections if s.error]
    if not errors:
        return
    print_warning(f"{len(errors)} errors occurred:")
    for err in errors[:limit]:
        print_error(f"  • {err}")
    if len(errors) > limit:
        print_info(f"  ... and {len(errors) - limit} more")


def print_checkpoints(entries: Iterable["CheckpointEntry"]) -> None:
    """Print stored checkpoints."""
    table = Table(title="Checkpoints", border_style="blue")
    table.add_column("Partition", style="cyan")
    table.add_column("Section")
    table.add_column("Cursor", justify="right")
    table.add_column("Updated", justify="right", style="dim")

    for entry in entries:
        table.add_row(entry.partition, entry.section, str(entry.cursor), str(entry.updated_at))
    console.print(table)


def print_sections(sections: Iterable["SectionSpec"], groups: dict[str, tuple[str, ...]]) -> None:
    """Print the section registry and group aliases."""
    table = Table(title="Sections", border_style="cyan")
    table.add_column("Section", style="cyan")
    table.add_column("Collection")
    table.add_column("Ordering")
    table.add_column("Required", justify="center")
    table.add_column("Description", style="dim")

    for section in sections:
        table.add_row(
            section.name,
            section.collection,
            section.ordering_field,
            "yes" if not section.optional else "",
            section.description,
        )
    console.print(table)

    for group, names in groups.items():
        console.print(f"[bold]{group}[/bold]: {', '.join(names)}")


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
