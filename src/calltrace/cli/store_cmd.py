"""calltrace stats / cleanup / export -- trace store maintenance."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from calltrace.cli.output import render_statistics
from calltrace.errors import StorageError, TraceValidationError
from calltrace.models.config import find_project_root, load_project_config
from calltrace.models.query import TraceFilters
from calltrace.storage.trace_store import TraceStore


def _open_store(console: Console) -> TraceStore:
    project_root = find_project_root()
    project_config = load_project_config(project_root)
    if not (project_root / project_config.storage.storage_dir).exists():
        console.print("[dim]No .calltrace/ directory found. No traces recorded yet.[/dim]")
        raise typer.Exit(code=0)
    return TraceStore(project_root, project_config.storage)


def stats() -> None:
    """Show store size, retention range and per-tool summaries."""
    console = Console()
    store = _open_store(console)
    try:
        statistics = asyncio.run(store.get_statistics())
    except StorageError as exc:
        console.print(f"[red]Could not read traces: {exc}[/red]")
        raise typer.Exit(code=1)
    render_statistics(statistics, console)


def cleanup(
    force: bool = typer.Option(False, "--force", help="Remove every trace regardless of age"),
) -> None:
    """Remove (or archive) traces older than the retention window."""
    console = Console()
    store = _open_store(console)
    result = asyncio.run(store.cleanup(force=force))
    console.print(f"Deleted {result.deleted} trace(s), archived {result.archived}.")


def export(
    format: str = typer.Option("json", "--format", "-f", help="Export format: json or csv"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout"),
    command: Optional[str] = typer.Option(None, "--command", "-c", help="Filter by command substring"),
) -> None:
    """Export stored traces as JSON records or CSV summaries."""
    console = Console()
    store = _open_store(console)
    try:
        exported = asyncio.run(store.export(format, TraceFilters(command=command)))
    except TraceValidationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2)
    except StorageError as exc:
        console.print(f"[red]Could not read traces: {exc}[/red]")
        raise typer.Exit(code=1)

    if exported.format == "json":
        content = json.dumps(
            {"data": exported.data, "metadata": exported.metadata.model_dump(mode="json")},
            indent=2,
            ensure_ascii=False,
        )
    else:
        content = exported.data

    if output is None:
        typer.echo(content)
        return
    output.write_text(content, encoding="utf-8")
    console.print(f"Exported {exported.metadata.record_count} trace(s) to {output}")
