"""calltrace traces / show -- list stored traces and inspect one."""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console

from calltrace.cli.output import render_trace_detail, render_trace_table
from calltrace.errors import StorageError
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


def traces(
    command: Optional[str] = typer.Option(None, "--command", "-c", help="Filter by command substring"),
    tool: Optional[list[str]] = typer.Option(None, "--tool", "-t", help="Only traces that used this tool"),
    success: Optional[bool] = typer.Option(None, "--succeeded/--failed", help="Filter by trace outcome"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of traces to show"),
) -> None:
    """List stored traces, newest first."""
    console = Console()
    store = _open_store(console)
    filters = TraceFilters(command=command, tools=tool or [], success=success, limit=limit)
    try:
        found = asyncio.run(store.search(filters))
    except StorageError as exc:
        console.print(f"[red]Could not read traces: {exc}[/red]")
        raise typer.Exit(code=1)

    if not found:
        console.print("[dim]No matching traces found.[/dim]")
        raise typer.Exit(code=0)
    render_trace_table(found, console)
    console.print(f"\n{len(found)} trace(s) shown.")


def show(
    trace_id: str = typer.Argument(..., help="Trace ID to display"),
) -> None:
    """Display one stored trace with its call tree."""
    console = Console()
    store = _open_store(console)
    try:
        trace = asyncio.run(store.retrieve(trace_id))
    except StorageError as exc:
        console.print(f"[red]Could not read trace '{trace_id}': {exc}[/red]")
        raise typer.Exit(code=1)

    if trace is None:
        console.print(f"Trace '{trace_id}' not found.")
        raise typer.Exit(code=1)
    render_trace_detail(trace, console)
