"""calltrace report -- aggregate analytics over recently stored traces.

Aggregates every trace stored in the last --hours and prints execution
metrics, tool usage and ranked optimization recommendations.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import typer
from rich.console import Console

from calltrace.analytics.aggregator import AnalyticsAggregator
from calltrace.cli.output import render_aggregate, render_recommendations
from calltrace.errors import StorageError
from calltrace.models.config import find_project_root, load_project_config
from calltrace.models.query import TraceFilters
from calltrace.storage.trace_store import TraceStore


def report(
    hours: float = typer.Option(24.0, "--hours", "-H", help="Aggregate traces stored in the last N hours"),
    command: Optional[str] = typer.Option(None, "--command", "-c", help="Only traces whose command contains this text"),
) -> None:
    """Show aggregate analytics and recommendations."""
    console = Console()

    project_root = find_project_root()
    project_config = load_project_config(project_root)
    if not (project_root / project_config.storage.storage_dir).exists():
        console.print("[dim]No .calltrace/ directory found. No traces recorded yet.[/dim]")
        raise typer.Exit(code=0)

    store = TraceStore(project_root, project_config.storage)
    aggregator = AnalyticsAggregator(project_config.analytics, store=store)
    end = datetime.now(timezone.utc)
    start = end - timedelta(hours=hours)

    try:
        if command:
            traces = asyncio.run(store.search(TraceFilters(start=start, end=end, command=command)))
            aggregate = aggregator.process_traces(traces)
        else:
            aggregate = asyncio.run(aggregator.get_analytics_for_time_range(start, end))
    except StorageError as exc:
        console.print(f"[red]Could not read traces: {exc}[/red]")
        raise typer.Exit(code=1)

    if aggregate.trace_count == 0:
        console.print(f"[dim]No traces found in the last {hours:g} hours.[/dim]")
        raise typer.Exit(code=0)

    render_aggregate(aggregate, console)
    console.print()
    render_recommendations(aggregator.get_optimization_recommendations(), console)
