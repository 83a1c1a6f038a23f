"""Rich terminal rendering shared by the calltrace commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich import box
from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from calltrace.models.analytics import AggregatedAnalytics, Recommendation
    from calltrace.models.query import StoreStatistics
    from calltrace.models.trace import StoredTrace

# Priority value -> Rich style
_PRIORITY_STYLES: dict[str, str] = {
    "critical": "bold bright_red",
    "high": "bold red",
    "medium": "yellow",
    "low": "dim",
}


def status_display(success: bool) -> str:
    return "[bold green]✓ OK[/bold green]" if success else "[bold red]✗ FAILED[/bold red]"


def render_trace_table(traces: list[StoredTrace], console: Console, title: str = "Traces") -> None:
    table = Table(box=box.ROUNDED, title=title)
    table.add_column("Trace ID")
    table.add_column("Stored")
    table.add_column("Command")
    table.add_column("Status")
    table.add_column("Calls", justify="right")
    table.add_column("Duration", justify="right")

    for trace in traces:
        table.add_row(
            (trace.id or "-")[:12],
            trace.stored_at.strftime("%Y-%m-%d %H:%M:%S"),
            trace.command,
            status_display(trace.success),
            str(len(trace.execution_flow.tool_calls)),
            f"{trace.duration_ms:.0f} ms",
        )
    console.print(table)


def render_trace_detail(trace: StoredTrace, console: Console) -> None:
    """Render one trace: header, call tree and analytics summary."""
    flow = trace.execution_flow
    console.print()
    console.print(f"[bold]Trace:[/bold] {trace.id}")
    console.print(f"[bold]Command:[/bold] {trace.command}")
    console.print(f"[bold]Status:[/bold] {status_display(trace.success)}  [bold]Duration:[/bold] {trace.duration_ms:.0f} ms")
    if trace.error_message:
        console.print(f"[bold]Error:[/bold] {trace.error_message}")
    console.print()

    console.print("[bold]Call Tree[/bold]")
    for node in flow.walk():
        marker = "✓" if node.success else "✗"
        suffix = f" [red]{node.error}[/red]" if node.error else ""
        console.print(f"{'  ' * (node.level + 1)}{marker} {node.tool} ({node.duration_ms:.0f} ms){suffix}")
    console.print()

    if trace.analytics is not None:
        metrics = trace.analytics.execution_metrics
        summary = Table(box=box.SIMPLE, show_header=False, padding=(0, 2))
        summary.add_column("Key", style="bold")
        summary.add_column("Value")
        summary.add_row("Calls", f"{metrics.successful_calls}/{metrics.total_calls} succeeded ({metrics.success_rate:.0%})")
        summary.add_row(
            "Execution",
            f"avg={metrics.average_execution_time:.0f} ms p50={metrics.p50_execution_time:.0f} ms "
            f"p95={metrics.p95_execution_time:.0f} ms",
        )
        summary.add_row("Optimization score", f"{trace.analytics.performance_insights.optimization_score:.0f}")
        console.print(summary)

    if flow.errors:
        console.print("[bold]Errors[/bold]")
        for i, error in enumerate(flow.errors, 1):
            console.print(f"  {i}. [{error.type}] {error.message}")
        console.print()


def render_aggregate(aggregate: AggregatedAnalytics, console: Console) -> None:
    metrics = aggregate.metrics
    console.print()
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Traces", f"{aggregate.successful_traces}/{aggregate.trace_count} succeeded")
    table.add_row("Tool calls", f"{metrics.total_calls} ({metrics.error_rate:.1%} errors)")
    table.add_row(
        "Execution",
        f"avg={metrics.average_execution_time:.0f} ms p50={metrics.p50_execution_time:.0f} ms "
        f"p95={metrics.p95_execution_time:.0f} ms",
    )
    table.add_row("Cache efficiency", f"{metrics.cache_efficiency:.0%} of {metrics.cache_operations} ops")
    table.add_row("Lookup hit rate", f"{metrics.external_lookup_hit_rate:.0%} of {metrics.external_lookup_calls} lookups")
    table.add_row("Optimization score", f"{aggregate.insights.optimization_score:.0f}")
    console.print(table)

    if metrics.tool_usage_distribution:
        usage = Table(box=box.ROUNDED, title="Tool Usage")
        usage.add_column("Tool")
        usage.add_column("Calls", justify="right")
        for tool, count in sorted(metrics.tool_usage_distribution.items(), key=lambda item: (-item[1], item[0])):
            usage.add_row(tool, str(count))
        console.print(usage)


def render_recommendations(recommendations: list[Recommendation], console: Console) -> None:
    if not recommendations:
        console.print("[dim]No recommendations.[/dim]")
        return
    console.print("[bold]Recommendations[/bold]")
    for i, rec in enumerate(recommendations, 1):
        style = _PRIORITY_STYLES.get(rec.priority, "")
        console.print(f"  {i}. [{style}]{rec.priority.upper()}[/{style}] {rec.title} -- {rec.description}")


def render_statistics(stats: StoreStatistics, console: Console) -> None:
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Traces", str(stats.total_entries))
    table.add_row("Archived", str(stats.archived_entries))
    table.add_row("Disk size", f"{stats.disk_size_bytes / 1024:.1f} KiB")
    if stats.oldest_stored_at and stats.newest_stored_at:
        table.add_row("Range", f"{stats.oldest_stored_at:%Y-%m-%d %H:%M} -> {stats.newest_stored_at:%Y-%m-%d %H:%M}")
    table.add_row("Sessions", str(len(stats.sessions)))
    console.print(table)

    if stats.tools:
        tools = Table(box=box.ROUNDED, title="Tools")
        tools.add_column("Tool")
        tools.add_column("Calls", justify="right")
        tools.add_column("Failures", justify="right")
        tools.add_column("Traces", justify="right")
        for name, summary in sorted(stats.tools.items()):
            tools.add_row(name, str(summary.calls), str(summary.failures), str(summary.traces))
        console.print(tools)
