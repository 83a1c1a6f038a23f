"""calltrace CLI entry point."""

from pathlib import Path
from typing import Optional

import typer

from calltrace import __version__
from calltrace.cli.report_cmd import report as report_cmd
from calltrace.cli.store_cmd import cleanup, export, stats
from calltrace.cli.traces_cmd import show, traces
from calltrace.logging_setup import setup_logging

app = typer.Typer(
    name="calltrace",
    help="Inspect recorded command traces and their analytics",
    no_args_is_help=True,
)

# Register subcommands
app.command(name="report")(report_cmd)
app.command()(traces)
app.command()(show)
app.command()(stats)
app.command()(cleanup)
app.command()(export)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"calltrace {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Append JSON log lines to this file."),
    verbose: bool = typer.Option(False, "-V", "--verbose", help="Log debug events."),
) -> None:
    """Inspect recorded command traces and their analytics."""
    if log_file is not None or verbose:
        setup_logging(log_file=log_file, verbose=verbose)
