"""Main Typer application - entry point for the ``loadstage`` CLI."""

from __future__ import annotations

import typer

from loadstage import __version__
from loadstage.cli.plan import plan_cmd
from loadstage.cli.run import run_cmd

app = typer.Typer(
    name="loadstage",
    help="Staged-concurrency HTTP load testing with pass/fail thresholds.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("run", help="Run the staged load test against a target.")(run_cmd)
app.command("plan", help="Print the stage profile without generating load.")(plan_cmd)


def _version_callback(value: bool) -> None:
    """Print version and exit.

    Args:
        value: True if --version was passed.
    """
    if value:
        typer.echo(f"loadstage {__version__}")
        raise typer.Exit


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """loadstage - staged HTTP load tests with k6-style thresholds."""
