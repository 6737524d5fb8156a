"""``loadstage plan`` - print the stage profile without generating load."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from loadstage._internal.config import DEFAULT_STAGES
from loadstage._internal.errors import LoadStageError
from loadstage.patterns.stages import Stage, StagedPattern, format_duration

console = Console()


def plan_cmd(
    stages: list[str] | None = typer.Option(
        None,
        "--stage",
        "-s",
        help="Stage as DURATION:TARGET. Defaults to the built-in seven-stage profile.",
    ),
) -> None:
    """Show when each stage starts and ends and the users it ramps between."""
    try:
        parsed = tuple(Stage.parse(value) for value in stages) if stages else DEFAULT_STAGES
        pattern = StagedPattern(parsed)
    except LoadStageError as exc:
        raise typer.BadParameter(str(exc), param_hint="--stage") from exc

    table = Table(title="Stage Profile", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Users", justify="right")

    start = 0.0
    previous = pattern.start_target
    for i, (stage, end) in enumerate(zip(pattern.stages, pattern.boundaries(), strict=True)):
        table.add_row(
            str(i + 1),
            format_duration(start) if start else "0s",
            format_duration(end),
            format_duration(stage.duration),
            f"{previous} -> {stage.target}",
        )
        start = end
        previous = stage.target

    console.print(table)
    console.print(
        f"Total duration: {format_duration(pattern.total_duration)}, "
        f"peak {pattern.max_target} virtual users"
    )
