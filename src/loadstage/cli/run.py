"""``loadstage run`` - execute the staged load test with live terminal output."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from loadstage._internal.config import load_config
from loadstage._internal.errors import LoadStageError
from loadstage._internal.logging import setup_logging
from loadstage.cli.report import write_json_report
from loadstage.engine.orchestrator import LoadTestOrchestrator
from loadstage.metrics.models import Verdict
from loadstage.metrics.thresholds import Threshold
from loadstage.patterns.stages import Stage, format_duration

if TYPE_CHECKING:
    from loadstage._internal.config import LoadTestConfig
    from loadstage.metrics.models import MetricSnapshot, TestResult

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Option parsing helpers
# ---------------------------------------------------------------------------


def _parse_stages(values: list[str] | None) -> tuple[Stage, ...] | None:
    """Parse repeated ``--stage DURATION:TARGET`` options.

    Raises:
        typer.BadParameter: If any value is malformed.
    """
    if not values:
        return None
    try:
        return tuple(Stage.parse(value) for value in values)
    except LoadStageError as exc:
        raise typer.BadParameter(str(exc), param_hint="--stage") from exc


def _parse_thresholds(values: list[str] | None) -> tuple[Threshold, ...] | None:
    """Parse repeated ``--threshold METRIC:EXPR`` options.

    Raises:
        typer.BadParameter: If any value is malformed.
    """
    if not values:
        return None
    try:
        return tuple(Threshold.parse(value) for value in values)
    except LoadStageError as exc:
        raise typer.BadParameter(str(exc), param_hint="--threshold") from exc


def _think_time(think_min: float | None, think_max: float | None) -> tuple[float, float] | None:
    if think_min is None and think_max is None:
        return None
    low = 1.0 if think_min is None else think_min
    high = max(low, 3.0) if think_max is None else think_max
    return (low, high)


# ---------------------------------------------------------------------------
# Rich live display
# ---------------------------------------------------------------------------


def _make_live_table(snapshot: MetricSnapshot | None) -> Table:
    """Build a Rich table summarising the latest interval.

    Args:
        snapshot: Latest interval snapshot, or None if no tick has run yet.

    Returns:
        Formatted Rich Table.
    """
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    if snapshot is None:
        table.add_row("Status", "Starting...")
        return table

    table.add_row("Elapsed", f"{snapshot.elapsed_seconds:.0f}s")
    table.add_row("Users (running/target)", f"{snapshot.active_users}/{snapshot.target_users}")
    table.add_row("Requests/sec", f"{snapshot.requests_per_second:.1f}")
    table.add_row("p95 Latency", f"{snapshot.latency_p95:.1f}ms")
    table.add_row("Failed Requests", f"{snapshot.error_rate * 100:.2f}%")
    table.add_row("Failed Iterations", f"{snapshot.iteration_error_rate * 100:.2f}%")
    return table


def _print_summary(result: TestResult) -> None:
    """Print the final summary, per-endpoint and per-check tables.

    Args:
        result: Completed test result.
    """
    summary = result.final_summary
    table = Table(title="Test Complete", show_header=True, header_style="bold green", expand=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Target", result.base_url)
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")

    if summary is not None:
        table.add_row("Total Requests", str(summary.total_requests))
        table.add_row("Avg Requests/sec", f"{summary.requests_per_second:.1f}")
        table.add_row("p50 Latency", f"{summary.latency_p50:.1f}ms")
        table.add_row("p95 Latency", f"{summary.latency_p95:.1f}ms")
        table.add_row("p99 Latency", f"{summary.latency_p99:.1f}ms")
        table.add_row("http_req_failed", f"{summary.error_rate * 100:.2f}%")
        table.add_row("Iterations", str(summary.iterations))
        table.add_row("errors", f"{summary.iteration_error_rate * 100:.2f}%")
        if result.anomalies:
            table.add_row("Force-terminated users", f"[yellow]{result.anomalies}[/yellow]")

        if summary.endpoints:
            ep_table = Table(
                title="Per-Endpoint Breakdown",
                show_header=True,
                header_style="bold cyan",
                expand=True,
            )
            ep_table.add_column("Endpoint")
            ep_table.add_column("Requests", justify="right")
            ep_table.add_column("p50", justify="right")
            ep_table.add_column("p95", justify="right")
            ep_table.add_column("Errors", justify="right")
            ep_table.add_column("Error %", justify="right")
            for ep in summary.endpoints.values():
                ep_table.add_row(
                    ep.name,
                    str(ep.request_count),
                    f"{ep.latency_p50:.1f}ms",
                    f"{ep.latency_p95:.1f}ms",
                    str(ep.error_count),
                    f"{ep.error_rate * 100:.2f}%",
                )
            console.print(ep_table)

        if summary.checks:
            check_table = Table(title="Checks", show_header=True, header_style="bold cyan")
            check_table.add_column("Check")
            check_table.add_column("Passed", justify="right")
            check_table.add_column("Failed", justify="right")
            check_table.add_column("Pass %", justify="right")
            for check in summary.checks.values():
                check_table.add_row(
                    check.name,
                    str(check.passes),
                    str(check.fails),
                    f"{check.pass_rate * 100:.2f}%",
                )
            console.print(check_table)

    console.print(table)


def _print_thresholds(result: TestResult) -> None:
    report = result.threshold_report
    if report is None or not report.results:
        return
    table = Table(title="Thresholds", show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Threshold")
    table.add_column("Observed", justify="right")
    table.add_column("Result")
    for item in report.results:
        observed = "-" if item.observed is None else f"{item.observed:.4g}"
        status = "[green]PASS[/green]" if item.passed else f"[red]FAIL[/red] {item.message}"
        table.add_row(item.threshold.name, observed, status)
    console.print(table)


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------


def run_cmd(
    base_url: str | None = typer.Option(
        None,
        "--base-url",
        help="Target base URL (default: $BASE_URL or http://demo.dev.local).",
    ),
    stages: list[str] | None = typer.Option(
        None,
        "--stage",
        "-s",
        help="Stage as DURATION:TARGET, e.g. 2m:10. Repeat for each stage.",
    ),
    endpoints: list[str] | None = typer.Option(
        None,
        "--endpoint",
        "-e",
        help="Endpoint path picked at random each iteration. Repeatable.",
    ),
    thresholds: list[str] | None = typer.Option(
        None,
        "--threshold",
        "-t",
        help="Threshold as METRIC:EXPR, e.g. 'http_req_duration:p(95)<500'. Repeatable.",
    ),
    think_min: float | None = typer.Option(
        None, "--think-min", help="Minimum think time in seconds.", min=0.0
    ),
    think_max: float | None = typer.Option(
        None, "--think-max", help="Maximum think time in seconds.", min=0.0
    ),
    timeout: float | None = typer.Option(None, "--timeout", help="Per-request timeout (s)."),
    tick: float | None = typer.Option(None, "--tick", help="Scheduler tick interval (s)."),
    grace: float | None = typer.Option(
        None,
        "--grace",
        help="Seconds a stopping user may take before it is force-terminated.",
    ),
    seed: int | None = typer.Option(None, "--seed", help="Seed for a reproducible run."),
    readiness_path: str | None = typer.Option(
        None,
        "--readiness-path",
        help="Path of the pre-flight health check.",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write a JSON report to this file.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines."),
    no_live: bool = typer.Option(False, "--no-live", help="Disable the live metrics table."),
) -> None:
    """Run the staged load test and exit with its verdict."""
    setup_logging(logging.DEBUG if verbose else logging.INFO, json_format=json_logs)

    try:
        config = load_config(
            base_url=base_url,
            stages=_parse_stages(stages),
            endpoints=tuple(endpoints) if endpoints else None,
            thresholds=_parse_thresholds(thresholds),
            think_time=_think_time(think_min, think_max),
            request_timeout=timeout,
            tick_interval=tick,
            stop_grace_period=grace,
            seed=seed,
            readiness_path=readiness_path,
        )
    except LoadStageError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=2) from exc

    console.print(_describe_config(config))

    try:
        if no_live:
            result = asyncio.run(LoadTestOrchestrator(config, handle_signals=True).run())
        else:
            with Live(
                _make_live_table(None),
                console=console,
                refresh_per_second=2,
                transient=True,
            ) as live:

                def _on_snapshot(snapshot: MetricSnapshot) -> None:
                    live.update(_make_live_table(snapshot))

                orchestrator = LoadTestOrchestrator(
                    config,
                    on_snapshot=_on_snapshot,
                    handle_signals=True,
                )
                result = asyncio.run(orchestrator.run())
    except LoadStageError as exc:
        console.print(f"[red]Load test failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    if result.verdict is Verdict.ABORTED:
        console.print(f"[red]Aborted:[/red] {result.error}")
    else:
        _print_summary(result)
        _print_thresholds(result)

    if output is not None:
        path = write_json_report(result, output)
        console.print(f"Report written to {path}")

    if result.verdict is Verdict.PASSED:
        console.print("[green]All thresholds passed.[/green]")
    elif result.verdict is Verdict.FAILED:
        console.print("[red]One or more thresholds failed.[/red]")
    raise typer.Exit(code=result.exit_code)


def _describe_config(config: LoadTestConfig) -> Panel:
    pattern = config.pattern
    thresholds = ", ".join(t.name for t in config.thresholds) or "none"
    return Panel(
        f"[bold]Target:[/bold]     {config.base_url}\n"
        f"[bold]Stages:[/bold]     {len(pattern.stages)} "
        f"(peak {pattern.max_target} users over {format_duration(pattern.total_duration)})\n"
        f"[bold]Endpoints:[/bold]  {', '.join(config.endpoints)}\n"
        f"[bold]Thresholds:[/bold] {thresholds}",
        title="loadstage",
        border_style="cyan",
    )
