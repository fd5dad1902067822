"""Build benchmark: legacy against optimized builds of one prompt."""

from __future__ import annotations

import typer
from rich.table import Table

from appforge.orchestration import BenchmarkReport

from ..helpers import console, get_orchestrator, run_async


def _seconds(ms: int) -> str:
    return f"{ms / 1000:.1f}s"


def print_benchmark(report: BenchmarkReport) -> None:
    table = Table(title=f"Build benchmark: {report.prompt}")
    table.add_column("Run", style="cyan")
    table.add_column("App")
    table.add_column("Status")
    table.add_column("Total", justify="right")
    table.add_column("Image build", justify="right")
    table.add_column("Speedup", justify="right")

    for run in report.runs:
        speedup = report.speedup(run.label) if run.label != "legacy" else None
        table.add_row(
            run.label,
            run.app_name,
            "[green]ok[/green]" if run.success else "[red]failed[/red]",
            _seconds(run.total_ms),
            _seconds(run.docker_build_ms),
            f"{speedup:.1f}x" if speedup else "-",
        )
    console.print(table)

    for run in report.runs:
        if run.error:
            console.print(f"[red]{run.label}:[/red] {run.error}")


def benchmark(
    prompt: str = typer.Argument(..., help="Description of the app to build"),
    name: str | None = typer.Option(None, "--name", "-n", help="Base name for the benchmark apps"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Remove the benchmark apps afterwards"),
):
    """Compare legacy, optimized and cached optimized builds of one prompt."""
    orchestrator = get_orchestrator(require_generator=True)
    with console.status("[bold green]Benchmarking builds..."):
        report = run_async(orchestrator.benchmark(prompt, name=name, cleanup=cleanup))
    print_benchmark(report)
    if not all(run.success for run in report.runs):
        raise typer.Exit(1)
