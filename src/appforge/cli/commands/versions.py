"""Version history commands: versions, rollback, diff."""

from __future__ import annotations

import typer
from rich.table import Table

from appforge.errors import AppForgeError

from ..helpers import console, get_orchestrator, print_cycle_result, run_async


def versions(
    app_name: str = typer.Argument(..., help="App to inspect"),
):
    """Show an app's version history, newest first."""
    orchestrator = get_orchestrator()
    try:
        records = orchestrator.list_versions(app_name)
    except AppForgeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)

    table = Table(title=f"Versions of {app_name}")
    table.add_column("Version", style="cyan")
    table.add_column("Active")
    table.add_column("Status")
    table.add_column("Files", justify="right")
    table.add_column("Build", justify="right")
    table.add_column("Created")
    table.add_column("Change")

    for record in records:
        metrics = record.performance.build_metrics
        build = f"{metrics.docker_build_time}ms" if metrics and metrics.docker_build_time else "-"
        change = record.improvements[-1] if record.improvements else record.prompt
        table.add_row(
            record.version,
            "[green]*[/green]" if record.is_active else "",
            record.docker_status.value,
            str(len(record.files)),
            build,
            record.created_at.strftime("%Y-%m-%d %H:%M"),
            change[:50],
        )

    console.print(table)


def rollback(
    app_name: str = typer.Argument(..., help="App to roll back"),
    version: str = typer.Argument(..., help="Version to make active, e.g. v1.0.2"),
):
    """Redeploy an earlier version from its snapshot."""
    orchestrator = get_orchestrator()
    with console.status(f"[bold yellow]Rolling back {app_name} to {version}..."):
        result = run_async(orchestrator.rollback(app_name, version))
    print_cycle_result(result, "Rolled back")


def diff(
    app_name: str = typer.Argument(..., help="App to compare"),
    from_version: str = typer.Argument(..., help="Older version"),
    to_version: str = typer.Argument(..., help="Newer version"),
):
    """Compare the files and build time of two versions."""
    orchestrator = get_orchestrator()
    try:
        result = orchestrator.diff(app_name, from_version, to_version)
    except AppForgeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)

    console.print(f"[bold]{app_name}[/bold] {from_version} -> {to_version}")
    if result.files.is_empty:
        console.print("[dim]No file changes.[/dim]")
    for path in sorted(result.files.added):
        console.print(f"[green]+ {path}[/green]")
    for path in sorted(result.files.changed):
        console.print(f"[yellow]~ {path}[/yellow]")
    for path in sorted(result.files.removed):
        console.print(f"[red]- {path}[/red]")

    delta = result.build_time_delta_ms
    if delta is not None:
        style = "green" if delta <= 0 else "red"
        console.print(f"Build time: [{style}]{delta:+d}ms[/{style}]")
