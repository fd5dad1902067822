"""App lifecycle commands: generate, improve, retry, list, stop, remove."""

from __future__ import annotations

import typer
from rich.table import Table

from appforge.errors import AppForgeError

from ..helpers import console, get_orchestrator, print_cycle_result, run_async


def generate(
    prompt: str = typer.Argument(..., help="Description of the app to build"),
    name: str | None = typer.Option(None, "--name", "-n", help="App name (derived from the prompt if omitted)"),
    legacy_build: bool = typer.Option(
        False, "--legacy-build", help="Build without cache sources or cache filters"
    ),
):
    """Generate, build and deploy a new app."""
    orchestrator = get_orchestrator(require_generator=True)
    optimized = False if legacy_build else None
    with console.status("[bold green]Generating app..."):
        result = run_async(orchestrator.create_app(prompt, name=name, optimized=optimized))
    print_cycle_result(result, "Created")


def improve(
    app_name: str = typer.Argument(..., help="App to improve"),
    intent: str = typer.Argument(..., help="Requested change"),
):
    """Improve an app and deploy the new version."""
    orchestrator = get_orchestrator(require_generator=True)
    with console.status(f"[bold green]Improving {app_name}..."):
        result = run_async(orchestrator.improve(app_name, intent))
    print_cycle_result(result, "Improved")


def retry(
    app_name: str = typer.Argument(..., help="App to rebuild"),
):
    """Rebuild and redeploy the current version in place."""
    orchestrator = get_orchestrator()
    with console.status(f"[bold green]Rebuilding {app_name}..."):
        result = run_async(orchestrator.retry_build(app_name))
    print_cycle_result(result, "Rebuilt")


def list_apps():
    """List all apps and their active versions."""
    orchestrator = get_orchestrator()
    apps = orchestrator.list_apps()
    if not apps:
        console.print("[dim]No apps found.[/dim]")
        return

    table = Table(title="Apps")
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Status")
    table.add_column("Versions", justify="right")
    table.add_column("URL")

    for app in apps:
        current = app.current()
        status = current.docker_status.value if current else "-"
        status_style = "green" if status == "running" else "red" if status == "failed" else "yellow"
        table.add_row(
            app.name,
            app.current_version or "-",
            f"[{status_style}]{status}[/{status_style}]",
            str(len(app.versions)),
            orchestrator.url_for(app.port) or "-",
        )

    console.print(table)


def stop(
    app_name: str = typer.Argument(..., help="App to stop"),
):
    """Stop every container of an app."""
    orchestrator = get_orchestrator()
    result = run_async(orchestrator.stop_app(app_name))
    print_cycle_result(result, "Stopped")


def remove(
    app_name: str = typer.Argument(..., help="App to remove"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Remove an app's containers, images, files, snapshots and history."""
    orchestrator = get_orchestrator()
    try:
        orchestrator.ledger.require_app(app_name)
    except AppForgeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)

    if not yes and not typer.confirm(f"Remove {app_name} and all of its versions?"):
        console.print("[dim]Cancelled.[/dim]")
        raise typer.Exit(0)

    result = run_async(orchestrator.remove_app(app_name))
    print_cycle_result(result, "Removed")
