"""Maintenance commands: snapshot retention and build cache."""

from __future__ import annotations

import typer

from appforge.errors import AppForgeError

from ..helpers import console, get_orchestrator, run_async


def prune_backups(
    app_name: str = typer.Argument(..., help="App whose snapshots to prune"),
    keep: int | None = typer.Option(None, "--keep", "-k", min=0, help="Snapshots to keep"),
):
    """Delete old snapshots; the active version's snapshot is always kept."""
    orchestrator = get_orchestrator()
    try:
        removed = run_async(orchestrator.prune_backups(app_name, keep=keep))
    except AppForgeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)

    if not removed:
        console.print("[dim]Nothing to prune.[/dim]")
        return
    console.print(f"[green]Pruned {len(removed)} snapshot(s):[/green] {', '.join(removed)}")


def clear_cache(
    system: bool = typer.Option(
        False,
        "--system",
        help="Also prune every unused image, container and volume on the host",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation for --system"),
):
    """Prune the container engine's build cache.

    Only the build cache is cleared unless --system is given.
    """
    if system and not yes and not typer.confirm(
        "Prune ALL unused images, containers and volumes on this host?"
    ):
        console.print("[dim]Cancelled.[/dim]")
        raise typer.Exit(0)
    orchestrator = get_orchestrator()
    result = run_async(orchestrator.clear_cache(system=system))
    if not result.ok:
        console.print(f"[red]Error:[/red] {result.describe()}")
        raise typer.Exit(1)
    console.print("[green]Build cache cleared.[/green]")
    if system:
        console.print("[green]Unused engine resources pruned.[/green]")
