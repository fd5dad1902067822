"""Shared helpers for CLI modules: orchestrator factory and result rendering."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import TYPE_CHECKING, Any

import typer
from rich.console import Console

from appforge.errors import AppForgeError

if TYPE_CHECKING:
    from appforge.orchestration import CycleResult, Orchestrator

console = Console()


def get_orchestrator(require_generator: bool = False) -> Orchestrator:
    """Build a Docker-backed orchestrator from the current settings."""
    from appforge.config import get_settings
    from appforge.generation import CerebrasClient
    from appforge.orchestration import Orchestrator

    settings = get_settings()
    if require_generator and not settings.has_generator_credentials:
        console.print("[red]Content generation not configured.[/red]")
        console.print("Set the CEREBRAS_API_KEY environment variable.")
        raise typer.Exit(1)

    generator = CerebrasClient.from_settings(settings) if settings.has_generator_credentials else None
    try:
        return Orchestrator.from_settings(settings, generator=generator)
    except AppForgeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Drive an orchestrator coroutine to completion."""
    return asyncio.run(coro)


def print_cycle_result(result: CycleResult, action: str) -> None:
    """Render a cycle result; a failed result exits with code 1."""
    if result.success:
        version = f" [cyan]{result.version}[/cyan]" if result.version else ""
        console.print(f"[green]{action} {result.app_name}{version}[/green]")
        if result.metadata.get("message"):
            console.print(f"[dim]{result.metadata['message']}[/dim]")
        if result.diff is not None and not result.diff.is_empty:
            console.print(f"[dim]Files: {result.diff.summary()}[/dim]")
        if result.build is not None and result.build.plan is not None:
            console.print(
                f"[dim]Build tier: {result.build.plan.tier.value} "
                f"({result.build.docker_build_ms}ms, {result.attempts} attempt(s))[/dim]"
            )
        if result.url:
            console.print(f"URL: [bold]{result.url}[/bold]")
        _print_skipped(result)
        return

    console.print(f"[red]Error:[/red] {result.error or 'operation failed'}")
    console.print(f"[dim]Stage reached: {result.stage_reached.value}[/dim]")
    if result.build is not None and result.build.diagnostics:
        console.print("[dim]Build output:[/dim]")
        console.print(result.build.diagnostics, markup=False, highlight=False)
    if result.deployment is not None and result.deployment.container_logs:
        console.print("[dim]Container logs:[/dim]")
        console.print(result.deployment.container_logs, markup=False, highlight=False)
    if result.restore is not None:
        if result.restore.success:
            console.print(f"[yellow]Restored files of {result.restore.version}[/yellow]")
            if result.restore.unrecoverable:
                console.print(
                    "[yellow]Not recoverable:[/yellow] " + ", ".join(result.restore.unrecoverable)
                )
        else:
            console.print("[red]Restore failed.[/red]")
    if result.recovered is not None:
        if result.recovered:
            console.print(f"[yellow]Previous version {result.previous_version} redeployed[/yellow]")
        else:
            console.print(f"[red]Previous version {result.previous_version} is not running.[/red]")
    if result.fatal:
        console.print("[bold red]Manual intervention required.[/bold red]")
    _print_skipped(result)
    raise typer.Exit(1)


def _print_skipped(result: CycleResult) -> None:
    for path, reason in result.skipped_files:
        console.print(f"[yellow]Skipped {path}:[/yellow] {reason}")
