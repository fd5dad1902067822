"""AppForge CLI - Main entry point."""

from __future__ import annotations

from typing import Annotated

import typer

from appforge import __version__

from .helpers import console

app = typer.Typer(
    name="appforge",
    help="Generate, improve and blue-green deploy containerized apps.",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold cyan]appforge[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Override the configured log level."),
    ] = None,
):
    """AppForge - versioned app generation with safe redeploys.

    [bold]Quick Start:[/bold]

        appforge generate PROMPT        Create and deploy a new app
        appforge improve APP INTENT     Deploy an improved version
        appforge versions APP           Show version history
        appforge rollback APP VERSION   Redeploy an earlier version
    """
    from appforge.config import configure_logging, get_settings

    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        format=settings.log_format,
        sanitize_logs=settings.sanitize_logs,
    )


# =============================================================================
# Register top-level commands
# =============================================================================

from .commands.apps import generate, improve, list_apps, remove, retry, stop  # noqa: E402
from .commands.benchmark import benchmark  # noqa: E402
from .commands.maintenance import clear_cache, prune_backups  # noqa: E402
from .commands.versions import diff, rollback, versions  # noqa: E402

app.command()(generate)
app.command()(improve)
app.command()(versions)
app.command()(rollback)
app.command()(diff)
app.command()(retry)
app.command("list")(list_apps)
app.command()(stop)
app.command()(remove)
app.command("prune-backups")(prune_backups)
app.command("clear-cache")(clear_cache)
app.command()(benchmark)
