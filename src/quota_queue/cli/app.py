"""Main CLI application for quota-queue."""

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from quota_queue import __version__
from quota_queue.cli import simulate as simulate_cmd
from quota_queue.cli.common import OutputFormat, OutputFormatOption, console
from quota_queue.config import get_settings
from quota_queue.logging import setup_logging

app = typer.Typer(
    name="quotaq",
    help="Rate-limited, priority-aware request scheduling for quota-constrained APIs.",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"quotaq version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable debug logging.",
        ),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option(
            "--quiet",
            "-q",
            help="Suppress non-error output (WARNING level).",
        ),
    ] = False,
) -> None:
    """quota-queue - serialize calls to a quota-constrained API."""
    settings = get_settings()
    log_config = settings.logging

    setup_logging(
        level=settings.log_level,
        verbose=verbose,
        quiet=quiet,
        log_file=Path(log_config.log_file) if log_config.log_file else None,
        dispatch_log_file=(
            Path(log_config.dispatch_log_file) if log_config.dispatch_log_file else None
        ),
        rotation=log_config.rotation,
        retention=log_config.retention,
        serialize=log_config.serialize,
    )


@app.command("config")
def show_config(output_format: OutputFormatOption = OutputFormat.TEXT) -> None:
    """Show effective scheduler settings (environment and .env applied)."""
    settings = get_settings()

    if output_format == OutputFormat.JSON:
        console.print_json(settings.model_dump_json())
        return

    table = Table(title="Effective settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("environment", settings.environment)
    table.add_row("log_level", settings.log_level)
    for group in ("scheduler", "registry", "jobs"):
        for key, value in getattr(settings, group).model_dump().items():
            table.add_row(f"{group}.{key}", str(value))
    console.print(table)


app.command("simulate")(simulate_cmd.simulate)


if __name__ == "__main__":
    app()
