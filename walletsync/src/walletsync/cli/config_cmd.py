"""
Configuration commands.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from walletcore.paths import get_default_data_dir
from walletcore.settings import ensure_config_file, reset_settings

from walletsync.cli import app


@app.command("config-init")
def config_init(
    data_dir: Annotated[
        Path | None,
        typer.Option(
            "--data-dir",
            "-d",
            envvar="WALLETSYNC_DATA_DIR",
            help="Data directory for walletsync files",
        ),
    ] = None,
) -> None:
    """Initialize the config file with default settings."""
    reset_settings()

    if data_dir is None:
        data_dir = get_default_data_dir()

    config_path = ensure_config_file(data_dir)
    typer.echo(f"Config file created at: {config_path}")
    typer.echo("\nAll settings are commented out by default.")
    typer.echo("Edit the file to customize your configuration.")
    typer.echo("\nPriority (highest to lowest):")
    typer.echo("  1. CLI arguments")
    typer.echo("  2. Environment variables")
    typer.echo("  3. Config file")
    typer.echo("  4. Built-in defaults")
