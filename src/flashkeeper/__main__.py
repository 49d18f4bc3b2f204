#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import sys

import typer

from . import __version__
from .cli import config_cmd, run_cmd
from .utils.logging_config import get_logger

logger = get_logger(__name__)

app = typer.Typer(
    name="flashkeeper",
    help="flashkeeper: flash-loan settlement bots for liquidations and reward compounding.",
    add_completion=False,
    no_args_is_help=True,
)
app.add_typer(run_cmd.app, name="run")
app.add_typer(config_cmd.app, name="config")


@app.command(name="version")
def show_version():
    """Print the installed version."""
    typer.echo(f"flashkeeper Version: {__version__}")


def cli():
    try:
        app()
    except Exception as e:
        logger.critical(f"Unhandled error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
