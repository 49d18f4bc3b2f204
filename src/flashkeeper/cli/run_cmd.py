#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import List, Optional

import typer

from ..config.loaders import AppConfig, load_settings
from ..core.models import CycleReport, PositionKind
from ..core.pipeline import create_pipeline
from ..utils.cli_helpers import error_message, handle_cli_errors, info_message, success_message, warning_message
from ..utils.logging_config import get_logger, setup_logging

app = typer.Typer(help="Commands to run the settlement bots.")
logger = get_logger(__name__)


async def run_bot(config: AppConfig, kind: PositionKind, once: bool, dry_run: Optional[bool]) -> List[CycleReport]:
    pipeline = await create_pipeline(config, kind, dry_run=dry_run)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers.
            pass
    try:
        if once:
            return [await pipeline.run_cycle()]
        return await pipeline.run_forever(stop_event)
    finally:
        await pipeline.close()


def _run(kind: PositionKind, network: Optional[str], env_file: Optional[Path], dry_run: bool, once: bool) -> None:
    overrides = {"dry_run": True} if dry_run else {}
    config = load_settings(network=network, env_file=env_file, **overrides)
    setup_logging(force_setup=True)
    info_message(f"Starting {kind.value} bot on {config.network.name}{' (dry run)' if config.settings.dry_run else ''}")

    reports = asyncio.run(run_bot(config, kind, once, config.settings.dry_run))
    if reports and not reports[-1].clean:
        warning_message(f"Last cycle ended with unresolved outcomes: {reports[-1].summary()}")
    elif reports:
        success_message(f"Cycle complete: {reports[-1].summary() or 'nothing to do'}")
    else:
        error_message("No cycle completed")
        raise typer.Exit(code=1)


NETWORK_OPTION = typer.Option(None, "--network", "-n", help="Network name, e.g. sonic_mainnet.")
ENV_FILE_OPTION = typer.Option(None, "--env-file", help="Read settings from this .env file.")
DRY_RUN_OPTION = typer.Option(False, "--dry-run", help="Evaluate and plan, but never submit a transaction.")
ONCE_OPTION = typer.Option(False, "--once", help="Run a single cycle and exit.")


@app.command(name="liquidate")
@handle_cli_errors()
def liquidate(
    network: Optional[str] = NETWORK_OPTION,
    env_file: Optional[Path] = ENV_FILE_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    once: bool = ONCE_OPTION,
):
    """Liquidate unhealthy lending positions with flash-loaned funds."""
    _run(PositionKind.LIQUIDATION, network, env_file, dry_run, once)


@app.command(name="compound")
@handle_cli_errors()
def compound(
    network: Optional[str] = NETWORK_OPTION,
    env_file: Optional[Path] = ENV_FILE_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    once: bool = ONCE_OPTION,
):
    """Compound vault rewards once they cross the exchange threshold."""
    _run(PositionKind.COMPOUNDING, network, env_file, dry_run, once)
