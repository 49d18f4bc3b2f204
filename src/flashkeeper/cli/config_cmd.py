#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from ..config.loaders import load_settings
from ..config.validation import ConfigValidator
from ..utils.cli_helpers import handle_cli_errors, info_message, success_message
from ..utils.config_redactor import ConfigRedactor

app = typer.Typer(help="Commands to inspect and validate configuration.")
console = Console()

MODES = ("liquidation", "compounding")


@app.command(name="show")
@handle_cli_errors()
def show_config(
    network: Optional[str] = typer.Option(None, "--network", "-n", help="Network to resolve addresses for."),
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Read settings from this .env file."),
    show_keys: bool = typer.Option(False, "--show-keys", "-s", help="Show sensitive keys like WALLET_KEY."),
):
    """
    Displays the loaded configuration and network address book, redacting sensitive values by default.
    """
    config = load_settings(network=network, env_file=env_file)
    config_dict = {
        "settings": config.settings.model_dump(mode="python"),
        "network": config.network.model_dump(mode="json"),
    }
    redacted_config = ConfigRedactor.redact_config(config_dict, show_sensitive=show_keys)

    json_str = json.dumps(redacted_config, indent=2, default=str)
    console.print(Syntax(json_str, "json", theme="monokai", line_numbers=True))


@app.command(name="validate")
@handle_cli_errors()
def validate_config(
    network: Optional[str] = typer.Option(None, "--network", "-n", help="Network to validate against."),
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Read settings from this .env file."),
    mode: Optional[str] = typer.Option(
        None, "--mode", "-m", help="Only check the requirements of one bot: liquidation or compounding."
    ),
):
    """
    Loads the configuration and checks that each enabled bot has what it needs to run.
    """
    console.print("Validating configuration...")
    config = load_settings(network=network, env_file=env_file)
    if config.settings.wallet_key is not None:
        ConfigValidator.validate_private_key(config.settings.wallet_key.get_secret_value())

    modes = [mode] if mode else [
        m for m in MODES if getattr(config.settings, m).enabled
    ]
    table = Table(title=f"{config.network.name} (chain {config.chain_id})")
    table.add_column("Bot")
    table.add_column("Status")
    for m in modes:
        ConfigValidator.validate_for_mode(config.settings, config.network, m)
        table.add_row(m, "[green]ok[/]")
    if modes:
        console.print(table)
    else:
        info_message("No bot is enabled; only the base settings were checked.")
    success_message("Configuration is valid!")
