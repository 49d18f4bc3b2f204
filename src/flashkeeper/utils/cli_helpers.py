#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""Shared rich output and error handling for Typer commands."""

from __future__ import annotations

import functools
from typing import Any, Callable, TypeVar

import typer
from rich.console import Console

from .custom_exceptions import ConfigurationError, FlashKeeperError, SignerError

F = TypeVar("F", bound=Callable[..., Any])
console = Console(stderr=True)


def success_message(message: str) -> None:
    console.print(f"[bold green]✓[/] {message}")


def info_message(message: str) -> None:
    console.print(f"[cyan]ℹ[/] {message}")


def warning_message(message: str) -> None:
    console.print(f"[yellow]⚠[/] {message}")


def error_message(message: str) -> None:
    console.print(f"[bold red]✗[/] {message}")


def handle_cli_errors(exit_code: int = 1) -> Callable[[F], F]:
    """Turn unrecoverable errors into a clear message and a non-zero exit."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except typer.Exit:
                raise
            except (ConfigurationError, SignerError) as e:
                error_message(f"{type(e).__name__}: {e.message}")
                if e.details:
                    console.print(e.details)
                raise typer.Exit(code=exit_code)
            except FlashKeeperError as e:
                error_message(f"{type(e).__name__}: {e}")
                raise typer.Exit(code=exit_code)
            except KeyboardInterrupt:
                warning_message("Interrupted")
                raise typer.Exit(code=130)

        return wrapper  # type: ignore[return-value]

    return decorator
