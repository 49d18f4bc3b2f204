#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Logging configuration
===================================
All loggers hang off the ``flashkeeper`` root logger. Output is JSON lines
when ``LOG_FORMAT=json`` and colourised console output otherwise (falls back
to a plain formatter when colorlog is not installed).
License: MIT
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict

try:
    import colorlog

    HAVE_COLORLOG = True
except ImportError:  # colorlog is an optional console nicety
    colorlog = None
    HAVE_COLORLOG = False

ROOT_LOGGER_NAME = "flashkeeper"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_loggers: Dict[str, logging.Logger] = {}
_configured = False


class JsonFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        extra = getattr(record, "extra_data", None)
        if isinstance(extra, dict):
            payload.update(extra)
        return json.dumps(payload, default=str)


def get_base_dir() -> Path:
    """Directory that holds logs and state files (``FLASHKEEPER_HOME`` or cwd)."""
    return Path(os.environ.get("FLASHKEEPER_HOME", Path.cwd()))


def _resolve_level() -> int:
    env_level = os.environ.get("LOG_LEVEL")
    if env_level:
        return getattr(logging, env_level.upper(), logging.INFO)
    try:
        from flashkeeper.config.loaders import get_settings

        if getattr(get_settings(), "debug", False) is True:
            return logging.DEBUG
    except Exception:
        pass
    return logging.INFO


def _build_console_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    if HAVE_COLORLOG:
        return colorlog.ColoredFormatter(
            "%(log_color)s" + CONSOLE_FORMAT,
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "bold_red",
            },
        )
    return logging.Formatter(CONSOLE_FORMAT)


def setup_logging(force_setup: bool = False) -> logging.Logger:
    """Configure the ``flashkeeper`` root logger once (or again with ``force_setup``)."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    if _configured and not force_setup:
        return root

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    level = _resolve_level()
    root.setLevel(level)
    root.propagate = True

    log_format = os.environ.get("LOG_FORMAT", "console").lower()
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_build_console_formatter(log_format))
    root.addHandler(console)

    if "PYTEST_CURRENT_TEST" not in os.environ and os.environ.get("LOG_TO_FILE", "1") != "0":
        try:
            log_dir = get_base_dir() / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / "flashkeeper.log", maxBytes=5 * 1024 * 1024, backupCount=3
            )
            file_handler.setFormatter(JsonFormatter())
            root.addHandler(file_handler)
        except Exception as e:
            root.warning(f"File logging disabled: {e}")

    _configured = True
    _loggers[ROOT_LOGGER_NAME] = root
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a child of the package root logger, configuring logging on first use."""
    if not _configured:
        setup_logging()
    if name.startswith(ROOT_LOGGER_NAME + ".") or name == ROOT_LOGGER_NAME:
        full_name = name
    else:
        full_name = f"{ROOT_LOGGER_NAME}.{name}"
    logger = _loggers.get(full_name)
    if logger is None:
        logger = logging.getLogger(full_name)
        _loggers[full_name] = logger
    return logger


def reset_logging() -> None:
    """Remove handlers and forget cached loggers (used by tests)."""
    global _configured
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    _loggers.clear()
    _configured = False
