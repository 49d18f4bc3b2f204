#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Error handling utilities
======================================
Helpers for calls that must never take the pipeline down with them.
License: MIT
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from .logging_config import get_logger

logger = get_logger(__name__)


async def safe_call(
    func: Callable,
    *args,
    component_name: str = "unknown",
    fallback: Any = None,
    log_errors: bool = True,
    **kwargs,
) -> Any:
    """Call ``func`` and return ``fallback`` instead of raising.

    ``asyncio.CancelledError`` is not an ``Exception`` and still propagates.
    """
    try:
        if asyncio.iscoroutinefunction(func):
            return await func(*args, **kwargs)
        result = func(*args, **kwargs)
        if asyncio.iscoroutine(result):
            return await result
        return result
    except Exception as e:
        if log_errors:
            logger.error(f"[{component_name}] Error in safe_call: {e}")
        return fallback
