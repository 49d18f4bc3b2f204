#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Retry policy and circuit breaker
==============================================
``RetryScheduler`` applies one bounded exponential-backoff policy to any
pipeline stage. Only transient failures are retried: exceptions carrying
the ``TransientError`` mixin, or outcomes whose status is
``TRANSIENT_FAILURE``. Everything else is returned or raised on the first
attempt.
License: MIT
"""

from __future__ import annotations

import asyncio
import functools
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .custom_exceptions import QuoteServiceError, is_transient
from .logging_config import get_logger

F = TypeVar("F", bound=Callable[..., Any])
logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, retry_settings) -> "RetryPolicy":
        return cls(
            max_attempts=retry_settings.max_attempts,
            base_delay=retry_settings.base_delay,
            max_delay=retry_settings.max_delay,
            exponential_base=retry_settings.exponential_base,
            jitter=retry_settings.jitter,
        )


def _is_transient_outcome(result: Any) -> bool:
    # Outcome is imported lazily by duck typing to keep utils free of core imports.
    return bool(getattr(result, "is_retryable", False))


class RetryScheduler:
    """Runs a coroutine function under a ``RetryPolicy``.

    ``sleep`` and ``rng`` are injectable so tests can drive the scheduler
    with a fake clock and a deterministic jitter source.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.policy = policy
        self._sleep = sleep
        self._rng = rng

    def compute_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), capped at ``max_delay``."""
        delay = self.policy.base_delay * (self.policy.exponential_base ** (attempt - 1))
        delay = min(delay, self.policy.max_delay)
        if self.policy.jitter:
            # +/-25% jitter
            delay *= 0.75 + 0.5 * self._rng()
        return delay

    async def run(self, stage_name: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Call ``func`` until it succeeds, fails permanently, or attempts run out.

        On exhaustion the last transient exception is re-raised, or the last
        transient outcome is returned.
        """
        attempts = self.policy.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if not is_transient(e):
                    raise
                if attempt == attempts:
                    logger.error(f"[{stage_name}] giving up after {attempts} attempts: {e}")
                    raise
                delay = self.compute_delay(attempt)
                logger.warning(
                    f"[{stage_name}] attempt {attempt}/{attempts} failed: {e}. "
                    f"Retrying in {delay:.2f} seconds..."
                )
                await self._sleep(delay)
                continue

            if not _is_transient_outcome(result):
                return result
            if attempt == attempts:
                logger.error(f"[{stage_name}] giving up after {attempts} attempts: {result.reason}")
                return result
            delay = self.compute_delay(attempt)
            logger.warning(
                f"[{stage_name}] attempt {attempt}/{attempts} ended transiently: {result.reason}. "
                f"Retrying in {delay:.2f} seconds..."
            )
            await self._sleep(delay)

        raise AssertionError("unreachable")


class CircuitBreaker:
    """Circuit breaker pattern for handling repeated failures of an external service."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: type = QuoteServiceError,
        name: str = "service",
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name

        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def __call__(self, func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if self.state == "OPEN":
                if self._should_attempt_reset():
                    self.state = "HALF_OPEN"
                else:
                    raise QuoteServiceError(
                        f"Circuit breaker is OPEN for {self.name}. "
                        f"Next attempt in {self._time_until_reset():.1f} seconds",
                        api_name=self.name,
                    )

            try:
                result = await func(*args, **kwargs)
                self._on_success()
                return result
            except self.expected_exception:
                self._on_failure()
                raise

        return wrapper

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (datetime.now() - self.last_failure_time).total_seconds() >= self.recovery_timeout

    def _time_until_reset(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        elapsed = (datetime.now() - self.last_failure_time).total_seconds()
        return max(0.0, self.recovery_timeout - elapsed)

    def _on_success(self):
        self.failure_count = 0
        self.state = "CLOSED"

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = datetime.now()

        if self.failure_count >= self.failure_threshold or self.state == "HALF_OPEN":
            self.state = "OPEN"
            logger.warning(
                f"Circuit breaker for {self.name} opened after {self.failure_count} failures. "
                f"Will retry in {self.recovery_timeout} seconds."
            )
