#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Candidate selection
=================================
Pure eligibility filter over one scan. Liquidation needs a health factor
strictly below the threshold; compounding needs accrued rewards at or above
the vault's exchange threshold. Order is preserved and the result does not
depend on how the scan is batched.
License: MIT
"""

from __future__ import annotations

import json
import time
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from cachetools import TTLCache

from ..utils.logging_config import get_logger
from ..utils.numbers import iter_batches
from .models import Position, PositionKind

logger = get_logger(__name__)


class ShortTermIgnoreMemory:
    """Remembers candidates that were just found unprofitable or failed.

    Entries expire after ``ttl_seconds``. When ``state_dir`` is given the
    memory is mirrored to ``ignore-memory.json`` so a restart keeps it.
    """

    FILE_NAME = "ignore-memory.json"

    def __init__(
        self,
        ttl_seconds: float,
        state_dir: Optional[Path] = None,
        maxsize: int = 10_000,
        timer: Callable[[], float] = time.time,
    ):
        self._ttl = ttl_seconds
        self._timer = timer
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=max(ttl_seconds, 1e-9), timer=timer)
        self._path = Path(state_dir) / self.FILE_NAME if state_dir is not None else None
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            entries = json.loads(self._path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable ignore-memory file {self._path}: {e}")
            return
        now = self._timer()
        for key, expires_at in entries.items():
            if float(expires_at) > now:
                self._cache[key] = float(expires_at)

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(dict(self._cache.items()), indent=2))
        except OSError as e:
            logger.warning(f"Could not persist ignore memory: {e}")

    def put(self, key: str) -> None:
        if self._ttl <= 0:
            return
        self._cache[key] = self._timer() + self._ttl
        self._save()

    def is_ignored(self, key: str) -> bool:
        expires_at = self._cache.get(key)
        return expires_at is not None and expires_at > self._timer()

    def clear(self) -> None:
        self._cache.clear()
        self._save()

    def __len__(self) -> int:
        self._cache.expire()
        return len(self._cache)


class CandidateSelector:
    def __init__(
        self,
        health_factor_threshold: Decimal,
        ignore_memory: Optional[ShortTermIgnoreMemory] = None,
        batch_size: Optional[int] = None,
    ):
        self.health_factor_threshold = Decimal(health_factor_threshold)
        self.ignore_memory = ignore_memory
        self.batch_size = batch_size

    def is_eligible(self, position: Position) -> bool:
        if position.kind is PositionKind.LIQUIDATION:
            return Decimal(position.metric) < self.health_factor_threshold
        threshold = position.threshold
        if not threshold:
            # "zero threshold"
            return False
        return int(position.metric) >= threshold

    def select(self, positions: Iterable[Position], *, batch_size: Optional[int] = None) -> List[Position]:
        """Eligible positions in input order, minus recently ignored ones."""
        snapshot = list(positions)
        size = batch_size or self.batch_size or max(len(snapshot), 1)

        selected: List[Position] = []
        for batch in iter_batches(snapshot, size):
            for position in batch:
                if self.ignore_memory is not None and self.ignore_memory.is_ignored(position.key):
                    logger.debug(f"{position.key} is in the ignore memory")
                    continue
                if self.is_eligible(position):
                    selected.append(position)

        logger.info(f"Selected {len(selected)} of {len(snapshot)} positions")
        return selected

    def ignore(self, position: Position) -> None:
        if self.ignore_memory is not None:
            self.ignore_memory.put(position.key)

    @classmethod
    def from_config(cls, config) -> "CandidateSelector":
        settings = config.settings
        memory = ShortTermIgnoreMemory(settings.ignore_ttl_seconds, state_dir=config.state_dir)
        return cls(
            health_factor_threshold=settings.liquidation.health_factor_threshold,
            ignore_memory=memory,
            batch_size=settings.liquidation.liquidating_batch_size,
        )
