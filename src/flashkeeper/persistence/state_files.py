#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""Last-attempt snapshot per candidate, one JSON file each, for operators to inspect."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.models import Outcome, OutcomeStatus, Position
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class CandidateStateLog:
    """Writes ``<state_dir>/<kind>-states/<subject>.json`` after every attempt."""

    def __init__(self, state_dir: Path):
        self._state_dir = Path(state_dir)

    def path_for(self, position: Position) -> Path:
        subject = (position.vault or position.owner).lower()
        return self._state_dir / f"{position.kind.value}-states" / f"{subject}.json"

    def build_state(self, position: Position, outcome: Outcome, step: str = "") -> Dict[str, Any]:
        data = outcome.to_dict()
        return {
            "metric": str(position.metric),
            "threshold": str(position.threshold) if position.threshold is not None else None,
            "block_number": position.block_number,
            "collateral_token": position.collateral_asset,
            "debt_token": position.debt_asset,
            "last_trial": int(time.time() * 1000),
            "success": outcome.status is OutcomeStatus.CONFIRMED,
            "profitable": outcome.status is not OutcomeStatus.SKIPPED or outcome.reason == "dry run",
            "status": outcome.status.value,
            "step": step or outcome.status.value,
            "reason": outcome.reason or "",
            "tx_hash": outcome.tx_hash or "",
            "net_result": data.get("net_result", data.get("expected_net", "")),
        }

    def save(self, position: Position, outcome: Outcome, step: str = "") -> Optional[Path]:
        path = self.path_for(position)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self.build_state(position, outcome, step), indent=2, default=str))
            return path
        except OSError as e:
            logger.warning(f"Could not write state file {path}: {e}")
            return None

    def load(self, position: Position) -> Optional[Dict[str, Any]]:
        path = self.path_for(position)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable state file {path}: {e}")
            return None
