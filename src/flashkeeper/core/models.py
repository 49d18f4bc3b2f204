#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Pipeline records
==============================
Immutable records passed between pipeline stages. Amounts are integers in
token base units; USD values and ratios are ``Decimal``.
License: MIT
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from ..utils.custom_exceptions import PlanRejected


class PositionKind(str, Enum):
    LIQUIDATION = "liquidation"
    COMPOUNDING = "compounding"


class SwapKind(str, Enum):
    EXACT_INPUT = "exact_input"
    EXACT_OUTPUT = "exact_output"


@dataclass(frozen=True)
class Position:
    """A borrower account or vault observed at ``block_number``.

    ``metric`` is the health factor for liquidation and the accrued reward
    amount for compounding. ``threshold`` carries the vault's exchange
    threshold read in the same scan.
    """

    kind: PositionKind
    owner: str
    collateral_asset: str
    debt_asset: str
    metric: Union[Decimal, int]
    block_number: int
    vault: Optional[str] = None
    threshold: Optional[int] = None

    @property
    def key(self) -> str:
        subject = self.vault if self.kind is PositionKind.COMPOUNDING and self.vault else self.owner
        return f"{self.kind.value}:{subject.lower()}"

    def with_metric(self, metric: Union[Decimal, int], block_number: int) -> "Position":
        return replace(self, metric=metric, block_number=block_number)


@dataclass(frozen=True)
class LiquidationParams:
    """What a liquidation of one borrower would repay and seize."""

    user: str
    debt_asset: str
    collateral_asset: str
    debt_to_repay: int
    debt_decimals: int
    collateral_decimals: int
    debt_price: int
    collateral_price: int
    price_decimals: int
    liquidation_bonus_bps: int

    @property
    def expected_collateral(self) -> int:
        """Collateral seized for ``debt_to_repay``, bonus included, in collateral base units."""
        if self.collateral_price == 0:
            return 0
        debt_value = self.debt_to_repay * self.debt_price * 10**self.collateral_decimals
        seized = debt_value * self.liquidation_bonus_bps // (10_000 * self.collateral_price * 10**self.debt_decimals)
        return seized


@dataclass(frozen=True)
class AmountSpec:
    kind: SwapKind
    amount: int

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("swap amount must be positive")

    @classmethod
    def exact_in(cls, amount: int) -> "AmountSpec":
        return cls(SwapKind.EXACT_INPUT, int(amount))

    @classmethod
    def exact_out(cls, amount: int) -> "AmountSpec":
        return cls(SwapKind.EXACT_OUTPUT, int(amount))


@dataclass(frozen=True)
class Quote:
    input_token: str
    output_token: str
    swap_kind: SwapKind
    input_amount: int
    output_amount: int
    max_input_amount: int
    path_id: str
    expires_at: float
    chain_id: int
    payload: bytes = b""

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def with_payload(self, payload: bytes) -> "Quote":
        return replace(self, payload=bytes(payload))


@dataclass(frozen=True)
class ExecutionPlan:
    """Parameters of one atomic settlement transaction.

    Construction fails with ``PlanRejected`` unless the minimum acceptable
    net is positive and the expected net reaches it, so a plan that could
    lose money never exists.
    """

    position: Position
    quote: Quote
    flash_amount: int
    flash_fee: int
    expected_output: int
    max_input_amount: int
    min_acceptable_net: int
    expected_net: int
    # Kind-specific call arguments (shares for compounding, repay amount for liquidation).
    settlement_args: Tuple[Any, ...] = ()
    max_deposit: Optional[int] = None
    profit_usd: Optional[Decimal] = None

    def __post_init__(self):
        if self.min_acceptable_net <= 0:
            raise PlanRejected(reason="non-positive minimum net")
        if self.expected_net < self.min_acceptable_net:
            raise PlanRejected(reason="below profit floor")
        if self.max_input_amount < self.quote.input_amount:
            raise PlanRejected(reason="input bound below quoted input")

    @property
    def key(self) -> str:
        return self.position.key


class OutcomeStatus(str, Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"
    TRANSIENT_FAILURE = "transient_failure"
    SKIPPED = "skipped"


_TERMINAL = {
    OutcomeStatus.CONFIRMED,
    OutcomeStatus.REVERTED,
    OutcomeStatus.TIMED_OUT,
    OutcomeStatus.TRANSIENT_FAILURE,
    OutcomeStatus.SKIPPED,
}


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    candidate_key: str
    tx_hash: Optional[str] = None
    net_result: Optional[int] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @classmethod
    def submitted(cls, key: str, tx_hash: str) -> "Outcome":
        return cls(OutcomeStatus.SUBMITTED, key, tx_hash=tx_hash)

    @classmethod
    def confirmed(cls, key: str, tx_hash: str, net_result: int, **details) -> "Outcome":
        return cls(OutcomeStatus.CONFIRMED, key, tx_hash=tx_hash, net_result=net_result, details=details)

    @classmethod
    def reverted(cls, key: str, reason: str, tx_hash: Optional[str] = None, **details) -> "Outcome":
        return cls(OutcomeStatus.REVERTED, key, tx_hash=tx_hash, reason=reason, details=details)

    @classmethod
    def timed_out(cls, key: str, tx_hash: str) -> "Outcome":
        return cls(OutcomeStatus.TIMED_OUT, key, tx_hash=tx_hash, reason="no receipt before timeout")

    @classmethod
    def transient(cls, key: str, cause: Union[str, BaseException]) -> "Outcome":
        reason = cause if isinstance(cause, str) else f"{type(cause).__name__}: {cause}"
        return cls(OutcomeStatus.TRANSIENT_FAILURE, key, reason=reason)

    @classmethod
    def skipped(cls, key: str, reason: str, **details) -> "Outcome":
        return cls(OutcomeStatus.SKIPPED, key, reason=reason, details=details)

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL

    @property
    def is_retryable(self) -> bool:
        return self.status is OutcomeStatus.TRANSIENT_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value, "candidate": self.candidate_key}
        if self.tx_hash:
            data["tx_hash"] = self.tx_hash
        if self.net_result is not None:
            data["net_result"] = str(self.net_result)
        if self.reason:
            data["reason"] = self.reason
        for key, value in self.details.items():
            data[key] = str(value) if isinstance(value, (int, Decimal)) and not isinstance(value, bool) else value
        return data


@dataclass(frozen=True)
class CycleReport:
    """Everything one pipeline pass produced, in submission order."""

    cycle: int
    outcomes: List[Outcome]
    scanned: int = 0
    selected: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def clean(self) -> bool:
        """No candidate ended with an ambiguous or transient result."""
        return not any(
            o.status in (OutcomeStatus.TIMED_OUT, OutcomeStatus.TRANSIENT_FAILURE) for o in self.outcomes
        )

    def summary(self) -> Dict[str, int]:
        return {status.value: self.count(status) for status in OutcomeStatus if self.count(status)}
