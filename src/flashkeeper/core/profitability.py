#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Profitability engine
==================================
Turns a candidate plus a quote into either an ``ExecutionPlan`` or a
skipped ``Outcome``. Evaluation never raises for an unprofitable or
unsafe candidate; the reason travels in the outcome instead.

Compounding: with ``X`` the flash-borrowed amount, ``fee`` the flash fee,
``K`` the debt token handed back by the mint and ``R`` the rewards paid by
``compoundRewards`` (after the treasury cut), the cycle nets
``K + R - X - fee``. ``X`` is the quote's maximum input, so the swap cost
is already bounded by it.

Liquidation: ``bonus - slippage - flash fee`` in USD must reach the
configured absolute floor.
License: MIT
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Union

from ..utils.custom_exceptions import PlanRejected
from ..utils.logging_config import get_logger
from ..utils.numbers import BPS_DENOMINATOR, add_bps, bps_of, to_usd
from .models import ExecutionPlan, LiquidationParams, Outcome, Position, PositionKind, Quote

logger = get_logger(__name__)

BELOW_PROFIT_FLOOR = "below profit floor"
INSUFFICIENT_OUTPUT = "insufficient output"
DEPOSIT_DISABLED = "deposit disabled"
NO_DEBT = "no debt to repay"
ZERO_THRESHOLD = "zero threshold"
INSUFFICIENT_COLLATERAL = "insufficient collateral"

Evaluation = Union[ExecutionPlan, Outcome]


def required_amount_for_swap(required: int, slippage_bps: int) -> int:
    """``required`` plus the slippage buffer, as requested from the aggregator."""
    return add_bps(required, slippage_bps)


class ProfitabilityEngine:
    def __init__(self, liquidation_settings, compounding_settings):
        self._liq = liquidation_settings
        self._cmp = compounding_settings

    # ------------------------------------------------------------------
    # Compounding
    # ------------------------------------------------------------------
    def shares_to_mint(self, position: Position) -> int:
        """Always exactly the exchange threshold, however far accrual has run past it."""
        return int(position.threshold or 0)

    def evaluate_compounding(
        self,
        position: Position,
        quote: Quote,
        *,
        required_collateral: int,
        secondary_out: int,
        reward_out: int,
        max_deposit: int,
        flash_fee: Optional[int] = None,
    ) -> Evaluation:
        key = position.key
        shares = self.shares_to_mint(position)
        if shares <= 0:
            return Outcome.skipped(key, ZERO_THRESHOLD)
        if max_deposit <= 0:
            return Outcome.skipped(key, DEPOSIT_DISABLED)
        if quote.output_amount < required_collateral:
            return Outcome.skipped(
                key, INSUFFICIENT_OUTPUT, quoted=quote.output_amount, required=required_collateral
            )

        flash_amount = quote.max_input_amount
        fee = bps_of(flash_amount, self._cmp.flash_fee_bps) if flash_fee is None else int(flash_fee)
        reward_net = reward_out - bps_of(reward_out, self._cmp.treasury_fee_bps)
        net = secondary_out + reward_net - flash_amount - fee

        logger.debug(
            f"{key}: K={secondary_out} R_net={reward_net} X={flash_amount} fee={fee} net={net}"
        )
        if net <= 0 or net < self._cmp.min_profit_amount:
            return Outcome.skipped(key, BELOW_PROFIT_FLOOR, expected_net=net)

        try:
            return ExecutionPlan(
                position=position,
                quote=quote,
                flash_amount=flash_amount,
                flash_fee=fee,
                expected_output=quote.output_amount,
                max_input_amount=quote.max_input_amount,
                min_acceptable_net=max(self._cmp.min_profit_amount, 1),
                expected_net=net,
                settlement_args=(position.vault, shares),
                max_deposit=max_deposit,
            )
        except PlanRejected as e:
            return Outcome.skipped(key, e.reason)

    # ------------------------------------------------------------------
    # Liquidation
    # ------------------------------------------------------------------
    def liquidation_flash_fee(self, params: LiquidationParams) -> int:
        return bps_of(params.debt_to_repay, self._liq.flash_fee_bps)

    def required_swap_output(self, params: LiquidationParams, flash_fee: Optional[int] = None) -> int:
        """Debt tokens the collateral swap must return to repay principal plus fee."""
        fee = self.liquidation_flash_fee(params) if flash_fee is None else int(flash_fee)
        return params.debt_to_repay + fee

    def evaluate_liquidation(
        self,
        position: Position,
        quote: Optional[Quote],
        params: LiquidationParams,
        flash_fee: Optional[int] = None,
    ) -> Evaluation:
        key = position.key
        if params.debt_to_repay <= 0:
            return Outcome.skipped(key, NO_DEBT)
        if quote is None:
            return Outcome.skipped(key, INSUFFICIENT_OUTPUT)

        fee = self.liquidation_flash_fee(params) if flash_fee is None else int(flash_fee)
        min_out = params.debt_to_repay + fee
        if quote.output_amount < min_out:
            return Outcome.skipped(key, INSUFFICIENT_OUTPUT, quoted=quote.output_amount, required=min_out)

        seized = params.expected_collateral
        if quote.max_input_amount > seized:
            return Outcome.skipped(
                key, INSUFFICIENT_COLLATERAL, max_input=quote.max_input_amount, seized=seized
            )

        pd = params.price_decimals
        repay_usd = to_usd(params.debt_to_repay, params.debt_decimals, params.debt_price, pd)
        bonus_usd = repay_usd * Decimal(params.liquidation_bonus_bps - BPS_DENOMINATOR) / Decimal(BPS_DENOMINATOR)
        swap_in_usd = to_usd(quote.max_input_amount, params.collateral_decimals, params.collateral_price, pd)
        swap_out_usd = to_usd(quote.output_amount, params.debt_decimals, params.debt_price, pd)
        # Collateral given up in the swap beyond what repaying the debt is worth.
        slippage_usd = max(swap_in_usd - swap_out_usd, Decimal(0))
        fee_usd = to_usd(fee, params.debt_decimals, params.debt_price, pd)
        profit_usd = bonus_usd - slippage_usd - fee_usd

        logger.debug(
            f"{key}: bonus=${bonus_usd:.4f} slippage=${slippage_usd:.4f} fee=${fee_usd:.4f} "
            f"profit=${profit_usd:.4f}"
        )
        if profit_usd < self._liq.profitable_threshold_usd:
            return Outcome.skipped(key, BELOW_PROFIT_FLOOR, profit_usd=profit_usd)

        surplus = seized - quote.max_input_amount
        try:
            return ExecutionPlan(
                position=position,
                quote=quote,
                flash_amount=params.debt_to_repay,
                flash_fee=fee,
                expected_output=quote.output_amount,
                max_input_amount=quote.max_input_amount,
                min_acceptable_net=1,
                expected_net=surplus,
                settlement_args=(
                    params.debt_asset,
                    params.collateral_asset,
                    params.user,
                    params.debt_to_repay,
                ),
                profit_usd=profit_usd,
            )
        except PlanRejected as e:
            return Outcome.skipped(key, e.reason)

    def evaluate(self, position: Position, quote: Optional[Quote], **context) -> Evaluation:
        """Dispatch on the position kind."""
        if position.kind is PositionKind.COMPOUNDING:
            return self.evaluate_compounding(position, quote, **context)
        return self.evaluate_liquidation(position, quote, **context)
