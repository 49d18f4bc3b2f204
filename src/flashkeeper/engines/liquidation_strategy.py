#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import dataclasses
from decimal import Decimal

from ..core.models import AmountSpec, Outcome, Position, PositionKind
from ..core.profitability import NO_DEBT
from ..utils.logging_config import get_logger
from .base_strategy import Prepared, SettlementStrategy

logger = get_logger(__name__)


class LiquidationStrategy(SettlementStrategy):
    """Repay part of an unhealthy borrower's debt and sell the seized collateral for the debt token."""

    kind = PositionKind.LIQUIDATION

    @property
    def executor_address(self) -> str:
        return self._network.liquidator_executor

    async def _prepare(self, position: Position) -> Prepared:
        liq = self._settings.liquidation
        fresh = await self._reader.refresh(position)
        if Decimal(fresh.metric) >= liq.health_factor_threshold:
            return Outcome.skipped(fresh.key, "no longer eligible", health_factor=fresh.metric)

        params = await self._reader.liquidation_params(fresh)
        if params.debt_to_repay <= 0:
            return Outcome.skipped(fresh.key, NO_DEBT)
        fresh = dataclasses.replace(
            fresh, debt_asset=params.debt_asset, collateral_asset=params.collateral_asset
        )

        lender_fee = await self._lender_fee(params.debt_asset, params.debt_to_repay)
        required = self._engine.required_swap_output(params, lender_fee)
        quote = await self._quote(
            params.collateral_asset, params.debt_asset, AmountSpec.exact_out(required), liq.slippage_bps
        )
        return self._engine.evaluate_liquidation(fresh, quote, params, flash_fee=lender_fee)

