#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

from ..core.models import AmountSpec, Outcome, Position, PositionKind
from ..core.profitability import DEPOSIT_DISABLED, ZERO_THRESHOLD, required_amount_for_swap
from ..utils.logging_config import get_logger
from .base_strategy import Prepared, SettlementStrategy

logger = get_logger(__name__)


class CompoundingStrategy(SettlementStrategy):
    """Mint exactly one exchange threshold of vault shares with flash-borrowed funds and claim the rewards.

    The flash-borrowed debt token is swapped (exact output) into the
    collateral the mint needs; the mint returns ``K`` debt tokens and
    ``compoundRewards`` pays ``R``, which together repay the flash loan.
    """

    kind = PositionKind.COMPOUNDING

    @property
    def executor_address(self) -> str:
        return self._network.compounder_executor

    async def _prepare(self, position: Position) -> Prepared:
        cmp = self._settings.compounding
        fresh = await self._reader.refresh(position)
        shares = self._engine.shares_to_mint(fresh)
        if shares <= 0:
            return Outcome.skipped(fresh.key, ZERO_THRESHOLD)
        if int(fresh.metric) < shares:
            return Outcome.skipped(fresh.key, "no longer eligible", accrued=fresh.metric, threshold=shares)

        vault = fresh.vault or fresh.owner
        max_deposit = await self._reader.max_deposit(vault, self.executor_address)
        if max_deposit <= 0:
            return Outcome.skipped(fresh.key, DEPOSIT_DISABLED)

        required_collateral = await self._reader.preview_mint(vault, shares)
        swap_target = required_amount_for_swap(required_collateral, cmp.slippage_bps)
        quote = await self._quote(
            fresh.debt_asset, fresh.collateral_asset, AmountSpec.exact_out(swap_target), cmp.slippage_bps
        )
        secondary_out = await self._reader.preview_mint_debt(fresh, required_collateral)
        lender_fee = await self._lender_fee(fresh.debt_asset, quote.max_input_amount)
        logger.debug(
            f"{fresh.key}: shares={shares} collateral={required_collateral} K={secondary_out} R={fresh.metric}"
        )
        return self._engine.evaluate_compounding(
            fresh,
            quote,
            required_collateral=required_collateral,
            secondary_out=secondary_out,
            reward_out=int(fresh.metric),
            max_deposit=max_deposit,
            flash_fee=lender_fee,
        )
