#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import dataclasses
from typing import Optional, Union

from ..config.loaders import AppConfig
from ..config.networks import ZERO_ADDRESS
from ..core.models import ExecutionPlan, Outcome, Position, PositionKind, Quote
from ..core.profitability import ProfitabilityEngine
from ..utils.custom_exceptions import PlanRejected, QuoteUnavailable
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

Prepared = Union[ExecutionPlan, Outcome]


class SettlementStrategy:
    """Per-kind preparation of one candidate: refresh, quote, evaluate, assemble.

    ``prepare`` returns either a plan carrying a freshly assembled swap
    payload or a skipped outcome. Transient read and quote failures
    propagate so the retry scheduler can see them.
    """

    kind: PositionKind = PositionKind.LIQUIDATION

    def __init__(self, config: AppConfig, reader, quoter, engine: ProfitabilityEngine):
        self._config = config
        self._settings = config.settings
        self._network = config.network
        self._reader = reader
        self._quoter = quoter
        self._engine = engine

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def executor_address(self) -> str:
        raise NotImplementedError

    async def _prepare(self, position: Position) -> Prepared:
        raise NotImplementedError

    async def prepare(self, position: Position) -> Prepared:
        try:
            prepared = await self._prepare(position)
            if isinstance(prepared, Outcome):
                logger.info(f"{position.key}: skipped ({prepared.reason})")
                return prepared
            return await self._attach_payload(prepared)
        except QuoteUnavailable as e:
            logger.info(f"{position.key}: no usable route ({e.message})")
            return Outcome.skipped(position.key, e.message)
        except PlanRejected as e:
            logger.info(f"{position.key}: plan rejected ({e.reason})")
            return Outcome.skipped(position.key, e.reason)

    async def _attach_payload(self, plan: ExecutionPlan) -> ExecutionPlan:
        payload = await self._quoter.assemble(plan.quote, self.executor_address)
        return dataclasses.replace(plan, quote=plan.quote.with_payload(payload))

    async def _lender_fee(self, token: str, amount: int) -> Optional[int]:
        """Fee quoted by the flash lender, or ``None`` to fall back to the configured bps."""
        if not self._network.flash_lender or self._network.flash_lender == ZERO_ADDRESS:
            return None
        return await self._reader.flash_fee(token, amount)

    async def _quote(self, input_token: str, output_token: str, amount_spec, slippage_bps: int) -> Quote:
        return await self._quoter.quote(input_token, output_token, amount_spec, slippage_bps)
