#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Chain state reader
================================
Read-only view of the lending pool and the compounding vaults. Every call
is bounded by ``rpc_timeout_seconds``; timeouts, RPC errors and malformed
responses surface as ``ChainReadError``.
License: MIT
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Sequence, Union

from web3 import AsyncWeb3, Web3

from ..config.loaders import AppConfig
from ..config.networks import ZERO_ADDRESS
from ..integrations.abi_registry import ABIRegistry
from ..utils.custom_exceptions import ChainReadError
from ..utils.logging_config import get_logger
from ..utils.numbers import bps_of, from_fixed_point, iter_batches
from .models import LiquidationParams, Position, PositionKind

logger = get_logger(__name__)

LEVERAGE_ONE = 1_000_000


@dataclass(frozen=True)
class CandidateFilter:
    """Which positions a scan should cover.

    ``subjects`` overrides the configured borrower or vault list.
    """

    kind: PositionKind
    subjects: Optional[Sequence[str]] = None


class ChainStateReader:
    def __init__(self, web3: AsyncWeb3, config: AppConfig, abi_registry: Optional[ABIRegistry] = None):
        self._web3 = web3
        self._config = config
        self._settings = config.settings
        self._network = config.network
        self._abis = abi_registry or ABIRegistry()
        self._contracts: Dict[tuple, Any] = {}

    def _contract(self, abi_name: str, address: str):
        key = (abi_name, address.lower())
        contract = self._contracts.get(key)
        if contract is None:
            contract = self._web3.eth.contract(
                address=Web3.to_checksum_address(address), abi=self._abis.get_abi(abi_name)
            )
            self._contracts[key] = contract
        return contract

    async def _call(self, call_name: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._settings.rpc_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ChainReadError(f"{call_name} timed out", call=call_name, cause=e) from e
        except ChainReadError:
            raise
        except Exception as e:
            raise ChainReadError(f"{call_name} failed: {e}", call=call_name, cause=e) from e

    async def block_number(self) -> int:
        value = await self._call("eth_blockNumber", self._web3.eth.block_number)
        if not isinstance(value, int) or value < 0:
            raise ChainReadError(f"Malformed block number: {value!r}", call="eth_blockNumber")
        return value

    # ------------------------------------------------------------------
    # Candidate discovery
    # ------------------------------------------------------------------
    async def list_candidates(self, filter: CandidateFilter) -> AsyncIterator[Position]:
        """Yield a fresh snapshot of positions on every call.

        Reads run concurrently per batch of ``health_factor_batch_size`` and
        positions come out in the order of the configured subjects. A
        subject whose read fails is logged and left out; if every read of
        the scan fails the scan raises ``ChainReadError``.
        """
        block = await self.block_number()
        if filter.kind is PositionKind.LIQUIDATION:
            subjects = list(filter.subjects if filter.subjects is not None else self._settings.liquidation.borrowers)
            reader = self._read_liquidation_position
        else:
            subjects = list(filter.subjects if filter.subjects is not None else self._settings.compounding.vaults)
            reader = self._read_compounding_position

        if not subjects:
            return

        failures = 0
        batch_size = self._settings.liquidation.health_factor_batch_size
        for batch in iter_batches(subjects, batch_size):
            results = await asyncio.gather(*(reader(s, block) for s in batch), return_exceptions=True)
            for subject, result in zip(batch, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    failures += 1
                    logger.warning(f"Skipping {subject}: {result}")
                    continue
                yield result

        if failures == len(subjects):
            raise ChainReadError(f"All {failures} position reads failed", call="list_candidates")

    async def _read_liquidation_position(self, user: str, block: int) -> Position:
        health_factor = await self._health_factor(user, block)
        return Position(
            kind=PositionKind.LIQUIDATION,
            owner=user,
            collateral_asset=ZERO_ADDRESS,
            debt_asset=ZERO_ADDRESS,
            metric=health_factor,
            block_number=block,
        )

    async def _read_compounding_position(self, vault: str, block: int) -> Position:
        contract = self._contract("vault", vault)
        threshold, accrued, collateral, debt = await asyncio.gather(
            self._call("exchangeThreshold", contract.functions.exchangeThreshold().call(block_identifier=block)),
            self._accrued_rewards(vault, block),
            self._call("collateralToken", contract.functions.collateralToken().call()),
            self._call("debtToken", contract.functions.debtToken().call()),
        )
        return Position(
            kind=PositionKind.COMPOUNDING,
            owner=vault,
            collateral_asset=collateral,
            debt_asset=debt,
            metric=int(accrued),
            block_number=block,
            vault=vault,
            threshold=int(threshold),
        )

    async def _health_factor(self, user: str, block: Union[int, str] = "latest") -> Decimal:
        pool = self._contract("pool", self._network.pool)
        data = await self._call(
            "getUserAccountData", pool.functions.getUserAccountData(user).call(block_identifier=block)
        )
        try:
            return from_fixed_point(data[5], 18)
        except (TypeError, IndexError, ValueError) as e:
            raise ChainReadError(f"Malformed account data for {user}", call="getUserAccountData", cause=e) from e

    async def _accrued_rewards(self, vault: str, block: Union[int, str] = "latest") -> int:
        """Rewards accrued to the vault, summed over the configured reward tokens."""
        helper_address = self._network.reward_helper
        reward_tokens = self._settings.compounding.reward_tokens
        if helper_address and reward_tokens:
            helper = self._contract("reward_helper", helper_address)
            amounts = await asyncio.gather(
                *(
                    self._call(
                        "getUserAccruedRewards",
                        helper.functions.getUserAccruedRewards(vault, token).call(block_identifier=block),
                    )
                    for token in reward_tokens
                )
            )
            return sum(int(a) for a in amounts)
        contract = self._contract("vault", vault)
        return int(
            await self._call(
                "getCurrentRewardBalance", contract.functions.getCurrentRewardBalance().call(block_identifier=block)
            )
        )

    async def read_metric(self, position: Position) -> Union[Decimal, int]:
        """Re-read the position's metric at the latest block."""
        if position.kind is PositionKind.LIQUIDATION:
            return await self._health_factor(position.owner)
        return await self._accrued_rewards(position.vault or position.owner)

    async def refresh(self, position: Position) -> Position:
        """The same position with its metric (and threshold) re-read now."""
        block = await self.block_number()
        if position.kind is PositionKind.LIQUIDATION:
            return position.with_metric(await self.read_metric(position), block)
        return await self._read_compounding_position(position.vault or position.owner, block)

    # ------------------------------------------------------------------
    # Vault and lender views
    # ------------------------------------------------------------------
    async def exchange_threshold(self, vault: str) -> int:
        contract = self._contract("vault", vault)
        return int(await self._call("exchangeThreshold", contract.functions.exchangeThreshold().call()))

    async def preview_mint(self, vault: str, shares: int) -> int:
        contract = self._contract("vault", vault)
        return int(await self._call("previewMint", contract.functions.previewMint(int(shares)).call()))

    async def max_deposit(self, vault: str, receiver: str) -> int:
        contract = self._contract("vault", vault)
        return int(await self._call("maxDeposit", contract.functions.maxDeposit(receiver).call()))

    async def preview_mint_debt(self, position: Position, collateral_amount: int) -> int:
        """Debt tokens a mint of ``collateral_amount`` hands back at the vault's current leverage.

        Leverage is in units where 1_000_000 is 1x; borrowed value is
        ``supplied * (L - 1x) / L``.
        """
        vault = self._contract("vault", position.vault or position.owner)
        leverage = int(await self._call("getCurrentLeverageBps", vault.functions.getCurrentLeverageBps().call()))
        if leverage <= LEVERAGE_ONE:
            return 0
        coll_price, debt_price = await asyncio.gather(
            self.asset_price(position.collateral_asset), self.asset_price(position.debt_asset)
        )
        erc_c = self._contract("erc20", position.collateral_asset)
        erc_d = self._contract("erc20", position.debt_asset)
        coll_decimals, debt_decimals = await asyncio.gather(
            self._call("decimals", erc_c.functions.decimals().call()),
            self._call("decimals", erc_d.functions.decimals().call()),
        )
        if debt_price == 0:
            raise ChainReadError("Oracle returned zero debt price", call="getAssetPrice")
        supplied_value = int(collateral_amount) * coll_price // 10 ** int(coll_decimals)
        borrowed_value = supplied_value * (leverage - LEVERAGE_ONE) // leverage
        return borrowed_value * 10 ** int(debt_decimals) // debt_price

    async def flash_fee(self, token: str, amount: int) -> int:
        lender = self._contract("flash_lender", self._network.flash_lender)
        return int(await self._call("flashFee", lender.functions.flashFee(token, int(amount)).call()))

    async def asset_price(self, asset: str) -> int:
        oracle = self._contract("price_oracle", self._network.price_oracle)
        return int(await self._call("getAssetPrice", oracle.functions.getAssetPrice(asset).call()))

    async def price_decimals(self) -> int:
        oracle = self._contract("price_oracle", self._network.price_oracle)
        unit = int(await self._call("BASE_CURRENCY_UNIT", oracle.functions.BASE_CURRENCY_UNIT().call()))
        return len(str(unit)) - 1

    async def liquidation_params(self, position: Position) -> LiquidationParams:
        """Pick the largest debt and collateral reserves of the borrower and size the repayment.

        The repay amount is the close factor share of the debt, reduced if
        the borrower's collateral (with bonus) cannot cover it.
        """
        user = position.owner
        provider = self._contract("pool_data_provider", self._network.pool_data_provider)
        reserves = await self._call("getAllReservesTokens", provider.functions.getAllReservesTokens().call())
        if not isinstance(reserves, (list, tuple)):
            raise ChainReadError("Malformed reserves list", call="getAllReservesTokens")

        assets: List[str] = [r[1] for r in reserves]
        user_data = await asyncio.gather(
            *(
                self._call("getUserReserveData", provider.functions.getUserReserveData(asset, user).call())
                for asset in assets
            )
        )
        prices = await asyncio.gather(*(self.asset_price(asset) for asset in assets))
        configs = await asyncio.gather(
            *(
                self._call(
                    "getReserveConfigurationData", provider.functions.getReserveConfigurationData(asset).call()
                )
                for asset in assets
            )
        )
        price_decimals = await self.price_decimals()

        best_debt = None
        best_collateral = None
        for asset, data, price, cfg in zip(assets, user_data, prices, configs):
            decimals = int(cfg[0])
            debt = int(data[1]) + int(data[2])
            collateral = int(data[0]) if data[8] else 0
            debt_value = debt * price // 10**decimals
            collateral_value = collateral * price // 10**decimals
            if debt > 0 and (best_debt is None or debt_value > best_debt[4]):
                best_debt = (asset, debt, decimals, price, debt_value)
            if collateral > 0 and (best_collateral is None or collateral_value > best_collateral[4]):
                best_collateral = (asset, collateral, decimals, price, collateral_value, int(cfg[3]))

        if best_debt is None or best_collateral is None:
            return LiquidationParams(
                user=user,
                debt_asset=best_debt[0] if best_debt else ZERO_ADDRESS,
                collateral_asset=best_collateral[0] if best_collateral else ZERO_ADDRESS,
                debt_to_repay=0,
                debt_decimals=best_debt[2] if best_debt else 18,
                collateral_decimals=best_collateral[2] if best_collateral else 18,
                debt_price=best_debt[3] if best_debt else 0,
                collateral_price=best_collateral[3] if best_collateral else 0,
                price_decimals=price_decimals,
                liquidation_bonus_bps=best_collateral[5] if best_collateral else 10_000,
            )

        debt_asset, debt_amount, debt_decimals, debt_price, _ = best_debt
        coll_asset, coll_amount, coll_decimals, coll_price, coll_value, bonus_bps = best_collateral
        to_repay = bps_of(debt_amount, self._settings.liquidation.close_factor_bps)

        # Cap by collateral: repay value * bonus must not exceed collateral value.
        max_repay_value = coll_value * 10_000 // max(bonus_bps, 1)
        if debt_price > 0 and to_repay * debt_price // 10**debt_decimals > max_repay_value:
            to_repay = max_repay_value * 10**debt_decimals // debt_price

        return LiquidationParams(
            user=user,
            debt_asset=debt_asset,
            collateral_asset=coll_asset,
            debt_to_repay=to_repay,
            debt_decimals=debt_decimals,
            collateral_decimals=coll_decimals,
            debt_price=debt_price,
            collateral_price=coll_price,
            price_decimals=price_decimals,
            liquidation_bonus_bps=bonus_bps,
        )
