#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""Minimal ABIs of the contracts the settlement pipeline talks to."""

from __future__ import annotations

from typing import Any, Dict, List

from web3 import Web3

from ..utils.custom_exceptions import ConfigurationError


def _fn(name: str, inputs: List[tuple], outputs: List[tuple], mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


def _error(name: str, inputs: List[tuple] = ()) -> Dict[str, Any]:
    return {"type": "error", "name": name, "inputs": [{"name": n, "type": t} for n, t in inputs]}


POOL_ABI = [
    _fn(
        "getUserAccountData",
        [("user", "address")],
        [
            ("totalCollateralBase", "uint256"),
            ("totalDebtBase", "uint256"),
            ("availableBorrowsBase", "uint256"),
            ("currentLiquidationThreshold", "uint256"),
            ("ltv", "uint256"),
            ("healthFactor", "uint256"),
        ],
    ),
]

POOL_DATA_PROVIDER_ABI = [
    _fn(
        "getUserReserveData",
        [("asset", "address"), ("user", "address")],
        [
            ("currentATokenBalance", "uint256"),
            ("currentStableDebt", "uint256"),
            ("currentVariableDebt", "uint256"),
            ("principalStableDebt", "uint256"),
            ("scaledVariableDebt", "uint256"),
            ("stableBorrowRate", "uint256"),
            ("liquidityRate", "uint256"),
            ("stableRateLastUpdated", "uint40"),
            ("usageAsCollateralEnabled", "bool"),
        ],
    ),
    _fn(
        "getReserveConfigurationData",
        [("asset", "address")],
        [
            ("decimals", "uint256"),
            ("ltv", "uint256"),
            ("liquidationThreshold", "uint256"),
            ("liquidationBonus", "uint256"),
            ("reserveFactor", "uint256"),
            ("usageAsCollateralEnabled", "bool"),
            ("borrowingEnabled", "bool"),
            ("stableBorrowRateEnabled", "bool"),
            ("isActive", "bool"),
            ("isFrozen", "bool"),
        ],
    ),
    {
        "type": "function",
        "name": "getAllReservesTokens",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [{"name": "symbol", "type": "string"}, {"name": "tokenAddress", "type": "address"}],
            }
        ],
    },
]

PRICE_ORACLE_ABI = [
    _fn("getAssetPrice", [("asset", "address")], [("", "uint256")]),
    _fn("BASE_CURRENCY_UNIT", [], [("", "uint256")]),
]

VAULT_ABI = [
    _fn("exchangeThreshold", [], [("", "uint256")]),
    _fn("previewMint", [("shares", "uint256")], [("", "uint256")]),
    _fn("maxDeposit", [("receiver", "address")], [("", "uint256")]),
    _fn("collateralToken", [], [("", "address")]),
    _fn("debtToken", [], [("", "address")]),
    _fn("getCurrentRewardBalance", [], [("", "uint256")]),
    _fn("getCurrentLeverageBps", [], [("", "uint256")]),
]

REWARD_HELPER_ABI = [
    _fn(
        "getUserAccruedRewards",
        [("user", "address"), ("rewardToken", "address")],
        [("", "uint256")],
    ),
]

FLASH_LENDER_ABI = [
    _fn("flashFee", [("token", "address"), ("amount", "uint256")], [("", "uint256")]),
    _fn("maxFlashLoan", [("token", "address")], [("", "uint256")]),
]

ERC20_ABI = [
    _fn("decimals", [], [("", "uint8")]),
    _fn("symbol", [], [("", "string")]),
    _fn("balanceOf", [("account", "address")], [("", "uint256")]),
]

COMPOUNDER_EXECUTOR_ABI = [
    _fn(
        "run",
        [
            ("vault", "address"),
            ("swapCalldata", "bytes"),
            ("flashAmount", "uint256"),
            ("maxInput", "uint256"),
            ("shares", "uint256"),
        ],
        [],
        mutability="nonpayable",
    ),
    _error("InvalidLender"),
    _error("InvalidToken"),
    _error("ZeroThreshold"),
    _error("DepositDisabled"),
    _error("SwapFailed"),
    _error("InsufficientCollateral"),
    _error("NotEnoughToRepay"),
]

LIQUIDATOR_EXECUTOR_ABI = [
    _fn(
        "liquidate",
        [
            ("debtAsset", "address"),
            ("collateralAsset", "address"),
            ("user", "address"),
            ("debtToCover", "uint256"),
            ("swapCalldata", "bytes"),
            ("maxInput", "uint256"),
        ],
        [],
        mutability="nonpayable",
    ),
    _error("SwapFailed"),
    _error("NotEnoughToRepay"),
    _error("HealthFactorNotBelowThreshold"),
]


def _selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


class ABIRegistry:
    """Name-keyed ABI lookup plus a selector table for custom revert errors."""

    _ABIS: Dict[str, List[Dict[str, Any]]] = {
        "pool": POOL_ABI,
        "pool_data_provider": POOL_DATA_PROVIDER_ABI,
        "price_oracle": PRICE_ORACLE_ABI,
        "vault": VAULT_ABI,
        "reward_helper": REWARD_HELPER_ABI,
        "flash_lender": FLASH_LENDER_ABI,
        "erc20": ERC20_ABI,
        "compounder_executor": COMPOUNDER_EXECUTOR_ABI,
        "liquidator_executor": LIQUIDATOR_EXECUTOR_ABI,
    }

    def __init__(self):
        self._error_selectors: Dict[bytes, str] = {}
        for abi in self._ABIS.values():
            for entry in abi:
                if entry["type"] == "error":
                    types = ",".join(i["type"] for i in entry["inputs"])
                    self._error_selectors[_selector(f"{entry['name']}({types})")] = entry["name"]

    def get_abi(self, name: str) -> List[Dict[str, Any]]:
        abi = self._ABIS.get(name)
        if abi is None:
            raise ConfigurationError(f"No ABI registered for '{name}'", key="abi", value=name)
        return abi

    def error_name(self, selector: bytes) -> str | None:
        return self._error_selectors.get(bytes(selector[:4]))
