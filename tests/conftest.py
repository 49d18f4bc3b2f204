"""Shared builders for settlement tests. Nothing here touches the network. """

import os
import time
from decimal import Decimal

import pytest

os.environ.setdefault("LOG_TO_FILE", "0")

from flashkeeper.config.loaders import AppConfig
from flashkeeper.config.networks import NetworkAddresses
from flashkeeper.config.settings import GlobalSettings
from flashkeeper.core.models import (
    ExecutionPlan,
    LiquidationParams,
    Position,
    PositionKind,
    Quote,
    SwapKind,
)

E18 = 10**18

POOL = "0x1111111111111111111111111111111111111111"
ORACLE = "0x2222222222222222222222222222222222222222"
LIQUIDATOR = "0x3333333333333333333333333333333333333333"
COMPOUNDER = "0x4444444444444444444444444444444444444444"
LENDER = "0x5555555555555555555555555555555555555555"
DUSD = "0x6666666666666666666666666666666666666666"
SFRXUSD = "0x7777777777777777777777777777777777777777"
VAULT = "0x8888888888888888888888888888888888888888"
BORROWER = "0x9999999999999999999999999999999999999999"
# Well-known hardhat test key #0; never holds real funds.
TEST_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


def build_config(**overrides) -> AppConfig:
    network = NetworkAddresses(
        name="localhost",
        chain_id=31337,
        pool=POOL,
        pool_data_provider=POOL,
        price_oracle=ORACLE,
        liquidator_executor=LIQUIDATOR,
        compounder_executor=COMPOUNDER,
        flash_lender=LENDER,
        settlement_asset=DUSD,
    )
    values = {
        "network": "localhost",
        "wallet_key": TEST_KEY,
        "state_dir": overrides.pop("state_dir", "state"),
        "database": {"url": "sqlite+aiosqlite:///:memory:"},
        "compounding": {
            "vaults": [VAULT],
            "flash_fee_bps": 9,
            "treasury_fee_bps": 0,
            "min_profit_amount": 10**15,
        },
        "liquidation": {
            "borrowers": [BORROWER],
            "health_factor_threshold": Decimal("0.1"),
            "profitable_threshold_usd": Decimal("1"),
        },
    }
    values.update(overrides)
    return AppConfig(settings=GlobalSettings(_env_file=None, **values), network=network)


@pytest.fixture
def app_config(tmp_path):
    return build_config(state_dir=str(tmp_path / "state"))


def make_position(kind=PositionKind.COMPOUNDING, metric=None, threshold=E18, subject=VAULT, block=100):
    if kind is PositionKind.COMPOUNDING:
        return Position(
            kind=kind,
            owner=subject,
            collateral_asset=SFRXUSD,
            debt_asset=DUSD,
            metric=2 * E18 if metric is None else metric,
            block_number=block,
            vault=subject,
            threshold=threshold,
        )
    return Position(
        kind=kind,
        owner=subject,
        collateral_asset=SFRXUSD,
        debt_asset=DUSD,
        metric=Decimal("0.05") if metric is None else metric,
        block_number=block,
    )


def make_quote(
    input_amount=300 * E18,
    output_amount=300 * E18,
    max_input_amount=None,
    input_token=DUSD,
    output_token=SFRXUSD,
    expires_in=30.0,
    payload=b"",
    path_id="path-1",
):
    return Quote(
        input_token=input_token,
        output_token=output_token,
        swap_kind=SwapKind.EXACT_OUTPUT,
        input_amount=input_amount,
        output_amount=output_amount,
        max_input_amount=input_amount if max_input_amount is None else max_input_amount,
        path_id=path_id,
        expires_at=time.time() + expires_in,
        chain_id=31337,
        payload=payload,
    )


def make_compounding_plan(payload=b"\x12\x34", expected_net=473 * 10**16, **quote_kwargs):
    position = make_position()
    quote = make_quote(payload=payload, **quote_kwargs)
    return ExecutionPlan(
        position=position,
        quote=quote,
        flash_amount=quote.max_input_amount,
        flash_fee=27 * 10**16,
        expected_output=quote.output_amount,
        max_input_amount=quote.max_input_amount,
        min_acceptable_net=10**15,
        expected_net=expected_net,
        settlement_args=(VAULT, E18),
        max_deposit=10**30,
    )


def make_liquidation_params(debt_to_repay=1_000 * E18, bonus_bps=10_500):
    return LiquidationParams(
        user=BORROWER,
        debt_asset=DUSD,
        collateral_asset=SFRXUSD,
        debt_to_repay=debt_to_repay,
        debt_decimals=18,
        collateral_decimals=18,
        debt_price=10**8,
        collateral_price=10**8,
        price_decimals=8,
        liquidation_bonus_bps=bonus_bps,
    )
