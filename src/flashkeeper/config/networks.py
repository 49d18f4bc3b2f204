#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""Per-network contract address books. Resolved once at startup by the loader."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class NetworkAddresses(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    chain_id: int
    poa: bool = False
    # Lending pool side (liquidations)
    pool: str = ZERO_ADDRESS
    pool_data_provider: str = ZERO_ADDRESS
    price_oracle: str = ZERO_ADDRESS
    liquidator_executor: str = ZERO_ADDRESS
    # Vault side (reward compounding)
    compounder_executor: str = ZERO_ADDRESS
    reward_helper: Optional[str] = None
    # Shared
    flash_lender: str = ZERO_ADDRESS
    settlement_asset: str = ZERO_ADDRESS
    swap_router: str = ZERO_ADDRESS


NETWORKS: Dict[str, NetworkAddresses] = {
    "localhost": NetworkAddresses(name="localhost", chain_id=31337),
    "sonic_testnet": NetworkAddresses(name="sonic_testnet", chain_id=57054),
    "sonic_mainnet": NetworkAddresses(
        name="sonic_mainnet",
        chain_id=146,
        swap_router="0x4E3288c9ca110bCC82bf38F09A7b425c095d92Bf",
    ),
}
