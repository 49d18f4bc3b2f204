#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import asyncio
from typing import Optional

from web3 import AsyncWeb3

from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class NonceManager:
    """Hands out sequential nonces for one signer.

    ``submission_lock`` serialises whole submissions (sign, broadcast and
    receipt wait) so the signer never has two settlement transactions in
    flight at once.
    """

    def __init__(self, web3: AsyncWeb3, address: str):
        self._web3 = web3
        self._address = address
        self._nonce: Optional[int] = None
        self._lock = asyncio.Lock()
        self.submission_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._address

    async def _fetch_chain_nonce(self) -> int:
        return await self._web3.eth.get_transaction_count(self._address, "pending")

    async def get_next_nonce(self) -> int:
        async with self._lock:
            if self._nonce is None:
                self._nonce = await self._fetch_chain_nonce()
                logger.debug(f"Nonce initialised to {self._nonce} for {self._address}")
            nonce = self._nonce
            self._nonce += 1
            return nonce

    async def resync_nonce(self) -> int:
        """Drop the cached counter and reload it from the pending block."""
        async with self._lock:
            self._nonce = await self._fetch_chain_nonce()
            logger.info(f"Nonce resynced to {self._nonce} for {self._address}")
            return self._nonce

    async def release_nonce(self, nonce: int) -> None:
        """Give back a nonce whose transaction never reached the mempool."""
        async with self._lock:
            if self._nonce is not None and nonce == self._nonce - 1:
                self._nonce = nonce
