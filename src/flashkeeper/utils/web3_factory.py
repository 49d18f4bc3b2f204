#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import asyncio
from typing import Dict

from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider, WebSocketProvider

from .custom_exceptions import ConnectionError
from .logging_config import get_logger

logger = get_logger(__name__)


class Web3ConnectionFactory:
    """Creates and caches AsyncWeb3 connections for a resolved ``AppConfig``."""

    _connections: Dict[str, AsyncWeb3] = {}
    _connection_lock = asyncio.Lock()

    @classmethod
    async def create_connection(cls, config, force_new: bool = False) -> AsyncWeb3:
        """
        Return a connected AsyncWeb3 for ``config.settings.rpc_url``.

        Raises:
            ConnectionError: if the endpoint is unreachable or serves another chain.
        """
        rpc_url = config.settings.rpc_url
        async with cls._connection_lock:
            if not force_new and rpc_url in cls._connections:
                web3 = cls._connections[rpc_url]
                if await cls._test_connection(web3):
                    logger.debug(f"Using cached Web3 connection for {config.network.name}")
                    return web3
                logger.warning(f"Cached connection for {config.network.name} is stale, creating new")
                del cls._connections[rpc_url]

            web3 = await cls._create_new_connection(config)
            cls._connections[rpc_url] = web3
            return web3

    @classmethod
    async def _create_new_connection(cls, config) -> AsyncWeb3:
        rpc_url = config.settings.rpc_url
        timeout = config.settings.rpc_timeout_seconds
        expected_chain = config.network.chain_id

        if rpc_url.startswith(("ws://", "wss://")):
            web3 = AsyncWeb3(WebSocketProvider(rpc_url))
            try:
                await web3.provider.connect()
            except Exception as e:
                raise ConnectionError(
                    f"Failed to open WebSocket to {config.network.name}",
                    endpoint=rpc_url,
                    chain_id=expected_chain,
                    cause=e,
                ) from e
        else:
            web3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

        if config.network.poa:
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            logger.debug(f"PoA middleware added for {config.network.name}")

        try:
            chain_id = await asyncio.wait_for(web3.eth.chain_id, timeout=timeout)
        except Exception as e:
            raise ConnectionError(
                f"Failed to establish connection to {config.network.name}",
                endpoint=rpc_url,
                chain_id=expected_chain,
                cause=e,
            ) from e

        if chain_id != expected_chain:
            raise ConnectionError(
                f"RPC serves chain {chain_id}, expected {expected_chain}",
                endpoint=rpc_url,
                chain_id=expected_chain,
            )
        logger.info(f"Connected to {config.network.name} (chain {chain_id})")
        return web3

    @classmethod
    async def _test_connection(cls, web3: AsyncWeb3) -> bool:
        try:
            await asyncio.wait_for(web3.eth.get_block("latest"), timeout=5.0)
            return True
        except Exception:
            return False

    @classmethod
    async def close_all_connections(cls) -> None:
        async with cls._connection_lock:
            for url, web3 in cls._connections.items():
                try:
                    if hasattr(web3.provider, "disconnect"):
                        await web3.provider.disconnect()
                except Exception as e:
                    logger.warning(f"Error closing connection: {e}")
            cls._connections.clear()

