#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Execution orchestrator
====================================
Turns an ``ExecutionPlan`` into exactly one executor-contract transaction
(flash borrow, exact-output swap, settlement call and repayment all happen
inside it) and classifies what became of it.

Submissions from one signer are serialised: the signer's submission lock
is held from nonce assignment until the attempt is Confirmed, Reverted or
TimedOut. Each attempt is written to the ``SubmissionStore`` before it is
broadcast so an interrupted process can reconcile instead of resubmitting.
License: MIT
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from eth_abi import decode as abi_decode
from eth_account.datastructures import SignedTransaction
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound
from web3.types import TxParams, Wei

from ..config.loaders import AppConfig
from ..integrations.abi_registry import ABIRegistry
from ..persistence.submission_store import ExecutionState, SubmissionStore
from ..utils.custom_exceptions import (
    FlashKeeperError,
    InsufficientFundsError,
    SubmissionReverted,
    SubmissionTransientError,
    TransactionError,
    is_transient,
)
from ..utils.logging_config import get_logger
from .models import ExecutionPlan, Outcome, Position, PositionKind
from .nonce_manager import NonceManager

logger = get_logger(__name__)

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")
PANIC_SELECTOR = bytes.fromhex("4e487b71")
GENERIC_REVERT = "swap/venue failure"
VENUE_REVERT = "venue revert"

# Executor custom errors with an operator-facing wording.
CUSTOM_ERROR_REASONS = {
    "SwapFailed": VENUE_REVERT,
    "DepositDisabled": "deposit disabled",
    "ZeroThreshold": "zero threshold",
    "InsufficientCollateral": "insufficient collateral",
    "NotEnoughToRepay": "insufficient output",
}

__all__ = ["ExecutionOrchestrator", "ExecutionState", "GENERIC_REVERT", "VENUE_REVERT"]


class ExecutionOrchestrator:
    def __init__(
        self,
        web3: AsyncWeb3,
        account: LocalAccount,
        config: AppConfig,
        store: SubmissionStore,
        abi_registry: Optional[ABIRegistry] = None,
        nonce_manager: Optional[NonceManager] = None,
        chain_reader=None,
        dry_run: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._web3 = web3
        self._account = account
        self._address = account.address
        self._config = config
        self._settings = config.settings
        self._network = config.network
        self._chain_id = config.chain_id
        self._store = store
        self._abis = abi_registry or ABIRegistry()
        self._nonce_manager = nonce_manager or NonceManager(web3, self._address)
        self._reader = chain_reader
        self._dry_run = self._settings.dry_run if dry_run is None else dry_run
        self._clock = clock
        self._sleep = sleep
        self._consumed_payloads: Set[str] = set()
        # Submissions still running after the caller that started them was cancelled.
        self._orphaned: Dict[asyncio.Future, Position] = {}
        logger.debug(f"ExecutionOrchestrator initialized for chain {self._chain_id} signer {self._address}")

    @property
    def signer(self) -> str:
        return self._address

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def nonce_manager(self) -> NonceManager:
        return self._nonce_manager

    @staticmethod
    def payload_hash(payload: bytes) -> str:
        return Web3.to_hex(Web3.keccak(bytes(payload)))

    # ------------------------------------------------------------------
    # Guard rails
    # ------------------------------------------------------------------
    async def _check_guard_rails(self, plan: ExecutionPlan) -> Optional[Outcome]:
        key = plan.key
        if plan.quote.is_expired(self._clock()):
            return Outcome.skipped(key, "quote expired")
        if not plan.quote.payload:
            return Outcome.skipped(key, "missing swap payload")
        if plan.min_acceptable_net <= 0 or plan.expected_net < plan.min_acceptable_net:
            return Outcome.skipped(key, "below profit floor", expected_net=plan.expected_net)

        digest = self.payload_hash(plan.quote.payload)
        if digest in self._consumed_payloads or await self._store.payload_used(digest):
            return Outcome.skipped(key, "quote payload already used")
        if await self._store.has_unresolved(key):
            return Outcome.skipped(key, "previous submission unresolved")

        if plan.position.kind is PositionKind.COMPOUNDING:
            max_deposit = plan.max_deposit
            if self._reader is not None and plan.position.vault:
                max_deposit = await self._reader.max_deposit(plan.position.vault, self._executor_address(plan))
            if not max_deposit or max_deposit <= 0:
                return Outcome.skipped(key, "deposit disabled")
        return None

    # ------------------------------------------------------------------
    # Transaction construction
    # ------------------------------------------------------------------
    def _executor_address(self, plan: ExecutionPlan) -> str:
        if plan.position.kind is PositionKind.COMPOUNDING:
            return self._network.compounder_executor
        return self._network.liquidator_executor

    def _settlement_call(self, plan: ExecutionPlan):
        """The executor function that performs the whole settlement in one transaction."""
        payload = bytes(plan.quote.payload)
        if plan.position.kind is PositionKind.COMPOUNDING:
            vault, shares = plan.settlement_args
            contract = self._web3.eth.contract(
                address=Web3.to_checksum_address(self._network.compounder_executor),
                abi=self._abis.get_abi("compounder_executor"),
            )
            return contract.functions.run(
                Web3.to_checksum_address(vault), payload, plan.flash_amount, plan.max_input_amount, shares
            )
        debt_asset, collateral_asset, user, debt_to_cover = plan.settlement_args
        contract = self._web3.eth.contract(
            address=Web3.to_checksum_address(self._network.liquidator_executor),
            abi=self._abis.get_abi("liquidator_executor"),
        )
        return contract.functions.liquidate(
            Web3.to_checksum_address(debt_asset),
            Web3.to_checksum_address(collateral_asset),
            Web3.to_checksum_address(user),
            debt_to_cover,
            payload,
            plan.max_input_amount,
        )

    async def _encode_call(self, plan: ExecutionPlan) -> str:
        tx = await self._settlement_call(plan).build_transaction(
            {"from": self._address, "gas": self._settings.default_gas_limit, "gasPrice": Wei(0), "value": Wei(0)}
        )
        return tx["data"]

    async def _build_transaction(self, to: str, data: str, nonce: int) -> TxParams:
        tx_params: TxParams = {
            "from": self._address,
            "to": Web3.to_checksum_address(to),
            "value": Wei(0),
            "data": data,
            "nonce": nonce,
            "chainId": self._chain_id,
        }
        gas_price = await self._web3.eth.gas_price
        max_allowed = Web3.to_wei(self._settings.max_gas_price_gwei, "gwei")
        if gas_price > max_allowed:
            raise TransactionError(
                f"Gas price {gas_price} exceeds max_gas_price_gwei ({self._settings.max_gas_price_gwei} gwei)",
                reason="gas price above cap",
            )
        tx_params["gasPrice"] = gas_price

        try:
            estimated_gas = await self._web3.eth.estimate_gas(tx_params)
            tx_params["gas"] = int(estimated_gas * self._settings.gas_limit_multiplier)
        except Exception as e:
            logger.warning(f"Gas estimation failed: {e}. Using default limit.")
            tx_params["gas"] = self._settings.default_gas_limit
        return tx_params

    async def _simulate_transaction(self, tx_params: TxParams) -> None:
        """``eth_call`` preflight. A revert raises ``SubmissionReverted`` with the decoded reason."""
        tx_for_call = dict(tx_params)
        tx_for_call.pop("nonce", None)
        try:
            await self._web3.eth.call(tx_for_call)
        except ContractLogicError as e:
            reason = self.decode_revert_reason(getattr(e, "data", None), getattr(e, "message", str(e)))
            raise SubmissionReverted(f"Preflight reverted: {reason}", reason=reason, cause=e) from e
        except Exception as e:
            raise SubmissionTransientError(f"Preflight call failed: {e}", cause=e) from e

    @staticmethod
    def _get_raw_transaction_bytes(signed_tx: SignedTransaction) -> bytes:
        raw_tx = getattr(signed_tx, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed_tx, "rawTransaction", None)
        if raw_tx is None:
            raise TransactionError("Signed transaction missing raw transaction bytes.")
        return raw_tx

    # ------------------------------------------------------------------
    # Revert decoding
    # ------------------------------------------------------------------
    def decode_revert_reason(self, data: Any, message: Optional[str] = None) -> str:
        """Readable reason for revert ``data``: Error(string), Panic(uint256) or a known custom error."""
        raw = self._revert_bytes(data)
        if raw is not None and len(raw) >= 4:
            selector, body = raw[:4], raw[4:]
            try:
                if selector == ERROR_STRING_SELECTOR:
                    (reason,) = abi_decode(["string"], body)
                    return reason or GENERIC_REVERT
                if selector == PANIC_SELECTOR:
                    (code,) = abi_decode(["uint256"], body)
                    return f"panic 0x{code:02x}"
            except Exception:
                return GENERIC_REVERT
            name = self._abis.error_name(selector)
            if name:
                return CUSTOM_ERROR_REASONS.get(name, name)
            return GENERIC_REVERT
        if message and "execution reverted:" in message:
            reason = message.split("execution reverted:", 1)[1].strip()
            if reason:
                return reason
        return GENERIC_REVERT

    @staticmethod
    def _revert_bytes(data: Any) -> Optional[bytes]:
        if data is None:
            return None
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        if isinstance(data, dict):
            return ExecutionOrchestrator._revert_bytes(data.get("data"))
        text = str(data)
        if text.startswith("0x"):
            text = text[2:]
        try:
            return bytes.fromhex(text)
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(self, plan: ExecutionPlan) -> Outcome:
        """Submit ``plan`` and return its terminal outcome.

        The payload is marked consumed as soon as the guard rails pass, so
        it can never be offered again, whatever happens next.

        Raises:
            InsufficientFundsError: if the node rejects the broadcast for lack of gas funds.
        """
        rejection = await self._check_guard_rails(plan)
        if rejection is not None:
            logger.info(f"{plan.key}: not submitting ({rejection.reason})")
            return rejection

        digest = self.payload_hash(plan.quote.payload)
        self._consumed_payloads.add(digest)

        if self._dry_run:
            logger.info(f"{plan.key}: dry run, expected net {plan.expected_net}")
            return Outcome.skipped(plan.key, "dry run", expected_net=plan.expected_net)

        # A cancelled cycle must not interrupt a submission half way.
        task = asyncio.ensure_future(self._submit(plan, digest))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                self._orphaned[task] = plan.position
                logger.warning(f"{plan.key}: caller cancelled, submission continues in the background")
            raise

    async def drain_inflight(self) -> List[Tuple[Position, Outcome]]:
        """Wait for submissions whose caller was cancelled and return their outcomes.

        Each outcome is handed out once, so the caller can notify it.
        """
        drained: List[Tuple[Position, Outcome]] = []
        while self._orphaned:
            task, position = self._orphaned.popitem()
            if task.cancelled():
                continue
            try:
                outcome = await task
            except FlashKeeperError as e:
                if is_transient(e):
                    outcome = Outcome.transient(position.key, e)
                else:
                    outcome = Outcome.skipped(position.key, e.message)
            except Exception as e:
                logger.error(f"{position.key}: background submission failed: {e}")
                outcome = Outcome.transient(position.key, e)
            logger.info(f"{position.key}: background submission finished: {outcome.status.value}")
            drained.append((position, outcome))
        return drained

    async def _submit(self, plan: ExecutionPlan, digest: str) -> Outcome:
        key = plan.key
        async with self._nonce_manager.submission_lock:
            nonce = await self._nonce_manager.get_next_nonce()
            try:
                data = await self._encode_call(plan)
                tx_params = await self._build_transaction(self._executor_address(plan), data, nonce)
                await self._simulate_transaction(tx_params)
            except SubmissionReverted as e:
                await self._nonce_manager.release_nonce(nonce)
                logger.warning(f"{key}: preflight revert: {e.reason}")
                return Outcome.reverted(key, e.reason or GENERIC_REVERT, stage="preflight")
            except TransactionError as e:
                await self._nonce_manager.release_nonce(nonce)
                if isinstance(e, SubmissionTransientError):
                    return Outcome.transient(key, e)
                return Outcome.skipped(key, e.reason or e.message)
            except Exception as e:
                await self._nonce_manager.release_nonce(nonce)
                return Outcome.transient(key, SubmissionTransientError(f"Could not build transaction: {e}", cause=e))

            signed_tx: SignedTransaction = self._account.sign_transaction(tx_params)
            tx_hash = Web3.to_hex(signed_tx.hash)
            record = await self._store.record_submission(
                {
                    "tx_hash": tx_hash,
                    "chain_id": self._chain_id,
                    "candidate_key": key,
                    "kind": plan.position.kind.value,
                    "signer": self._address,
                    "nonce": nonce,
                    "payload_hash": digest,
                    "state": ExecutionState.PLANNED,
                    "flash_amount": str(plan.flash_amount),
                    "expected_net": str(plan.expected_net),
                }
            )
            if record is None:
                await self._nonce_manager.release_nonce(nonce)
                return Outcome.transient(key, "submission log unavailable")

            try:
                await self._web3.eth.send_raw_transaction(self._get_raw_transaction_bytes(signed_tx))
                logger.info(f"{key}: transaction sent {tx_hash} (nonce {nonce})")
            except Exception as e:
                error_text = str(e).lower()
                if "insufficient funds" in error_text:
                    await self._store.update_state(tx_hash, ExecutionState.DROPPED, reason=str(e))
                    await self._nonce_manager.release_nonce(nonce)
                    raise InsufficientFundsError(
                        f"Signer {self._address} cannot pay gas for {key}", token="native", cause=e
                    ) from e
                if "already known" not in error_text:
                    await self._store.update_state(tx_hash, ExecutionState.DROPPED, reason=str(e))
                    if "nonce too low" in error_text:
                        await self._nonce_manager.resync_nonce()
                    else:
                        await self._nonce_manager.release_nonce(nonce)
                    logger.warning(f"{key}: broadcast failed: {e}")
                    return Outcome.transient(key, SubmissionTransientError(f"Broadcast failed: {e}", tx_hash=tx_hash))
                logger.info(f"{key}: {tx_hash} already in the mempool")

            await self._store.update_state(tx_hash, ExecutionState.SUBMITTED)
            return await self._await_outcome(plan, tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Poll for a receipt; ``None`` when none arrived before ``timeout``."""
        timeout = self._settings.receipt_timeout_seconds if timeout is None else timeout
        deadline = self._clock() + timeout
        while True:
            try:
                receipt = await self._web3.eth.get_transaction_receipt(tx_hash)
                if receipt:
                    return receipt
            except TransactionNotFound:
                pass
            except Exception as e:
                logger.debug(f"Receipt poll for {tx_hash} failed: {e}")
            if self._clock() >= deadline:
                return None
            await self._sleep(self._settings.receipt_poll_interval)

    async def _await_outcome(self, plan: ExecutionPlan, tx_hash: str) -> Outcome:
        key = plan.key
        receipt = await self.wait_for_receipt(tx_hash)
        if receipt is None:
            await self._store.update_state(tx_hash, ExecutionState.TIMED_OUT, reason="no receipt before timeout")
            logger.warning(f"{key}: no receipt for {tx_hash}; will reconcile next cycle")
            return Outcome.timed_out(key, tx_hash)
        return await self._classify_receipt(key, tx_hash, receipt, plan.expected_net)

    async def _classify_receipt(self, key: str, tx_hash: str, receipt: Dict[str, Any], expected_net: int) -> Outcome:
        block_number = receipt.get("blockNumber")
        gas_used = receipt.get("gasUsed", 0)
        if receipt.get("status") == 1:
            await self._store.update_state(
                tx_hash, ExecutionState.CONFIRMED, net_result=expected_net, block_number=block_number
            )
            logger.info(f"{key}: confirmed {tx_hash} in block {block_number}, net {expected_net}")
            return Outcome.confirmed(key, tx_hash, expected_net, block_number=block_number, gas_used=gas_used)

        # Single transaction: a revert leaves no flash principal outstanding.
        await self._store.update_state(
            tx_hash, ExecutionState.REVERTED, reason=VENUE_REVERT, block_number=block_number
        )
        logger.warning(f"{key}: {tx_hash} reverted in block {block_number}")
        return Outcome.reverted(key, VENUE_REVERT, tx_hash, block_number=block_number, gas_used=gas_used)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def reconcile_pending(self) -> List[Outcome]:
        """Resolve submissions a previous cycle or process left without a receipt.

        Returns the outcomes that became terminal. Transactions still in the
        mempool stay unresolved, which keeps their candidate blocked.
        """
        resolved: List[Outcome] = []
        records = await self._store.unresolved(self._chain_id)
        for record in records:
            try:
                receipt = await self._web3.eth.get_transaction_receipt(record.tx_hash)
            except TransactionNotFound:
                receipt = None
            except Exception as e:
                logger.warning(f"Could not reconcile {record.tx_hash}: {e}")
                continue

            if receipt:
                expected_net = int(record.expected_net or 0)
                resolved.append(
                    await self._classify_receipt(record.candidate_key, record.tx_hash, receipt, expected_net)
                )
                continue

            try:
                pending_tx = await self._web3.eth.get_transaction(record.tx_hash)
            except TransactionNotFound:
                pending_tx = None
            except Exception as e:
                logger.warning(f"Could not look up {record.tx_hash}: {e}")
                continue

            if pending_tx is None:
                await self._store.update_state(record.tx_hash, ExecutionState.DROPPED, reason="dropped from mempool")
                await self._nonce_manager.resync_nonce()
                logger.warning(f"{record.candidate_key}: {record.tx_hash} was dropped; nonce resynced")
                resolved.append(
                    Outcome.transient(record.candidate_key, f"transaction {record.tx_hash} dropped from mempool")
                )
            else:
                logger.info(f"{record.candidate_key}: {record.tx_hash} still pending")
        return resolved
