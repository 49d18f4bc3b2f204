#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Settlement pipeline
=================================
One cycle: reconcile earlier submissions, scan, select, prepare every
selected candidate concurrently, then settle them one at a time in
selector order. Each terminal outcome is notified exactly once.
License: MIT
"""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..config.loaders import AppConfig
from ..config.validation import ConfigValidator
from ..engines.base_strategy import Prepared, SettlementStrategy
from ..engines.compounding_strategy import CompoundingStrategy
from ..engines.liquidation_strategy import LiquidationStrategy
from ..integrations.abi_registry import ABIRegistry
from ..integrations.aggregator_client import AggregatorQuoteClient
from ..persistence.state_files import CandidateStateLog
from ..persistence.submission_store import SubmissionStore
from ..utils.custom_exceptions import (
    FlashKeeperError,
    InitializationError,
    SignerError,
    ValidationError,
    is_transient,
)
from ..utils.error_handling import safe_call
from ..utils.logging_config import get_logger
from ..utils.notification_service import NotificationService
from ..utils.retry import RetryPolicy, RetryScheduler
from ..utils.web3_factory import Web3ConnectionFactory
from .candidate_selector import CandidateSelector
from .chain_reader import CandidateFilter, ChainStateReader
from .execution_orchestrator import ExecutionOrchestrator
from .models import CycleReport, ExecutionPlan, Outcome, OutcomeStatus, Position, PositionKind
from .profitability import ProfitabilityEngine

logger = get_logger(__name__)

# Outcomes after which a candidate is left alone for the ignore window.
_IGNORED_AFTER = (OutcomeStatus.SKIPPED, OutcomeStatus.REVERTED)


class SettlementPipeline:
    def __init__(
        self,
        config: AppConfig,
        reader: ChainStateReader,
        selector: CandidateSelector,
        strategy: SettlementStrategy,
        orchestrator: ExecutionOrchestrator,
        notifier: NotificationService,
        retry: RetryScheduler,
        state_log: Optional[CandidateStateLog] = None,
    ):
        self._config = config
        self._settings = config.settings
        self._reader = reader
        self._selector = selector
        self._strategy = strategy
        self._orchestrator = orchestrator
        self._notifier = notifier
        self._retry = retry
        self._state_log = state_log
        self._cycle = 0
        self._closers: list = []

    @property
    def kind(self) -> PositionKind:
        return self._strategy.kind

    @property
    def cycles_run(self) -> int:
        return self._cycle

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _scan(self) -> List[Position]:
        return [p async for p in self._reader.list_candidates(CandidateFilter(self._strategy.kind))]

    async def _prepare_one(self, position: Position, semaphore: asyncio.Semaphore) -> Prepared:
        async with semaphore:
            try:
                return await self._retry.run(f"prepare {position.key}", self._strategy.prepare, position)
            except FlashKeeperError as e:
                if is_transient(e):
                    return Outcome.transient(position.key, e)
                logger.warning(f"{position.key}: {e.message}")
                return Outcome.skipped(position.key, e.message)

    async def _settle(self, position: Position, prepared: Prepared) -> Outcome:
        """Execute ``prepared``; every retry fetches a fresh quote and payload."""
        if isinstance(prepared, Outcome):
            return prepared

        pending: List[ExecutionPlan] = [prepared]

        async def attempt() -> Outcome:
            plan = pending.pop() if pending else None
            if plan is None or plan.quote.is_expired():
                fresh = await self._strategy.prepare(position)
                if isinstance(fresh, Outcome):
                    return fresh
                plan = fresh
            return await self._orchestrator.execute(plan)

        try:
            return await self._retry.run(f"settle {position.key}", attempt)
        except FlashKeeperError as e:
            if is_transient(e):
                return Outcome.transient(position.key, e)
            return Outcome.skipped(position.key, e.message)

    async def _finish(self, position: Optional[Position], outcome: Outcome) -> None:
        context = {"network": self._config.network.name, "cycle": self._cycle}
        await safe_call(
            self._notifier.notify_outcome, outcome, context, component_name="notifications", fallback=False
        )
        if position is None:
            return
        if outcome.status in _IGNORED_AFTER:
            self._selector.ignore(position)
        if self._state_log is not None:
            self._state_log.save(position, outcome)

    async def _drain_inflight(self) -> List[Outcome]:
        """Finish submissions left running by a cancelled cycle."""
        outcomes: List[Outcome] = []
        for position, outcome in await self._orchestrator.drain_inflight():
            await self._finish(position, outcome)
            outcomes.append(outcome)
        return outcomes

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------
    async def run_cycle(self) -> CycleReport:
        self._cycle += 1
        started = time.time()
        outcomes: List[Outcome] = []

        outcomes.extend(await self._drain_inflight())
        for outcome in await self._orchestrator.reconcile_pending():
            await self._finish(None, outcome)
            outcomes.append(outcome)

        try:
            positions = await self._retry.run("scan", self._scan)
        except FlashKeeperError as e:
            if not is_transient(e):
                raise
            logger.error(f"Cycle {self._cycle}: scan failed: {e}")
            outcome = Outcome.transient(f"{self.kind.value}:scan", e)
            await self._finish(None, outcome)
            outcomes.append(outcome)
            return CycleReport(self._cycle, outcomes, started_at=started, finished_at=time.time())

        selected = self._selector.select(positions)
        semaphore = asyncio.Semaphore(self._settings.evaluation_concurrency)
        prepared = await asyncio.gather(*(self._prepare_one(p, semaphore) for p in selected))

        for position, first in zip(selected, prepared):
            outcome = await self._settle(position, first)
            await self._finish(position, outcome)
            outcomes.append(outcome)

        report = CycleReport(
            self._cycle,
            outcomes,
            scanned=len(positions),
            selected=len(selected),
            started_at=started,
            finished_at=time.time(),
        )
        logger.info(
            f"Cycle {self._cycle} ({self.kind.value}): scanned {report.scanned}, "
            f"selected {report.selected}, outcomes {report.summary()}"
        )
        return report

    async def run_forever(self, stop_event: asyncio.Event, max_cycles: Optional[int] = None) -> List[CycleReport]:
        """Run cycles every ``poll_interval_seconds`` until ``stop_event`` is set.

        A cycle that exceeds ``cycle_timeout_seconds`` is cancelled between
        candidates; a submission already in flight still runs to its end and
        its outcome is notified once it settles.
        """
        reports: List[CycleReport] = []
        while not stop_event.is_set():
            try:
                report = await asyncio.wait_for(self.run_cycle(), timeout=self._settings.cycle_timeout_seconds)
                reports.append(report)
            except asyncio.TimeoutError:
                logger.error(f"Cycle {self._cycle} exceeded {self._settings.cycle_timeout_seconds}s and was cancelled")
                await self._drain_inflight()
            if max_cycles is not None and len(reports) >= max_cycles:
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._settings.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        return reports

    def add_closer(self, closer) -> None:
        self._closers.append(closer)

    async def close(self) -> None:
        """Wait for in-flight submissions, then release every resource."""
        await safe_call(self._drain_inflight, component_name="shutdown", fallback=[])
        for closer in reversed(self._closers):
            await safe_call(closer, component_name="shutdown")
        self._closers.clear()


def load_signer(config: AppConfig) -> LocalAccount:
    """The account that signs settlement transactions.

    Raises:
        SignerError: if no usable key is configured or it does not match ``wallet_address``.
    """
    key = config.settings.wallet_key
    if key is None or not key.get_secret_value():
        raise SignerError("WALLET_KEY is not set")
    try:
        normalized = ConfigValidator.validate_private_key(key.get_secret_value())
        account = Account.from_key(normalized)
    except (ValidationError, ValueError) as e:
        raise SignerError("WALLET_KEY is not a valid private key") from e

    expected = config.settings.wallet_address
    if expected and expected.lower() != account.address.lower():
        raise SignerError(
            "WALLET_KEY does not belong to WALLET_ADDRESS",
            details={"wallet_address": expected},
        )
    return account


async def create_pipeline(
    config: AppConfig,
    kind: PositionKind,
    dry_run: Optional[bool] = None,
) -> SettlementPipeline:
    """Wire every component of one bot from ``config``."""
    settings = config.settings
    ConfigValidator.validate_for_mode(settings, config.network, kind.value)
    account = load_signer(config)

    web3 = await Web3ConnectionFactory.create_connection(config)
    abis = ABIRegistry()
    reader = ChainStateReader(web3, config, abis)
    quoter = AggregatorQuoteClient(settings.aggregator, chain_id=config.chain_id, user_address=account.address)
    engine = ProfitabilityEngine(settings.liquidation, settings.compounding)
    strategy_cls = CompoundingStrategy if kind is PositionKind.COMPOUNDING else LiquidationStrategy
    strategy = strategy_cls(config, reader, quoter, engine)

    store = SubmissionStore.from_settings(settings)
    try:
        await store.initialize_db()
    except Exception as e:
        await Web3ConnectionFactory.close_all_connections()
        await quoter.close()
        raise InitializationError(
            f"Submission log unavailable: {e}", component="submission_store", cause=e
        ) from e
    orchestrator = ExecutionOrchestrator(
        web3, account, config, store, abi_registry=abis, chain_reader=reader, dry_run=dry_run
    )
    notifier = NotificationService.from_config(config)
    retry = RetryScheduler(RetryPolicy.from_settings(settings.retry))

    pipeline = SettlementPipeline(
        config,
        reader,
        CandidateSelector.from_config(config),
        strategy,
        orchestrator,
        notifier,
        retry,
        state_log=CandidateStateLog(config.state_dir),
    )
    pipeline.add_closer(Web3ConnectionFactory.close_all_connections)
    pipeline.add_closer(store.close)
    pipeline.add_closer(notifier.close)
    pipeline.add_closer(quoter.close)
    logger.info(
        f"{kind.value} pipeline ready on {config.network.name} (chain {config.chain_id}) "
        f"signer {account.address}{' [dry run]' if orchestrator.dry_run else ''}"
    )
    return pipeline
