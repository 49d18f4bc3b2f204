"""Settlement pipeline wiring, ordering and notification behaviour. """

import asyncio
import dataclasses
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from conftest import TEST_ADDRESS, build_config, make_compounding_plan, make_position
from flashkeeper.core.candidate_selector import CandidateSelector, ShortTermIgnoreMemory
from flashkeeper.core.models import Outcome, OutcomeStatus, PositionKind
from flashkeeper.core import pipeline as pipeline_module
from flashkeeper.core.pipeline import SettlementPipeline, create_pipeline, load_signer
from flashkeeper.persistence.state_files import CandidateStateLog
from flashkeeper.persistence.submission_store import SubmissionStore
from flashkeeper.utils.custom_exceptions import ChainReadError, ConfigurationError, InitializationError, SignerError
from flashkeeper.utils.retry import RetryPolicy, RetryScheduler

VAULTS = [f"0x{i:040x}" for i in (0xA1, 0xA2, 0xA3)]


async def _no_sleep(_delay):
    return None


class StubReader:
    def __init__(self, positions=(), error=None):
        self.positions = list(positions)
        self.error = error
        self.scans = 0

    async def list_candidates(self, candidate_filter):
        self.scans += 1
        if self.error is not None:
            raise self.error
        for position in self.positions:
            yield position


def _plan_for(position, payload):
    return dataclasses.replace(
        make_compounding_plan(payload=payload), position=position
    )


class StubStrategy:
    """Prepares a plan per position; later positions finish preparing first. """

    kind = PositionKind.COMPOUNDING

    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []

    async def prepare(self, position):
        self.calls.append(position.key)
        # Reverse completion order to prove settlement order comes from the selector.
        await asyncio.sleep(0.001 * (len(VAULTS) - VAULTS.index(position.vault)))
        result = self.results.get(position.key)
        if callable(result):
            return result(position, self.calls.count(position.key))
        if result is not None:
            return result
        return _plan_for(position, bytes([VAULTS.index(position.vault) + 1, self.calls.count(position.key)]))


class StubOrchestrator:
    def __init__(self, outcomes=None, reconciled=(), drained=()):
        self.outcomes = outcomes or {}
        self.executed = []
        self.reconcile_pending = AsyncMock(return_value=list(reconciled))
        self.drained = list(drained)
        self.drains = 0
        self.dry_run = False

    async def execute(self, plan):
        self.executed.append(plan)
        scripted = self.outcomes.get(plan.key)
        if isinstance(scripted, list):
            return scripted.pop(0)
        if scripted is not None:
            return scripted
        return Outcome.confirmed(plan.key, "0x" + plan.quote.payload.hex(), plan.expected_net)

    async def drain_inflight(self):
        self.drains += 1
        drained, self.drained = self.drained, []
        return drained


def _pipeline(reader, strategy, orchestrator, tmp_path, state_log=True, **overrides):
    config = build_config(state_dir=str(tmp_path / "state"), **overrides)
    selector = CandidateSelector(Decimal("1"), ignore_memory=ShortTermIgnoreMemory(180))
    notifier = SimpleNamespace(notify_outcome=AsyncMock(return_value=True))
    retry = RetryScheduler(RetryPolicy(max_attempts=3, jitter=False), sleep=_no_sleep)
    pipeline = SettlementPipeline(
        config,
        reader,
        selector,
        strategy,
        orchestrator,
        notifier,
        retry,
        state_log=CandidateStateLog(config.state_dir) if state_log else None,
    )
    return pipeline, notifier, selector


def _positions():
    return [make_position(metric=105 * 10**18, subject=vault) for vault in VAULTS]


class TestRunCycle:
    """Test SettlementPipeline.run_cycle """

    @pytest.mark.asyncio
    async def test_settles_in_selector_order_and_notifies_once_each(self, tmp_path):
        orchestrator = StubOrchestrator()
        pipeline, notifier, _ = _pipeline(StubReader(_positions()), StubStrategy(), orchestrator, tmp_path)

        report = await pipeline.run_cycle()

        expected_keys = [p.key for p in _positions()]
        assert [plan.key for plan in orchestrator.executed] == expected_keys
        assert [o.candidate_key for o in report.outcomes] == expected_keys
        assert report.count(OutcomeStatus.CONFIRMED) == 3
        assert report.scanned == 3 and report.selected == 3
        assert report.clean
        assert notifier.notify_outcome.await_count == 3
        assert pipeline.cycles_run == 1

    @pytest.mark.asyncio
    async def test_ineligible_positions_are_not_prepared(self, tmp_path):
        positions = _positions()
        positions[1] = make_position(metric=10, subject=VAULTS[1])
        strategy = StubStrategy()
        pipeline, _, _ = _pipeline(StubReader(positions), strategy, StubOrchestrator(), tmp_path)

        report = await pipeline.run_cycle()

        assert positions[1].key not in strategy.calls
        assert report.selected == 2

    @pytest.mark.asyncio
    async def test_skipped_candidate_is_ignored_next_cycle(self, tmp_path):
        positions = _positions()
        skipped_key = positions[0].key
        strategy = StubStrategy({skipped_key: Outcome.skipped(skipped_key, "below profit floor")})
        orchestrator = StubOrchestrator()
        pipeline, notifier, _ = _pipeline(StubReader(positions), strategy, orchestrator, tmp_path)

        first = await pipeline.run_cycle()
        second = await pipeline.run_cycle()

        assert first.outcomes[0].status is OutcomeStatus.SKIPPED
        assert skipped_key not in [o.candidate_key for o in second.outcomes]
        assert strategy.calls.count(skipped_key) == 1
        assert notifier.notify_outcome.await_count == 5

    @pytest.mark.asyncio
    async def test_reverted_candidate_is_ignored(self, tmp_path):
        positions = _positions()[:1]
        key = positions[0].key
        orchestrator = StubOrchestrator({key: Outcome.reverted(key, "venue revert", "0x01")})
        pipeline, _, selector = _pipeline(StubReader(positions), StubStrategy(), orchestrator, tmp_path)

        await pipeline.run_cycle()

        assert selector.ignore_memory.is_ignored(key)
        assert len(orchestrator.executed) == 1

    @pytest.mark.asyncio
    async def test_transient_submission_retries_with_fresh_plan(self, tmp_path):
        positions = _positions()[:1]
        key = positions[0].key
        orchestrator = StubOrchestrator(
            {key: [Outcome.transient(key, "connection reset"), Outcome.confirmed(key, "0x02", 1)]}
        )
        strategy = StubStrategy()
        pipeline, notifier, _ = _pipeline(StubReader(positions), strategy, orchestrator, tmp_path)

        report = await pipeline.run_cycle()

        assert report.outcomes[0].status is OutcomeStatus.CONFIRMED
        assert strategy.calls.count(key) == 2
        first, second = orchestrator.executed
        assert first.quote.payload != second.quote.payload
        assert notifier.notify_outcome.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_failure_after_retries(self, tmp_path):
        positions = _positions()[:1]
        key = positions[0].key
        orchestrator = StubOrchestrator({key: Outcome.transient(key, "rpc down")})
        pipeline, _, selector = _pipeline(StubReader(positions), StubStrategy(), orchestrator, tmp_path)

        report = await pipeline.run_cycle()

        assert report.outcomes[0].status is OutcomeStatus.TRANSIENT_FAILURE
        assert len(orchestrator.executed) == 3
        assert not report.clean
        assert not selector.ignore_memory.is_ignored(key)

    @pytest.mark.asyncio
    async def test_prepare_error_becomes_outcome(self, tmp_path):
        positions = _positions()[:1]
        key = positions[0].key

        def fail(position, attempt):
            raise ChainReadError(call="previewMint")

        pipeline, _, _ = _pipeline(StubReader(positions), StubStrategy({key: fail}), StubOrchestrator(), tmp_path)

        report = await pipeline.run_cycle()

        assert report.outcomes[0].status is OutcomeStatus.TRANSIENT_FAILURE
        assert "ChainReadError" in report.outcomes[0].reason

    @pytest.mark.asyncio
    async def test_scan_failure_reports_and_returns(self, tmp_path):
        reader = StubReader(error=ChainReadError(call="getUserAccountData"))
        strategy = StubStrategy()
        pipeline, notifier, _ = _pipeline(reader, strategy, StubOrchestrator(), tmp_path)

        report = await pipeline.run_cycle()

        assert reader.scans == 3
        assert [o.candidate_key for o in report.outcomes] == ["compounding:scan"]
        assert report.outcomes[0].status is OutcomeStatus.TRANSIENT_FAILURE
        assert strategy.calls == []
        notifier.notify_outcome.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reconciled_outcomes_are_reported(self, tmp_path):
        reconciled = Outcome.confirmed("compounding:0xold", "0x03", 9)
        orchestrator = StubOrchestrator(reconciled=[reconciled])
        pipeline, notifier, _ = _pipeline(StubReader([]), StubStrategy(), orchestrator, tmp_path)

        report = await pipeline.run_cycle()

        assert report.outcomes == [reconciled]
        notifier.notify_outcome.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_background_submission_reported_next_cycle(self, tmp_path):
        position = _positions()[0]
        finished = Outcome.reverted(position.key, "venue revert", "0x04")
        orchestrator = StubOrchestrator(drained=[(position, finished)])
        pipeline, notifier, selector = _pipeline(StubReader([]), StubStrategy(), orchestrator, tmp_path)

        report = await pipeline.run_cycle()

        assert report.outcomes == [finished]
        notifier.notify_outcome.assert_awaited_once()
        assert notifier.notify_outcome.await_args.args[0] is finished
        assert selector.ignore_memory.is_ignored(position.key)
        assert CandidateStateLog(pipeline._config.state_dir).load(position)["status"] == "reverted"

    @pytest.mark.asyncio
    async def test_state_files_written(self, tmp_path):
        positions = _positions()[:1]
        pipeline, _, _ = _pipeline(StubReader(positions), StubStrategy(), StubOrchestrator(), tmp_path)

        await pipeline.run_cycle()

        state_log = CandidateStateLog(pipeline._config.state_dir)
        assert state_log.load(positions[0])["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_stop_cycle(self, tmp_path):
        pipeline, notifier, _ = _pipeline(StubReader(_positions()), StubStrategy(), StubOrchestrator(), tmp_path)
        notifier.notify_outcome = AsyncMock(side_effect=RuntimeError("slack down"))

        report = await pipeline.run_cycle()

        assert report.count(OutcomeStatus.CONFIRMED) == 3


class TestRunForever:
    """Test SettlementPipeline.run_forever and close """

    @pytest.mark.asyncio
    async def test_stops_after_max_cycles(self, tmp_path):
        pipeline, _, _ = _pipeline(
            StubReader([]), StubStrategy(), StubOrchestrator(), tmp_path, poll_interval_seconds=0.01
        )
        reports = await pipeline.run_forever(asyncio.Event(), max_cycles=2)
        assert [r.cycle for r in reports] == [1, 2]

    @pytest.mark.asyncio
    async def test_stop_event(self, tmp_path):
        pipeline, _, _ = _pipeline(StubReader([]), StubStrategy(), StubOrchestrator(), tmp_path)
        stop = asyncio.Event()
        stop.set()
        assert await pipeline.run_forever(stop) == []

    @pytest.mark.asyncio
    async def test_timed_out_cycle_reports_submission_once_it_lands(self, tmp_path):
        position = _positions()[0]
        finished = Outcome.confirmed(position.key, "0x05", 7)

        class HangingOrchestrator(StubOrchestrator):
            async def execute(self, plan):
                self.executed.append(plan)
                self.drained.append((plan.position, finished))
                await asyncio.sleep(10)

        orchestrator = HangingOrchestrator()
        pipeline, notifier, _ = _pipeline(
            StubReader([position]),
            StubStrategy(),
            orchestrator,
            tmp_path,
            cycle_timeout_seconds=0.05,
            poll_interval_seconds=0.01,
        )
        stop = asyncio.Event()
        notifier.notify_outcome = AsyncMock(side_effect=lambda *args: stop.set() or True)

        reports = await pipeline.run_forever(stop)

        assert reports == []
        assert len(orchestrator.executed) == 1
        notifier.notify_outcome.assert_awaited_once()
        assert notifier.notify_outcome.await_args.args[0] is finished

    @pytest.mark.asyncio
    async def test_close_reports_inflight_before_closers(self, tmp_path):
        position = _positions()[0]
        finished = Outcome.confirmed(position.key, "0x06", 7)
        orchestrator = StubOrchestrator(drained=[(position, finished)])
        pipeline, notifier, _ = _pipeline(StubReader([]), StubStrategy(), orchestrator, tmp_path)
        order = []
        notifier.notify_outcome = AsyncMock(side_effect=lambda *args: order.append("notified") or True)
        pipeline.add_closer(AsyncMock(side_effect=lambda: order.append("closed")))

        await pipeline.close()

        assert order == ["notified", "closed"]
        assert orchestrator.drains == 1

    @pytest.mark.asyncio
    async def test_close_runs_closers_in_reverse(self, tmp_path):
        pipeline, _, _ = _pipeline(StubReader([]), StubStrategy(), StubOrchestrator(), tmp_path)
        order = []
        first = AsyncMock(side_effect=lambda: order.append("first"))
        second = AsyncMock(side_effect=RuntimeError("already closed"))
        pipeline.add_closer(first)
        pipeline.add_closer(second)

        await pipeline.close()

        assert order == ["first"]
        second.assert_awaited_once()


class TestLoadSigner:
    """Test load_signer """

    def test_valid_key(self):
        assert load_signer(build_config()).address == TEST_ADDRESS

    def test_missing_key(self):
        with pytest.raises(SignerError, match="not set"):
            load_signer(build_config(wallet_key=None))

    def test_malformed_key(self):
        with pytest.raises(SignerError, match="not a valid"):
            load_signer(build_config(wallet_key="0x1234"))

    def test_address_mismatch(self):
        with pytest.raises(SignerError, match="does not belong"):
            load_signer(build_config(wallet_address="0x" + "1" * 40))

    def test_matching_address_any_case(self):
        assert load_signer(build_config(wallet_address=TEST_ADDRESS.lower())).address == TEST_ADDRESS


class TestCreatePipeline:
    """Test create_pipeline wiring """

    @pytest.fixture
    def factory(self, monkeypatch):
        factory = SimpleNamespace(
            create_connection=AsyncMock(return_value=SimpleNamespace(eth=SimpleNamespace())),
            close_all_connections=AsyncMock(),
        )
        monkeypatch.setattr(pipeline_module, "Web3ConnectionFactory", factory)
        return factory

    @pytest.mark.asyncio
    async def test_builds_and_closes(self, factory, tmp_path):
        config = build_config(state_dir=str(tmp_path / "state"))

        pipeline = await create_pipeline(config, PositionKind.COMPOUNDING, dry_run=True)

        assert pipeline._orchestrator.dry_run is True
        factory.create_connection.assert_awaited_once_with(config)
        await pipeline.close()
        factory.close_all_connections.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_store_failure_is_initialization_error(self, factory, monkeypatch, tmp_path):
        monkeypatch.setattr(SubmissionStore, "initialize_db", AsyncMock(side_effect=OSError("disk full")))

        with pytest.raises(InitializationError, match="Submission log unavailable"):
            await create_pipeline(build_config(state_dir=str(tmp_path / "state")), PositionKind.COMPOUNDING)
        factory.close_all_connections.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_config_never_connects(self, factory):
        with pytest.raises(ConfigurationError):
            await create_pipeline(build_config(compounding={"vaults": []}), PositionKind.COMPOUNDING)
        factory.create_connection.assert_not_awaited()
