"""CLI commands, invoked through Typer's test runner. """

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from typer.testing import CliRunner

from conftest import COMPOUNDER, DUSD, LENDER, LIQUIDATOR, ORACLE, POOL, TEST_KEY, VAULT
from flashkeeper import __version__
from flashkeeper.__main__ import app
from flashkeeper.cli import run_cmd
from flashkeeper.core.models import CycleReport, Outcome, PositionKind
from flashkeeper.utils.custom_exceptions import SignerError
from flashkeeper.utils.logging_config import setup_logging

runner = CliRunner()


@pytest.fixture(autouse=True)
def _rebind_logging():
    """The run commands point the log handler at the runner's stream; point it back. """
    yield
    setup_logging(force_setup=True)


@pytest.fixture
def bot_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WALLET_KEY", TEST_KEY)
    monkeypatch.setenv("NETWORK", "localhost")
    monkeypatch.setenv("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("COMPOUNDING__VAULTS", json.dumps([VAULT]))
    monkeypatch.setenv(
        "ADDRESSES",
        json.dumps(
            {
                "pool": POOL,
                "price_oracle": ORACLE,
                "liquidator_executor": LIQUIDATOR,
                "compounder_executor": COMPOUNDER,
                "flash_lender": LENDER,
                "settlement_asset": DUSD,
            }
        ),
    )
    return tmp_path


class FakePipeline:
    def __init__(self, reports):
        self.reports = reports
        self.run_cycle = AsyncMock(side_effect=lambda: reports[0])
        self.run_forever = AsyncMock(return_value=reports)
        self.close = AsyncMock()


def _patch_pipeline(monkeypatch, pipeline=None, error=None):
    calls = []

    async def fake_create_pipeline(config, kind, dry_run=None):
        calls.append(SimpleNamespace(config=config, kind=kind, dry_run=dry_run))
        if error is not None:
            raise error
        return pipeline

    monkeypatch.setattr(run_cmd, "create_pipeline", fake_create_pipeline)
    return calls


class TestTopLevel:
    """Test the root command. """

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert f"flashkeeper Version: {__version__}" in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "run" in result.output
        assert "config" in result.output


class TestConfigCommands:
    """Test config show / validate """

    def test_show_redacts_wallet_key(self, bot_env):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0, result.output
        assert TEST_KEY[2:20] not in result.output
        assert "REDACTED" in result.output

    def test_show_keys(self, bot_env):
        result = runner.invoke(app, ["config", "show", "--show-keys"])
        assert result.exit_code == 0
        assert TEST_KEY[:18] in result.output

    def test_validate_compounding(self, bot_env):
        result = runner.invoke(app, ["config", "validate", "--mode", "compounding"])
        assert result.exit_code == 0, result.output
        assert "Configuration is valid" in result.output

    def test_validate_fails_without_vaults(self, bot_env, monkeypatch):
        monkeypatch.setenv("COMPOUNDING__VAULTS", "[]")
        result = runner.invoke(app, ["config", "validate", "--mode", "compounding"])
        assert result.exit_code == 1
        assert "ConfigurationError" in result.output

    def test_unknown_network(self, bot_env):
        result = runner.invoke(app, ["config", "show", "--network", "atlantis"])
        assert result.exit_code == 1
        assert "Unknown network" in result.output


class TestRunCommands:
    """Test run liquidate / compound """

    def test_compound_once_dry_run(self, bot_env, monkeypatch):
        report = CycleReport(1, [Outcome.skipped("compounding:0xv", "dry run")], scanned=1, selected=1)
        pipeline = FakePipeline([report])
        calls = _patch_pipeline(monkeypatch, pipeline)

        result = runner.invoke(app, ["run", "compound", "--once", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert calls[0].kind is PositionKind.COMPOUNDING
        assert calls[0].dry_run is True
        pipeline.run_cycle.assert_awaited_once()
        pipeline.run_forever.assert_not_awaited()
        pipeline.close.assert_awaited_once()
        assert "Cycle complete" in result.output

    def test_liquidate_unclean_cycle_warns(self, bot_env, monkeypatch):
        report = CycleReport(1, [Outcome.timed_out("liquidation:0xb", "0x01")])
        _patch_pipeline(monkeypatch, FakePipeline([report]))

        result = runner.invoke(app, ["run", "liquidate", "--once"])

        assert result.exit_code == 0
        assert "unresolved outcomes" in result.output

    def test_signer_error_exits_non_zero(self, bot_env, monkeypatch):
        _patch_pipeline(monkeypatch, error=SignerError("WALLET_KEY is not set"))

        result = runner.invoke(app, ["run", "liquidate", "--once"])

        assert result.exit_code == 1
        assert "SignerError" in result.output
        assert TEST_KEY[2:20] not in result.output

    def test_no_cycle_completed(self, bot_env, monkeypatch):
        _patch_pipeline(monkeypatch, FakePipeline([]))
        result = runner.invoke(app, ["run", "compound"])
        assert result.exit_code == 1
        assert "No cycle completed" in result.output

    def test_missing_env_file(self, bot_env):
        result = runner.invoke(app, ["run", "compound", "--env-file", "nope.env"])
        assert result.exit_code == 1
        assert "Env file not found" in result.output
