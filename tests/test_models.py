"""Value types shared by the pipeline stages. """

from decimal import Decimal

import pytest

from conftest import E18, make_compounding_plan, make_position, make_quote
from flashkeeper.core.models import AmountSpec, CycleReport, Outcome, OutcomeStatus, PositionKind, SwapKind
from flashkeeper.utils.custom_exceptions import PlanRejected


class TestPosition:
    """Test Position """

    def test_key_uses_vault_for_compounding(self):
        position = make_position(subject="0xABC")
        assert position.key == "compounding:0xabc"

    def test_key_uses_owner_for_liquidation(self):
        assert make_position(kind=PositionKind.LIQUIDATION, subject="0xDEF").key == "liquidation:0xdef"

    def test_with_metric(self):
        position = make_position(kind=PositionKind.LIQUIDATION)
        fresh = position.with_metric(Decimal("1.2"), 200)
        assert fresh.metric == Decimal("1.2")
        assert fresh.block_number == 200
        assert position.metric == Decimal("0.05")


class TestQuoteAndAmounts:
    """Test Quote and AmountSpec """

    def test_amount_spec_helpers(self):
        assert AmountSpec.exact_out(5) == AmountSpec(SwapKind.EXACT_OUTPUT, 5)
        with pytest.raises(ValueError):
            AmountSpec.exact_in(0)

    def test_expiry(self):
        quote = make_quote(expires_in=10)
        assert not quote.is_expired()
        assert quote.is_expired(quote.expires_at)

    def test_with_payload_returns_new_quote(self):
        quote = make_quote()
        filled = quote.with_payload(bytearray(b"\x01"))
        assert filled.payload == b"\x01"
        assert quote.payload == b""


class TestExecutionPlan:
    """Test ExecutionPlan construction guards """

    def test_valid_plan(self):
        assert make_compounding_plan().key == make_position().key

    def test_below_floor(self):
        with pytest.raises(PlanRejected, match="below profit floor"):
            make_compounding_plan(expected_net=10**14)

    def test_input_bound_below_quote(self):
        with pytest.raises(PlanRejected, match="input bound"):
            make_compounding_plan(input_amount=301 * E18, max_input_amount=300 * E18)


class TestOutcome:
    """Test Outcome and CycleReport """

    def test_submitted_is_not_terminal(self):
        assert not Outcome.submitted("k", "0x01").is_terminal
        assert Outcome.skipped("k", "dry run").is_terminal

    def test_only_transient_is_retryable(self):
        assert Outcome.transient("k", "rpc down").is_retryable
        assert not Outcome.timed_out("k", "0x01").is_retryable

    def test_transient_reason_from_exception(self):
        assert Outcome.transient("k", ValueError("boom")).reason == "ValueError: boom"

    def test_to_dict_stringifies_amounts(self):
        data = Outcome.confirmed("k", "0x01", 473 * 10**16, profit_usd=Decimal("4.7"), dry=True).to_dict()
        assert data == {
            "status": "confirmed",
            "candidate": "k",
            "tx_hash": "0x01",
            "net_result": "4730000000000000000",
            "profit_usd": "4.7",
            "dry": True,
        }

    def test_cycle_report_counters(self):
        report = CycleReport(
            1, [Outcome.confirmed("a", "0x1", 1), Outcome.skipped("b", "x"), Outcome.skipped("c", "y")]
        )
        assert report.summary() == {"confirmed": 1, "skipped": 2}
        assert report.clean
        assert not CycleReport(2, [Outcome.timed_out("a", "0x1")]).clean
