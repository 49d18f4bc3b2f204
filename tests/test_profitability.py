"""Profitability decisions for both bots, including worked examples. """

import random
from decimal import Decimal

import pytest

from conftest import (
    E18,
    build_config,
    make_liquidation_params,
    make_position,
    make_quote,
)
from flashkeeper.core.models import ExecutionPlan, Outcome, OutcomeStatus, PositionKind
from flashkeeper.core.profitability import (
    BELOW_PROFIT_FLOOR,
    DEPOSIT_DISABLED,
    INSUFFICIENT_COLLATERAL,
    INSUFFICIENT_OUTPUT,
    NO_DEBT,
    ZERO_THRESHOLD,
    ProfitabilityEngine,
    required_amount_for_swap,
)
from flashkeeper.utils.custom_exceptions import PlanRejected


def _engine(**overrides):
    settings = build_config(**overrides).settings
    return ProfitabilityEngine(settings.liquidation, settings.compounding)


class TestCompounding:
    """Compounding evaluation. """

    def test_three_x_vault_net_is_exact(self):
        """Threshold 1e18, previewMint 300e18, K=200e18, R=105e18, 9 bps fee. """
        engine = _engine()
        position = make_position(metric=105 * E18, threshold=E18)
        quote = make_quote(input_amount=300 * E18, output_amount=300 * E18)

        plan = engine.evaluate_compounding(
            position,
            quote,
            required_collateral=300 * E18,
            secondary_out=200 * E18,
            reward_out=105 * E18,
            max_deposit=10**30,
        )

        assert isinstance(plan, ExecutionPlan)
        assert plan.flash_fee == 300 * E18 * 9 // 10_000
        assert plan.expected_net == 200 * E18 + 105 * E18 - 300 * E18 - 300 * E18 * 9 // 10_000
        assert plan.expected_net == 473 * 10**16
        assert plan.settlement_args == (position.vault, E18)

    @pytest.mark.parametrize("accrued", [E18, 3 * E18, 10**6 * E18])
    def test_shares_always_equal_threshold(self, accrued):
        """However far accrual runs past the threshold, exactly one threshold is minted. """
        engine = _engine()
        position = make_position(metric=accrued, threshold=E18)
        plan = engine.evaluate_compounding(
            position,
            make_quote(),
            required_collateral=300 * E18,
            secondary_out=200 * E18,
            reward_out=105 * E18,
            max_deposit=10**30,
        )
        assert isinstance(plan, ExecutionPlan)
        assert engine.shares_to_mint(position) == E18
        assert plan.settlement_args[1] == E18

    def test_lender_fee_overrides_configured_bps(self):
        engine = _engine()
        plan = engine.evaluate_compounding(
            make_position(),
            make_quote(),
            required_collateral=300 * E18,
            secondary_out=200 * E18,
            reward_out=105 * E18,
            max_deposit=1,
            flash_fee=0,
        )
        assert plan.flash_fee == 0
        assert plan.expected_net == 5 * E18

    def test_treasury_fee_reduces_rewards(self):
        engine = _engine(compounding={"vaults": [], "treasury_fee_bps": 1_000, "min_profit_amount": 1})
        result = engine.evaluate_compounding(
            make_position(),
            make_quote(),
            required_collateral=300 * E18,
            secondary_out=200 * E18,
            reward_out=105 * E18,
            max_deposit=1,
            flash_fee=0,
        )
        # 105 - 10.5 treasury cut leaves the cycle 5.5 short.
        assert isinstance(result, Outcome)
        assert result.reason == BELOW_PROFIT_FLOOR

    def test_zero_threshold_is_skipped(self):
        result = _engine().evaluate_compounding(
            make_position(threshold=0),
            make_quote(),
            required_collateral=300 * E18,
            secondary_out=200 * E18,
            reward_out=105 * E18,
            max_deposit=1,
        )
        assert result.status is OutcomeStatus.SKIPPED
        assert result.reason == ZERO_THRESHOLD

    def test_paused_deposits_are_skipped(self):
        result = _engine().evaluate_compounding(
            make_position(),
            make_quote(),
            required_collateral=300 * E18,
            secondary_out=200 * E18,
            reward_out=105 * E18,
            max_deposit=0,
        )
        assert result.reason == DEPOSIT_DISABLED

    def test_short_quote_is_insufficient_output(self):
        result = _engine().evaluate_compounding(
            make_position(),
            make_quote(output_amount=299 * E18),
            required_collateral=300 * E18,
            secondary_out=200 * E18,
            reward_out=105 * E18,
            max_deposit=1,
        )
        assert result.reason == INSUFFICIENT_OUTPUT

    def test_loss_is_below_profit_floor(self):
        result = _engine().evaluate_compounding(
            make_position(),
            make_quote(),
            required_collateral=300 * E18,
            secondary_out=190 * E18,
            reward_out=105 * E18,
            max_deposit=1,
        )
        assert result.reason == BELOW_PROFIT_FLOOR
        assert result.details["expected_net"] < 0

    def test_never_returns_plan_with_non_positive_net(self):
        """Randomised inputs: a plan, when returned, always nets above its floor. """
        engine = _engine()
        rng = random.Random(1234)
        for _ in range(300):
            x = rng.randint(1, 500) * E18
            quote = make_quote(input_amount=x, output_amount=x, max_input_amount=x + rng.randint(0, 5) * E18)
            result = engine.evaluate_compounding(
                make_position(),
                quote,
                required_collateral=x,
                secondary_out=rng.randint(0, 400) * E18,
                reward_out=rng.randint(0, 200) * E18,
                max_deposit=rng.choice([0, 10**30]),
            )
            if isinstance(result, ExecutionPlan):
                assert result.expected_net > 0
                assert result.min_acceptable_net > 0
                assert result.expected_net >= result.min_acceptable_net
            else:
                assert result.status is OutcomeStatus.SKIPPED


class TestLiquidation:
    """Liquidation evaluation. """

    def _position(self):
        return make_position(kind=PositionKind.LIQUIDATION, subject="0x9999999999999999999999999999999999999999")

    def test_profitable_liquidation_builds_plan(self):
        engine = _engine()
        params = make_liquidation_params()
        quote = make_quote(input_amount=1_000 * E18, output_amount=1_001 * E18, max_input_amount=1_010 * E18)

        plan = engine.evaluate_liquidation(self._position(), quote, params)

        assert isinstance(plan, ExecutionPlan)
        assert plan.flash_amount == 1_000 * E18
        assert plan.flash_fee == 9 * 10**17
        assert plan.expected_net == 1_050 * E18 - 1_010 * E18
        # bonus 50 - slippage 9 - fee 0.9
        assert plan.profit_usd == Decimal("40.1")
        assert plan.settlement_args[3] == 1_000 * E18

    def test_quote_below_min_out(self):
        """Health factor 0.05 under a 0.1 threshold, but the swap cannot cover the debt. """
        engine = _engine()
        params = make_liquidation_params()
        quote = make_quote(input_amount=1_000 * E18, output_amount=1_000 * E18, max_input_amount=1_010 * E18)

        result = engine.evaluate_liquidation(self._position(), quote, params)

        assert result.status is OutcomeStatus.SKIPPED
        assert result.reason == "insufficient output"

    def test_required_swap_output_covers_fee(self):
        engine = _engine()
        params = make_liquidation_params()
        assert engine.required_swap_output(params) == 1_000 * E18 + 9 * 10**17
        assert engine.required_swap_output(params, flash_fee=5) == 1_000 * E18 + 5

    def test_no_debt(self):
        result = _engine().evaluate_liquidation(self._position(), make_quote(), make_liquidation_params(debt_to_repay=0))
        assert result.reason == NO_DEBT

    def test_swap_needing_more_than_seized_collateral(self):
        quote = make_quote(input_amount=1_000 * E18, output_amount=1_001 * E18, max_input_amount=1_060 * E18)
        result = _engine().evaluate_liquidation(self._position(), quote, make_liquidation_params())
        assert result.reason == INSUFFICIENT_COLLATERAL

    def test_usd_floor(self):
        engine = _engine(
            liquidation={"borrowers": [], "health_factor_threshold": Decimal("1"), "profitable_threshold_usd": Decimal("100")}
        )
        quote = make_quote(input_amount=1_000 * E18, output_amount=1_001 * E18, max_input_amount=1_010 * E18)
        result = engine.evaluate_liquidation(self._position(), quote, make_liquidation_params())
        assert result.reason == BELOW_PROFIT_FLOOR

    def test_dispatch_by_kind(self):
        engine = _engine()
        quote = make_quote(input_amount=1_000 * E18, output_amount=1_001 * E18, max_input_amount=1_010 * E18)
        plan = engine.evaluate(self._position(), quote, params=make_liquidation_params())
        assert isinstance(plan, ExecutionPlan)


class TestPlanInvariants:
    """ExecutionPlan refuses to exist when it could lose money. """

    def _kwargs(self, **overrides):
        quote = make_quote()
        kwargs = dict(
            position=make_position(),
            quote=quote,
            flash_amount=quote.max_input_amount,
            flash_fee=0,
            expected_output=quote.output_amount,
            max_input_amount=quote.max_input_amount,
            min_acceptable_net=1,
            expected_net=1,
        )
        kwargs.update(overrides)
        return kwargs

    def test_non_positive_minimum_rejected(self):
        with pytest.raises(PlanRejected) as exc_info:
            ExecutionPlan(**self._kwargs(min_acceptable_net=0, expected_net=5))
        assert exc_info.value.reason == "non-positive minimum net"

    def test_net_below_minimum_rejected(self):
        with pytest.raises(PlanRejected) as exc_info:
            ExecutionPlan(**self._kwargs(min_acceptable_net=10, expected_net=9))
        assert exc_info.value.reason == "below profit floor"

    def test_input_bound_below_quote_rejected(self):
        with pytest.raises(PlanRejected):
            ExecutionPlan(**self._kwargs(max_input_amount=1))

    def test_slippage_buffer_helper(self):
        assert required_amount_for_swap(10_000, 50) == 10_050
        assert required_amount_for_swap(1, 0) == 1
