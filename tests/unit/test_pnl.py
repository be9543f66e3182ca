"""
Unit tests for PnL Calculator
Tests the fee pipeline, input validation and the unrealized view
"""

import math
from types import SimpleNamespace

import pytest

from copytrader.core.errors import PnLInputError
from copytrader.core.pnl import GENERIC_VENUE_FEE, PnLCalculator, venue_fee_fraction
from copytrader.core.venues import Venue


@pytest.fixture
def calculator():
    """Calculator without the flat network fee so round numbers stay round"""
    return PnLCalculator(network_fee=0.0)


# =============================================================================
# FEE PIPELINE
# =============================================================================

def test_round_trip_relay(calculator):
    result = calculator.calculate_realized_pnl(
        entry_price=0.000001,
        exit_price=0.000002,
        token_amount=100_000,
        quote_spent=0.1,
        venue=Venue.RELAY
    )

    assert result.breakdown.gross_value == pytest.approx(0.2)
    assert result.breakdown.sell_fee == pytest.approx(0.0035)
    assert result.net_received == pytest.approx(0.1965)
    assert result.pnl_amount == pytest.approx(0.0965)
    assert result.pnl_percent == pytest.approx(96.5)
    assert result.price_change_percent == pytest.approx(100.0)
    assert result.fee_drag_percent == pytest.approx(3.5)
    assert result.is_profitable
    assert result.has_discrepancy() is False


def test_slippage_then_flat_fees():
    calc = PnLCalculator(network_fee=0.000005)
    result = calc.calculate_realized_pnl(
        entry_price=0.000001,
        exit_price=0.000001,
        token_amount=100_000,
        quote_spent=0.1,
        venue="jupiter",
        slippage=0.05,
        priority_fee=0.0005
    )

    after_fee = 0.1 * (1 - 0.003)
    after_slip = after_fee * 0.95
    assert result.breakdown.venue == "jupiter"
    assert result.breakdown.value_after_slippage == pytest.approx(after_slip)
    assert result.net_received == pytest.approx(after_slip - 0.000005 - 0.0005)
    assert result.price_change_percent == 0
    assert result.has_discrepancy()
    assert result.breakdown.total_fees == pytest.approx(0.1 - result.net_received)


@pytest.mark.parametrize("venue", [Venue.RELAY, Venue.AGGREGATOR, "raydium"])
def test_higher_exit_price_raises_pnl(venue):
    calc = PnLCalculator()
    pnls = [
        calc.calculate_realized_pnl(0.000001, exit_price, 100_000, 0.1, venue=venue, slippage=0.02).pnl_percent
        for exit_price in (0.0000005, 0.000001, 0.0000015, 0.000003)
    ]
    assert pnls == sorted(pnls)
    assert len(set(pnls)) == len(pnls)


@pytest.mark.parametrize("field,values", [
    ("slippage", (0.0, 0.01, 0.05, 0.2)),
    ("network_fee", (0.0, 0.000005, 0.001, 0.01)),
    ("priority_fee", (0.0, 0.0005, 0.005)),
])
def test_higher_costs_lower_pnl(field, values):
    calc = PnLCalculator()
    pnls = [
        calc.calculate_realized_pnl(0.000001, 0.000002, 100_000, 0.1, **{field: value}).pnl_percent
        for value in values
    ]
    assert pnls == sorted(pnls, reverse=True)
    assert len(set(pnls)) == len(pnls)


@pytest.mark.parametrize("exit_price", [0.0000005, 0.000001, 0.000004])
def test_relay_nets_less_than_aggregator(calculator, exit_price):
    relay = calculator.calculate_realized_pnl(0.000001, exit_price, 100_000, 0.1, venue=Venue.RELAY)
    aggregator = calculator.calculate_realized_pnl(0.000001, exit_price, 100_000, 0.1, venue=Venue.AGGREGATOR)

    assert relay.breakdown.gross_value == aggregator.breakdown.gross_value
    assert relay.net_received < aggregator.net_received
    assert relay.breakdown.sell_fee_fraction > aggregator.breakdown.sell_fee_fraction


def test_unknown_venue_uses_generic_fee(calculator):
    assert venue_fee_fraction("raydium") == GENERIC_VENUE_FEE
    assert venue_fee_fraction(None) == GENERIC_VENUE_FEE
    assert venue_fee_fraction("PumpPortal") == 0.0175

    result = calculator.calculate_realized_pnl(0.000001, 0.000001, 100_000, 0.1, venue="raydium")
    assert result.breakdown.venue == "raydium"
    assert result.breakdown.sell_fee_fraction == GENERIC_VENUE_FEE


def test_to_dict_includes_derived_fields(calculator):
    data = calculator.calculate_realized_pnl(0.000001, 0.0000015, 100_000, 0.1).to_dict()
    assert "fee_drag_percent" in data
    assert data["breakdown"]["total_fees"] == pytest.approx(0.15 * 0.0175)


# =============================================================================
# VALIDATION
# =============================================================================

@pytest.mark.parametrize("field", ["entry_price", "exit_price", "token_amount", "quote_spent"])
@pytest.mark.parametrize("bad", [None, 0, -1, math.nan, math.inf, "abc", True])
def test_rejects_bad_required_inputs(calculator, field, bad):
    kwargs = dict(entry_price=0.000001, exit_price=0.000002, token_amount=100_000, quote_spent=0.1)
    kwargs[field] = bad
    with pytest.raises(PnLInputError):
        calculator.calculate_realized_pnl(**kwargs)


def test_rejects_full_slippage(calculator):
    with pytest.raises(PnLInputError):
        calculator.calculate_realized_pnl(0.000001, 0.000002, 100_000, 0.1, slippage=1.0)


def test_pnl_input_error_is_value_error():
    assert issubclass(PnLInputError, ValueError)


# =============================================================================
# UNREALIZED
# =============================================================================

def test_unrealized_uses_estimated_slippage():
    calc = PnLCalculator(network_fee=0.0, estimated_slippage=0.02)
    position = SimpleNamespace(entry_price=0.000001, token_amount=100_000, quote_spent=0.1)

    result = calc.calculate_unrealized_pnl(position, 0.000001)
    assert result.net_received == pytest.approx(0.1 * (1 - 0.0175) * 0.98)
    assert result.pnl_amount < 0


def test_unrealized_rejects_incomplete_position(calculator):
    with pytest.raises(PnLInputError):
        calculator.calculate_unrealized_pnl(SimpleNamespace(entry_price=0.000001), 0.000001)


def test_check_discrepancy_reports(calculator):
    result = calculator.calculate_realized_pnl(0.000001, 0.000002, 100_000, 0.1)
    report = calculator.check_discrepancy(result)
    assert report["has_high_impact"] is False
    assert report["fee_impact_percent"] == pytest.approx(3.5)
