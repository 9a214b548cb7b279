"""
Test Margin Calculator
"""
import pytest

from pms.errors import (
    ArithmeticOverflow,
    InvalidLeverage,
    InvalidMaintenanceMargin,
    InvalidPositionSize,
    LeverageExceeded,
)
from pms.fixed_point import SIZE_SCALE, parse_amount, parse_price, parse_ratio, parse_size
from pms.ledger.models import Side
from pms.margin import calculator


SIZES = [1, 7, parse_size("0.1"), parse_size("1.23456789"), parse_size("250")]
PRICES = [1, parse_price("0.000999"), parse_price("3000"), parse_price("50000.123457")]


@pytest.mark.parametrize("leverage", [1, 2, 3, 7, 10, 33, 99, 100])
def test_required_margin_is_smallest_covering_value(leverage):
    for size in SIZES:
        for price in PRICES:
            margin = calculator.required_margin(size, price, leverage)
            exact = size * price  # notional scaled by SIZE_SCALE
            assert margin * leverage * SIZE_SCALE >= exact
            assert (margin - 1) * leverage * SIZE_SCALE < exact
            assert margin * leverage >= calculator.notional(size, price)


def test_btc_long_scenario():
    size, entry = parse_size("0.1"), parse_price("50000")
    assert calculator.notional(size, entry) == parse_amount("5000")
    assert calculator.required_margin(size, entry, 10) == parse_amount("500")
    assert calculator.liquidation_price(Side.LONG, entry, 10, parse_ratio("0.025")) == parse_price("46250")


def test_eth_short_scenario():
    assert calculator.liquidation_price(Side.SHORT, parse_price("3000"), 50, parse_ratio("0.025")) \
        == parse_price("2985")


def test_liquidation_price_default_ratio():
    assert calculator.liquidation_price(Side.LONG, parse_price("50000"), 10) == parse_price("46250")


@pytest.mark.parametrize("leverage", [1, 2, 4, 5, 8, 10, 20, 25, 50, 100])
def test_margin_ratio_at_entry_is_inverse_leverage(leverage):
    size, entry = parse_size("0.1"), parse_price("50000")
    margin = calculator.required_margin(size, entry, leverage)
    assert calculator.margin_ratio(margin, size, entry) == 1_000_000 // leverage


@pytest.mark.parametrize("leverage", [3, 7, 33])
def test_margin_ratio_at_entry_never_below_inverse_leverage(leverage):
    size, entry = parse_size("1.23456789"), parse_price("101.5")
    margin = calculator.required_margin(size, entry, leverage)
    assert calculator.margin_ratio(margin, size, entry) >= 1_000_000 // leverage


def test_pnl():
    size, entry = parse_size("0.1"), parse_price("50000")
    assert calculator.realized_pnl(Side.LONG, size, entry, parse_price("55000")) == parse_amount("500")
    assert calculator.unrealized_pnl(Side.SHORT, size, entry, parse_price("55000")) == -parse_amount("500")
    assert calculator.unrealized_pnl(Side.SHORT, size, entry, parse_price("45000")) == parse_amount("500")


def test_pnl_rounds_against_the_trader():
    # 1e-8 size * 1e-6 price move is below the amount scale
    assert calculator.unrealized_pnl(Side.LONG, 1, 1_000_000, 1_000_001) == 0
    assert calculator.unrealized_pnl(Side.LONG, 1, 1_000_001, 1_000_000) == -1


def test_margin_ratio_falls_with_adverse_move():
    size, entry = parse_size("0.1"), parse_price("50000")
    margin = parse_amount("500")
    mark = parse_price("46000")
    pnl = calculator.unrealized_pnl(Side.LONG, size, entry, mark)
    ratio = calculator.margin_ratio(margin, size, mark, pnl)
    assert ratio == 21_739
    assert calculator.should_liquidate(ratio, parse_ratio("0.025"))
    assert calculator.should_liquidate(25_000, 25_000)
    assert not calculator.should_liquidate(25_001, 25_000)
    # Equity floors at zero
    assert calculator.margin_ratio(margin, size, mark, -parse_amount("10000")) == 0


def test_liquidation_price_for_margin_matches_leverage_form():
    size = parse_size("0.1")
    for side, entry, leverage in [(Side.LONG, parse_price("50000"), 10), (Side.SHORT, parse_price("3000"), 10)]:
        margin = calculator.required_margin(size, entry, leverage)
        assert calculator.liquidation_price_for_margin(side, size, entry, margin) \
            == calculator.liquidation_price(side, entry, leverage)

    extra = calculator.liquidation_price_for_margin(Side.LONG, size, parse_price("50000"), parse_amount("600"))
    assert extra == parse_price("45250")

    with pytest.raises(InvalidPositionSize):
        calculator.liquidation_price_for_margin(Side.LONG, 0, parse_price("50000"), parse_amount("600"))


def test_helpers():
    size, entry = parse_size("0.1"), parse_price("50000")
    assert calculator.maintenance_margin(size, entry, parse_ratio("0.025")) == parse_amount("125")
    assert calculator.distance_to_liquidation(Side.LONG, entry, parse_price("46250")) == 75_000
    assert calculator.distance_to_liquidation(Side.SHORT, parse_price("3000"), parse_price("2985")) == -5_000
    assert calculator.max_position_size(parse_amount("500"), 10, entry) == size
    assert calculator.roi(parse_amount("500"), parse_amount("500")) == 1_000_000
    assert calculator.roi(parse_amount("500"), 0) == 0


def test_validation():
    with pytest.raises(InvalidLeverage):
        calculator.required_margin(1, 1, 0)
    with pytest.raises(InvalidLeverage):
        calculator.validate_leverage(1.5)
    with pytest.raises(InvalidPositionSize):
        calculator.required_margin(0, 1, 1)
    with pytest.raises(InvalidMaintenanceMargin):
        calculator.validate_maintenance_margin(50, parse_ratio("0.025"))
    assert calculator.validate_maintenance_margin(10, parse_ratio("0.025")) == 25_000


def test_overflow_is_never_silent():
    with pytest.raises(ArithmeticOverflow):
        calculator.notional(2 ** 63, parse_price("100000"))


def test_leverage_tier_bands():
    entry = parse_price("50000")
    assert calculator.leverage_tier(100, parse_size("1"), parse_price("1000")).max_leverage == 100
    assert calculator.leverage_tier(20, parse_size("1000"), entry).max_leverage == 20
    assert calculator.leverage_tier(21, parse_size("2"), entry).max_leverage == 50
    assert calculator.leverage_tier(51, parse_size("1"), entry).max_leverage == 100

    with pytest.raises(LeverageExceeded):
        calculator.leverage_tier(21, parse_size("2.00000001"), entry)
    with pytest.raises(LeverageExceeded):
        calculator.leverage_tier(51, parse_size("1.00000001"), entry)
    with pytest.raises(LeverageExceeded):
        calculator.leverage_tier(101, parse_size("0.001"), entry)
