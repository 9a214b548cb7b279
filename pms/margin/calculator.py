"""
Margin Calculator
-----------------
Pure margin, PnL and liquidation arithmetic over scaled integers.

Inputs: size (8 decimals), prices and amounts (6 decimals), ratios in
parts-per-million, integer leverage. Every rounding choice favours the
protocol: margin requirements round up, PnL rounds down, a long's
liquidation price rounds up and a short's rounds down.
"""
from dataclasses import dataclass
from typing import Tuple

from pms.errors import InvalidLeverage, InvalidMaintenanceMargin, InvalidPositionSize, LeverageExceeded
from pms.fixed_point import (
    AMOUNT_SCALE,
    RATIO_SCALE,
    SIZE_SCALE,
    U64_MAX,
    ceil_div,
    check_i64,
    check_u64,
    floor_div,
)
from pms.ledger.models import Side

MIN_LEVERAGE = 1
MAX_LEVERAGE = 100
DEFAULT_MAINTENANCE_MARGIN_RATIO = 25_000  # 0.025


@dataclass(frozen=True)
class LeverageTier:
    max_leverage: int
    max_notional: int  # 6 decimals


# First tier admitting both the leverage and the notional wins
LEVERAGE_TIERS: Tuple[LeverageTier, ...] = (
    LeverageTier(max_leverage=20, max_notional=U64_MAX),
    LeverageTier(max_leverage=50, max_notional=100_000 * AMOUNT_SCALE),
    LeverageTier(max_leverage=100, max_notional=50_000 * AMOUNT_SCALE),
)


def validate_leverage(leverage: int, max_leverage: int = MAX_LEVERAGE) -> int:
    if isinstance(leverage, bool) or not isinstance(leverage, int):
        raise InvalidLeverage(f"Leverage must be an integer, got {leverage!r}")
    if not MIN_LEVERAGE <= leverage <= max_leverage:
        raise InvalidLeverage(f"Leverage must be between {MIN_LEVERAGE} and {max_leverage}, got {leverage}")
    return leverage


def validate_maintenance_margin(leverage: int, maintenance_margin_ratio: int) -> int:
    """Maintenance ratio must lie strictly inside (0, 1/leverage)."""
    if maintenance_margin_ratio <= 0 or maintenance_margin_ratio * leverage >= RATIO_SCALE:
        raise InvalidMaintenanceMargin(
            f"Maintenance margin ratio {maintenance_margin_ratio}ppm is outside (0, 1/{leverage})"
        )
    return maintenance_margin_ratio


def notional(size: int, price: int) -> int:
    """size * price at 6 decimals, rounded up."""
    return check_u64(ceil_div(size * price, SIZE_SCALE), "notional")


def leverage_tier(leverage: int, size: int, price: int,
                  tiers: Tuple[LeverageTier, ...] = LEVERAGE_TIERS) -> LeverageTier:
    """
    Tier governing a position of `size` at `price`. Higher leverage is only
    available on smaller notionals; raises LeverageExceeded when no tier fits.
    """
    value = notional(size, price)
    for tier in tiers:
        if leverage <= tier.max_leverage and value <= tier.max_notional:
            return tier
    raise LeverageExceeded(f"Leverage {leverage}x is not available on a notional of {value}")


def required_margin(size: int, entry_price: int, leverage: int) -> int:
    """
    Initial margin: ceil(notional / leverage).

    Computed from the unrounded product so the result is the smallest m
    with m * leverage >= size * entry_price.
    """
    if size <= 0:
        raise InvalidPositionSize(f"Size must be positive, got {size}")
    validate_leverage(leverage)
    return check_u64(ceil_div(size * entry_price, SIZE_SCALE * leverage), "required_margin")


def maintenance_margin(size: int, price: int, maintenance_margin_ratio: int) -> int:
    return check_u64(
        ceil_div(size * price * maintenance_margin_ratio, SIZE_SCALE * RATIO_SCALE),
        "maintenance_margin",
    )


def unrealized_pnl(side: Side, size: int, entry_price: int, mark_price: int) -> int:
    # floor division rounds losses away from zero and gains toward it
    pnl = floor_div(side.multiplier * size * (mark_price - entry_price), SIZE_SCALE)
    return check_i64(pnl, "unrealized_pnl")


def realized_pnl(side: Side, size: int, entry_price: int, final_price: int) -> int:
    return unrealized_pnl(side, size, entry_price, final_price)


def margin_ratio(margin: int, size: int, mark_price: int, unrealized: int = 0) -> int:
    """
    Effective equity over current notional, in ppm, rounded down.

    Equity is margin plus unrealized PnL, floored at zero.
    """
    value = notional(size, mark_price)
    if value == 0:
        return 0
    equity = max(margin + unrealized, 0)
    return floor_div(equity * RATIO_SCALE, value)


def liquidation_price(side: Side, entry_price: int, leverage: int,
                      maintenance_margin_ratio: int = DEFAULT_MAINTENANCE_MARGIN_RATIO) -> int:
    """
    Long:  entry * (1 - 1/leverage + mmr)
    Short: entry * (1 + 1/leverage - mmr)
    """
    validate_leverage(leverage)
    denominator = leverage * RATIO_SCALE
    if side is Side.LONG:
        factor = leverage * (RATIO_SCALE + maintenance_margin_ratio) - RATIO_SCALE
        price = ceil_div(entry_price * factor, denominator)
    else:
        factor = leverage * (RATIO_SCALE - maintenance_margin_ratio) + RATIO_SCALE
        price = floor_div(entry_price * factor, denominator)
    return check_u64(max(price, 0), "liquidation_price")


def liquidation_price_for_margin(side: Side, size: int, entry_price: int, margin: int,
                                 maintenance_margin_ratio: int = DEFAULT_MAINTENANCE_MARGIN_RATIO) -> int:
    """
    Price at which margin + PnL falls to mmr * entry notional, for an
    arbitrary posted margin.

    Reduces to liquidation_price() when margin == notional / leverage.
    """
    if size <= 0:
        raise InvalidPositionSize(f"Size must be positive, got {size}")
    denominator = RATIO_SCALE * size
    margin_term = margin * SIZE_SCALE * RATIO_SCALE
    if side is Side.LONG:
        price = ceil_div(entry_price * (RATIO_SCALE + maintenance_margin_ratio) * size - margin_term, denominator)
    else:
        price = floor_div(entry_price * (RATIO_SCALE - maintenance_margin_ratio) * size + margin_term, denominator)
    return check_u64(max(price, 0), "liquidation_price")


def should_liquidate(current_margin_ratio: int, maintenance_margin_ratio: int) -> bool:
    return current_margin_ratio <= maintenance_margin_ratio


def distance_to_liquidation(side: Side, mark_price: int, liq_price: int) -> int:
    """Signed fraction (ppm) the mark can move adversely before liquidation."""
    if mark_price <= 0:
        return 0
    gap = mark_price - liq_price if side is Side.LONG else liq_price - mark_price
    return floor_div(gap * RATIO_SCALE, mark_price)


def max_position_size(available_margin: int, leverage: int, price: int) -> int:
    validate_leverage(leverage)
    if price <= 0:
        return 0
    return check_u64(floor_div(available_margin * leverage * SIZE_SCALE, price), "max_position_size")


def roi(unrealized: int, margin: int) -> int:
    """Return on posted margin, in ppm."""
    if margin <= 0:
        return 0
    return floor_div(unrealized * RATIO_SCALE, margin)
