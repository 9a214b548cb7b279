"""
Fixed-Point Arithmetic
----------------------
Scaled-integer helpers for prices, sizes, collateral and ratios.

Prices, margins, collateral and PnL carry 6 decimals, sizes carry 8 and
ratios are expressed in parts-per-million. Results are range-checked
against the ledger's integer widths instead of wrapping.
"""
from decimal import Decimal, InvalidOperation
from typing import Union

from pms.errors import ArithmeticOverflow, ValidationError

PRICE_DECIMALS = 6
SIZE_DECIMALS = 8
RATIO_DECIMALS = 6

PRICE_SCALE = 10 ** PRICE_DECIMALS
AMOUNT_SCALE = PRICE_SCALE
SIZE_SCALE = 10 ** SIZE_DECIMALS
RATIO_SCALE = 10 ** RATIO_DECIMALS

U16_MAX = 2 ** 16 - 1
U32_MAX = 2 ** 32 - 1
U64_MAX = 2 ** 64 - 1
I64_MIN = -(2 ** 63)
I64_MAX = 2 ** 63 - 1

Numeric = Union[int, str, Decimal]


def check_u64(value: int, name: str = "value") -> int:
    if value < 0 or value > U64_MAX:
        raise ArithmeticOverflow(f"{name}={value} does not fit u64")
    return value


def check_i64(value: int, name: str = "value") -> int:
    if value < I64_MIN or value > I64_MAX:
        raise ArithmeticOverflow(f"{name}={value} does not fit i64")
    return value


def check_u32(value: int, name: str = "value") -> int:
    if value < 0 or value > U32_MAX:
        raise ArithmeticOverflow(f"{name}={value} does not fit u32")
    return value


def ceil_div(numerator: int, denominator: int) -> int:
    """Division rounding toward positive infinity."""
    if denominator <= 0:
        raise ArithmeticOverflow(f"Invalid divisor {denominator}")
    return -((-numerator) // denominator)


def floor_div(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        raise ArithmeticOverflow(f"Invalid divisor {denominator}")
    return numerator // denominator


def checked_add_u64(a: int, b: int, name: str = "value") -> int:
    return check_u64(a + b, name)


def checked_sub_u64(a: int, b: int, name: str = "value") -> int:
    return check_u64(a - b, name)


def require_int(value, name: str) -> int:
    # bool is an int subclass; a True size is never intended
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer in fixed-point units, got {value!r}")
    return value


def to_fixed(value: Numeric, decimals: int) -> int:
    """
    Parse a human-readable decimal into scaled units.

    Values with more precision than the target scale are rejected rather
    than rounded, so "0.123456789" is not a valid 8-decimal size.
    """
    try:
        dec = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Not a decimal number: {value!r}")
    if not dec.is_finite():
        raise ValidationError(f"Not a finite number: {value!r}")
    scaled = dec.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"{value} has more than {decimals} decimal places")
    return int(scaled)


def from_fixed(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def format_fixed(value: int, decimals: int) -> str:
    """Render scaled units with exactly `decimals` fractional digits."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10 ** decimals)
    return f"{sign}{whole}.{frac:0{decimals}d}"


def parse_price(value: Numeric) -> int:
    return to_fixed(value, PRICE_DECIMALS)


def parse_amount(value: Numeric) -> int:
    return to_fixed(value, PRICE_DECIMALS)


def parse_size(value: Numeric) -> int:
    return to_fixed(value, SIZE_DECIMALS)


def parse_ratio(value: Numeric) -> int:
    return to_fixed(value, RATIO_DECIMALS)
