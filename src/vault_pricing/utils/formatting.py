from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Union

Number = Union[int, float, Decimal]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    # repr gives the shortest string that round-trips to the same float
    return Decimal(repr(float(value)))


def _round_half_up(value: Number, places: int) -> Decimal:
    number = to_decimal(value)
    if not number.is_finite():
        raise ValueError(f"Cannot format non-finite value {value!r}")
    with localcontext() as ctx:
        # quantize needs room for every integer digit plus the fraction
        ctx.prec = max(ctx.prec, number.adjusted() + places + 2)
        rounded = number.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    return rounded.copy_abs() if rounded == 0 else rounded


def format_decimal(value: Number, *, min_fraction_digits: int, max_fraction_digits: int) -> str:
    """en-US style number: thousands separators and a bounded fraction."""
    quantized = _round_half_up(value, max_fraction_digits)

    whole, _, fraction = f"{quantized:,f}".partition(".")
    fraction = fraction.rstrip("0").ljust(min_fraction_digits, "0")
    return f"{whole}.{fraction}" if fraction else whole


def format_token_amount(amount: Number) -> str:
    max_digits = 4 if amount >= 1 else 8
    return format_decimal(amount, min_fraction_digits=2, max_fraction_digits=max_digits)


def format_price(price: Number) -> str:
    if price >= 1000:
        return format_decimal(price, min_fraction_digits=2, max_fraction_digits=2)
    if price >= 1:
        return format_decimal(price, min_fraction_digits=2, max_fraction_digits=4)
    return format_decimal(price, min_fraction_digits=4, max_fraction_digits=8)


def format_usd_price(price: Number) -> str:
    max_digits = 2 if price >= 1 else 6
    return f"${format_decimal(price, min_fraction_digits=2, max_fraction_digits=max_digits)}"


def format_price_change(change: Number) -> str:
    pct = _round_half_up(change, 2)
    sign = "+" if pct >= 0 else ""
    return f"{sign}{format(pct, '.2f')}%"


def format_fixed_point(amount: int, decimals: int = 18) -> str:
    """Exact decimal rendering of a 10**decimals scaled integer."""
    if decimals == 0:
        return str(amount)
    sign = "-" if amount < 0 else ""
    quotient, remainder = divmod(abs(amount), 10**decimals)
    if remainder == 0:
        return f"{sign}{quotient}"
    fraction = str(remainder).rjust(decimals, "0").rstrip("0")
    return f"{sign}{quotient}.{fraction}"
