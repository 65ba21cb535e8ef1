"""USD to token conversion for vault deposits.

Display values use float arithmetic like the rest of the UI. The fixed-point
amount handed to contracts is computed separately in ``Decimal`` from the
typed USD string and the quoted price, and always truncated toward zero so the
on-chain amount never exceeds what the USD amount buys.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation, localcontext
from enum import Enum
from typing import Optional, Union

from ..config.settings import Config, config
from ..providers.price_subscription import PriceSubscription
from ..utils.formatting import format_token_amount, to_decimal


FiatInput = Union[str, int, float, Decimal, None]

# Contracts take the amount as a uint256.
MAX_FIXED_POINT = 2**256 - 1

# Past 10**400 USD no float price can bring the amount under MAX_FIXED_POINT.
_MAX_INPUT_EXPONENT = 400


class ErrorKind(str, Enum):
    BELOW_MINIMUM = "below_minimum"
    AMOUNT_TOO_SMALL = "amount_too_small"
    AMOUNT_TOO_LARGE = "amount_too_large"
    PRICE_UNAVAILABLE = "price_unavailable"
    UNSUPPORTED_TOKEN = "unsupported_token"


@dataclass(frozen=True, slots=True)
class ConversionRules:
    min_usd_amount: Decimal = Decimal("1")
    min_token_amount: Decimal = Decimal("0.001")
    decimals: int = 18

    @classmethod
    def from_config(cls, settings: Config = config) -> "ConversionRules":
        return cls(
            min_usd_amount=settings.min_usd_amount,
            min_token_amount=settings.min_token_amount,
            decimals=settings.token_decimals,
        )


@dataclass(frozen=True, slots=True)
class ConversionResult:
    token_symbol: str
    usd_amount: float = 0.0
    token_amount: Optional[float] = None
    formatted: str = ""
    fixed_point_amount: Optional[int] = None
    validation_error: Optional[ErrorKind] = None
    validation_message: Optional[str] = None
    token_price: Optional[float] = None
    is_loading: bool = False
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.validation_error is None and self.fixed_point_amount is not None


def _is_blank(value: FiatInput) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_fiat_amount(value: FiatInput) -> Optional[Decimal]:
    """Parse a typed USD amount; ``None`` when blank or not a finite number."""
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, str):
        cleaned = value.strip().lstrip("$").replace(",", "").strip()
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return None
    elif isinstance(value, float) and not math.isfinite(value):
        return None
    else:
        amount = to_decimal(value)
    return amount if amount.is_finite() else None


def to_fixed_point(amount: Decimal, price: Decimal, decimals: int) -> int:
    """floor(amount / price * 10**decimals), exact for any realistic input."""
    with localcontext() as ctx:
        ctx.prec = 80
        ctx.rounding = ROUND_FLOOR
        scaled = amount.scaleb(decimals) / price
        return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def validation_message(kind: ErrorKind, *, usd_amount: Optional[Decimal], token_symbol: str, rules: ConversionRules) -> str:
    if kind is ErrorKind.BELOW_MINIMUM:
        if usd_amount is None or usd_amount <= 0:
            return "Amount must be greater than 0"
        return f"Minimum amount is ${format(rules.min_usd_amount.normalize(), 'f')} USD"
    if kind is ErrorKind.PRICE_UNAVAILABLE:
        return "Unable to calculate token amount"
    if kind is ErrorKind.AMOUNT_TOO_SMALL:
        return f"Amount too small (minimum {format(rules.min_token_amount.normalize(), 'f')} {token_symbol})"
    if kind is ErrorKind.AMOUNT_TOO_LARGE:
        return "Amount too large"
    return "Unsupported token"


def compute_conversion(
    fiat_amount: FiatInput,
    price: Optional[float],
    *,
    token_symbol: str,
    rules: ConversionRules = ConversionRules(),
    is_loading: bool = False,
    error: Optional[str] = None,
) -> ConversionResult:
    usd = parse_fiat_amount(fiat_amount)
    usd_float = float(usd) if usd is not None else 0.0
    has_price = price is not None and math.isfinite(price) and price > 0

    token_amount: Optional[float] = None
    exact_amount: Optional[Decimal] = None
    fixed_point: Optional[int] = None
    formatted = ""
    too_large = False
    if usd is not None and usd > 0 and has_price:
        if usd.adjusted() > _MAX_INPUT_EXPONENT:
            too_large = True
        else:
            fixed_point = to_fixed_point(usd, to_decimal(price), rules.decimals)
            token_amount = usd_float / price
            too_large = fixed_point > MAX_FIXED_POINT or not math.isfinite(token_amount)
        if too_large:
            token_amount = None
            fixed_point = None
        else:
            exact_amount = usd / to_decimal(price)
            formatted = format_token_amount(token_amount)

    kind: Optional[ErrorKind] = None
    if usd is None:
        kind = None if _is_blank(fiat_amount) else ErrorKind.BELOW_MINIMUM
    elif usd <= 0 or usd < rules.min_usd_amount:
        kind = ErrorKind.BELOW_MINIMUM
    elif too_large:
        kind = ErrorKind.AMOUNT_TOO_LARGE
    elif exact_amount is None:
        kind = ErrorKind.PRICE_UNAVAILABLE
    elif exact_amount < rules.min_token_amount:
        kind = ErrorKind.AMOUNT_TOO_SMALL

    if kind is not None:
        fixed_point = None

    return ConversionResult(
        token_symbol=token_symbol,
        usd_amount=usd_float,
        token_amount=token_amount,
        formatted=formatted,
        fixed_point_amount=fixed_point,
        validation_error=kind,
        validation_message=(
            validation_message(kind, usd_amount=usd, token_symbol=token_symbol, rules=rules) if kind else None
        ),
        token_price=price if has_price else None,
        is_loading=is_loading,
        error=error,
    )


class ConversionEngine:
    """Converts USD input to one token using a live price subscription."""

    def __init__(self, subscription: PriceSubscription, rules: Optional[ConversionRules] = None) -> None:
        self._subscription = subscription
        self._rules = rules or ConversionRules.from_config()

    @property
    def token_symbol(self) -> str:
        return self._subscription.symbol

    @property
    def subscription(self) -> PriceSubscription:
        return self._subscription

    @property
    def rules(self) -> ConversionRules:
        return self._rules

    def convert(self, fiat_amount: FiatInput) -> ConversionResult:
        state = self._subscription.state
        return compute_conversion(
            fiat_amount,
            state.price,
            token_symbol=self.token_symbol,
            rules=self._rules,
            is_loading=state.is_loading,
            error=state.error,
        )

    async def refresh_price(self) -> None:
        await self._subscription.refetch()
