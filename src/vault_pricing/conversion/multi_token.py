from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional

from loguru import logger

from ..config.settings import config
from ..providers.price_service import PriceService
from ..providers.price_subscription import PriceSubscription
from ..utils.scheduler import Scheduler
from .engine import (
    ConversionEngine,
    ConversionResult,
    ConversionRules,
    ErrorKind,
    FiatInput,
    parse_fiat_amount,
)


UNSUPPORTED_TOKEN_MESSAGE = "Unsupported token"


class ConversionHandle:
    """Conversion view of one token for the facade's current USD amount."""

    def __init__(self, token_symbol: str, owner: "MultiTokenConversion", engine: Optional[ConversionEngine]) -> None:
        self.token_symbol = token_symbol
        self._owner = owner
        self._engine = engine

    @property
    def supported(self) -> bool:
        return self._engine is not None

    @property
    def result(self) -> ConversionResult:
        return self._owner.convert(self._owner.amount, self.token_symbol)

    @property
    def fixed_point_amount(self) -> Optional[int]:
        return self.result.fixed_point_amount

    async def refresh_price(self) -> None:
        if self._engine is not None:
            await self._engine.refresh_price()


class MultiTokenConversion:
    """One conversion engine per supported token, looked up by symbol.

    Engines and their price subscriptions are built up front so switching the
    selected token never sets up a new subscription.
    """

    def __init__(
        self,
        service: PriceService,
        scheduler: Scheduler,
        *,
        symbols: Iterable[str] = tuple(config.conversion_tokens),
        rules: Optional[ConversionRules] = None,
        amount: FiatInput = None,
        poll_interval: float = config.price_poll_interval_seconds,
        freshness_interval: float = config.price_freshness_interval_seconds,
    ) -> None:
        self._rules = rules or ConversionRules.from_config()
        self._amount: FiatInput = amount
        self._engines: Dict[str, ConversionEngine] = {}
        for symbol in symbols:
            key = symbol.strip().upper()
            if not key or key in self._engines:
                continue
            if not service.is_supported(key):
                logger.warning("Conversion token {} has no price source mapping; leaving it unsupported", key)
                continue
            subscription = PriceSubscription(
                key,
                service,
                scheduler,
                poll_interval=poll_interval,
                freshness_interval=freshness_interval,
            )
            self._engines[key] = ConversionEngine(subscription, self._rules)

    @property
    def supported_symbols(self) -> List[str]:
        return list(self._engines)

    @property
    def amount(self) -> FiatInput:
        return self._amount

    def set_amount(self, amount: FiatInput) -> None:
        self._amount = amount

    def engine(self, symbol: str) -> Optional[ConversionEngine]:
        return self._engines.get(symbol.strip().upper()) if symbol else None

    def for_token(self, symbol: str) -> ConversionHandle:
        key = (symbol or "").strip().upper()
        return ConversionHandle(key, self, self._engines.get(key))

    def convert(self, fiat_amount: FiatInput, token_symbol: str) -> ConversionResult:
        engine = self.engine(token_symbol)
        if engine is None:
            return self._unsupported(fiat_amount, (token_symbol or "").strip().upper())
        return engine.convert(fiat_amount)

    def fixed_point_amount(self, token_symbol: str) -> Optional[int]:
        return self.convert(self._amount, token_symbol).fixed_point_amount

    async def mount(self) -> None:
        await asyncio.gather(*(engine.subscription.mount() for engine in self._engines.values()))

    def unmount(self) -> None:
        for engine in self._engines.values():
            engine.subscription.unmount()

    async def __aenter__(self) -> "MultiTokenConversion":
        await self.mount()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unmount()

    def _unsupported(self, fiat_amount: FiatInput, token_symbol: str) -> ConversionResult:
        usd = parse_fiat_amount(fiat_amount)
        return ConversionResult(
            token_symbol=token_symbol,
            usd_amount=float(usd) if usd is not None else 0.0,
            validation_error=ErrorKind.UNSUPPORTED_TOKEN,
            validation_message=UNSUPPORTED_TOKEN_MESSAGE,
            error=UNSUPPORTED_TOKEN_MESSAGE,
        )
