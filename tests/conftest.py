import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import pytest

from vault_pricing.providers.price_cache import PriceCache
from vault_pricing.providers.price_service import PriceService
from vault_pricing.providers.price_sources.base import (
    NotSupportedError,
    PriceQuote,
    PriceSource,
    ProviderError,
)
from vault_pricing.providers.price_sources.coingecko import TOKEN_ID_MAP


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNow:
    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakePriceSource(PriceSource):
    """In-memory price source that counts calls and can be held open."""

    name = "fake"

    def __init__(self, prices: Optional[Dict[str, float]] = None) -> None:
        self.prices = dict(prices or {"ethereum": 2500.0, "avalanche-2": 25.0, "bitcoin": 60_000.0})
        self.one_calls: List[str] = []
        self.many_calls: List[List[str]] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    @property
    def calls(self) -> int:
        return len(self.one_calls) + len(self.many_calls)

    def resolve(self, symbol: str) -> Optional[str]:
        if not symbol:
            return None
        return TOKEN_ID_MAP.get(symbol.strip().upper())

    async def fetch_one(self, symbol: str) -> PriceQuote:
        coin_id = self.resolve(symbol)
        if not coin_id:
            raise NotSupportedError(symbol)
        self.one_calls.append(symbol)
        await self._wait()
        if self.error is not None:
            raise self.error
        if coin_id not in self.prices:
            raise ProviderError(f"No price data found for {symbol}")
        return self._quote(symbol, coin_id)

    async def fetch_many(self, symbols: Iterable[str]) -> Dict[str, Optional[PriceQuote]]:
        symbols = list(symbols)
        self.many_calls.append(symbols)
        await self._wait()
        if self.error is not None:
            raise self.error
        result: Dict[str, Optional[PriceQuote]] = {}
        for symbol in symbols:
            coin_id = self.resolve(symbol)
            result[symbol] = self._quote(symbol, coin_id) if coin_id in self.prices else None
        return result

    def _quote(self, symbol: str, coin_id: str) -> PriceQuote:
        return PriceQuote(
            symbol=symbol.upper(),
            price=self.prices[coin_id],
            change_24h=1.25,
            observed_at=T0,
            provider_id=coin_id,
            source=self.name,
        )

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)


class ManualJob:
    def __init__(self, interval: float, callback) -> None:
        self.interval = interval
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """Scheduler whose timers only fire when a test says so."""

    def __init__(self) -> None:
        self.jobs: List[ManualJob] = []

    def schedule(self, interval: float, callback) -> ManualJob:
        job = ManualJob(interval, callback)
        self.jobs.append(job)
        return job

    def active(self, interval: Optional[float] = None) -> List[ManualJob]:
        return [
            job for job in self.jobs
            if not job.cancelled and (interval is None or job.interval == interval)
        ]

    async def fire(self, interval: float) -> None:
        for job in self.active(interval):
            result = job.callback()
            if inspect.isawaitable(result):
                await result


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_now() -> FakeNow:
    return FakeNow()


@pytest.fixture
def source() -> FakePriceSource:
    return FakePriceSource()


@pytest.fixture
def cache(clock: FakeClock) -> PriceCache:
    return PriceCache(60, clock=clock)


@pytest.fixture
def service(source: FakePriceSource, cache: PriceCache) -> PriceService:
    return PriceService(source, cache)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()
