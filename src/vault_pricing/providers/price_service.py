from __future__ import annotations

import asyncio
from typing import Dict, Iterable, Optional

import httpx
from loguru import logger

from ..config.settings import Config, config
from .price_cache import CacheStatus, Clock, PriceCache
from .price_sources.base import PriceQuote, PriceSource, PriceSourceError
from .price_sources.coingecko import CoinGeckoPriceSource


FetchResult = Dict[str, Optional[PriceQuote]]


class PriceService:
    """Cache-first price lookups on top of a single price source.

    Failures from the source degrade to ``None``; callers treat ``None`` as an
    unknown price, never as zero. Concurrent lookups that need the same
    provider identifier share one in-flight request.
    """

    def __init__(
        self,
        source: PriceSource,
        cache: PriceCache,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._source = source
        self._cache = cache
        self._client = client
        self._inflight: Dict[str, asyncio.Task[FetchResult]] = {}

    @property
    def cache(self) -> PriceCache:
        return self._cache

    @property
    def source(self) -> PriceSource:
        return self._source

    async def __aenter__(self) -> "PriceService":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def is_supported(self, symbol: str) -> bool:
        return self._source.resolve(symbol) is not None

    async def get_price(self, symbol: str) -> Optional[PriceQuote]:
        provider_id = self._source.resolve(symbol)
        if not provider_id:
            logger.debug("No provider identifier for {}; skipping price lookup", symbol)
            return None

        entry = self._cache.get(provider_id)
        if entry is not None and self._cache.is_fresh(entry):
            logger.debug("Cache hit for {} ({})", symbol, provider_id)
            return entry.quote

        task = self._inflight.get(provider_id)
        if task is None:
            task = self._spawn({provider_id: symbol}, batch=False)
        else:
            logger.debug("Joining in-flight request for {} ({})", symbol, provider_id)
        quotes = await asyncio.shield(task)
        return quotes.get(provider_id)

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Optional[PriceQuote]]:
        symbols = list(symbols)
        result: Dict[str, Optional[PriceQuote]] = {symbol: None for symbol in symbols}
        pending: Dict[str, str] = {}
        missing: Dict[str, str] = {}

        for symbol in symbols:
            provider_id = self._source.resolve(symbol)
            if not provider_id:
                logger.debug("No provider identifier for {}; leaving it empty", symbol)
                continue
            entry = self._cache.get(provider_id)
            if entry is not None and self._cache.is_fresh(entry):
                result[symbol] = entry.quote
                continue
            pending[symbol] = provider_id
            if provider_id not in self._inflight:
                missing.setdefault(provider_id, symbol)

        if not pending:
            return result

        if missing:
            self._spawn(missing, batch=True)

        tasks = {provider_id: self._inflight[provider_id] for provider_id in set(pending.values())}
        fetched: FetchResult = {}
        for task in set(tasks.values()):
            fetched.update(await asyncio.shield(task))

        for symbol, provider_id in pending.items():
            result[symbol] = fetched.get(provider_id)
        return result

    def get_cached_quote(self, symbol: str) -> Optional[PriceQuote]:
        """Last cached quote for a symbol, fresh or not."""
        provider_id = self._source.resolve(symbol)
        if not provider_id:
            return None
        entry = self._cache.get(provider_id)
        return entry.quote if entry else None

    async def calculate_usd_value(self, symbol: str, amount: float) -> Optional[float]:
        quote = await self.get_price(symbol)
        if quote is None:
            return None
        return amount * quote.price

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_status(self) -> CacheStatus:
        return self._cache.status()

    def _spawn(self, requests: Dict[str, str], *, batch: bool) -> asyncio.Task[FetchResult]:
        task = asyncio.create_task(self._fetch(requests, batch=batch))
        provider_ids = tuple(requests)
        for provider_id in provider_ids:
            self._inflight[provider_id] = task
        task.add_done_callback(lambda done: self._release(provider_ids, done))
        return task

    def _release(self, provider_ids: tuple[str, ...], task: asyncio.Task[FetchResult]) -> None:
        for provider_id in provider_ids:
            if self._inflight.get(provider_id) is task:
                del self._inflight[provider_id]
        # No caller may be left to retrieve the exception.
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Shared price request for {} failed: {!r}",
                ", ".join(provider_ids),
                task.exception(),
            )

    async def _fetch(self, requests: Dict[str, str], *, batch: bool) -> FetchResult:
        labels = ", ".join(requests.values())
        try:
            if batch:
                by_symbol = await self._source.fetch_many(list(requests.values()))
                quotes: FetchResult = {pid: by_symbol.get(symbol) for pid, symbol in requests.items()}
            else:
                ((provider_id, symbol),) = requests.items()
                quotes = {provider_id: await self._source.fetch_one(symbol)}
        except PriceSourceError as exc:
            logger.warning("Failed to fetch price for {} via {}: {}", labels, self._source.name, exc)
            return {}

        for provider_id, quote in quotes.items():
            if quote is not None:
                self._cache.put(provider_id, quote)
        logger.info(
            "Fetched {} of {} price(s) from {} for {}",
            sum(1 for quote in quotes.values() if quote is not None),
            len(requests),
            self._source.name,
            labels,
        )
        return quotes


def build_price_service(
    settings: Config = config,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Clock] = None,
) -> PriceService:
    """Construct the process-wide cache and the service that owns the HTTP client."""
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.price_request_timeout_seconds, connect=5.0),
        transport=transport,
    )
    source = CoinGeckoPriceSource(
        client,
        api_key=settings.coingecko_api_key,
        base_url=settings.coingecko_base_url,
    )
    if clock is None:
        cache = PriceCache(settings.price_cache_ttl_seconds)
    else:
        cache = PriceCache(settings.price_cache_ttl_seconds, clock=clock)
    return PriceService(source, cache, client=client)
