from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .base import NetworkError, NotSupportedError, PriceQuote, PriceSource, ProviderError


COINGECKO_BASE_URL = "https://api.coingecko.com/api/v3"

# Symbols mapped to None are known tokens still pending a CoinGecko listing.
TOKEN_ID_MAP: Dict[str, Optional[str]] = {
    "ETH": "ethereum",
    "AVAX": "avalanche-2",
    "MONAD": None,
    "BTC": "bitcoin",
    "USDC": "usd-coin",
    "USDT": "tether",
}


class CoinGeckoPriceEntry(BaseModel):
    usd: float = Field(gt=0)
    usd_24h_change: Optional[float] = None


class CoinGeckoPriceSource(PriceSource):
    name = "coingecko"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str] = None,
        *,
        base_url: str = COINGECKO_BASE_URL,
        token_ids: Optional[Dict[str, Optional[str]]] = None,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._token_ids = {k.upper(): v for k, v in (token_ids or TOKEN_ID_MAP).items()}

    def resolve(self, symbol: str) -> Optional[str]:
        if not symbol:
            return None
        return self._token_ids.get(symbol.strip().upper())

    @property
    def supported_symbols(self) -> List[str]:
        return [symbol for symbol, coin_id in self._token_ids.items() if coin_id]

    async def fetch_one(self, symbol: str) -> PriceQuote:
        coin_id = self.resolve(symbol)
        if not coin_id:
            raise NotSupportedError(f"No CoinGecko ID found for token: {symbol}")

        payload = await self._fetch_simple_price([coin_id])
        raw = payload.get(coin_id)
        if raw is None:
            raise ProviderError(f"No price data found for {symbol.upper()}")
        try:
            entry = CoinGeckoPriceEntry.model_validate(raw)
        except ValidationError as exc:
            raise ProviderError(f"Malformed CoinGecko entry for {coin_id}: {exc}") from exc
        return self._to_quote(symbol, coin_id, entry)

    async def fetch_many(self, symbols: Iterable[str]) -> Dict[str, Optional[PriceQuote]]:
        result: Dict[str, Optional[PriceQuote]] = {}
        wanted: Dict[str, str] = {}
        for symbol in symbols:
            coin_id = self.resolve(symbol)
            if coin_id:
                wanted[symbol] = coin_id
            else:
                logger.debug("Skipping {} in batch: no CoinGecko ID", symbol)
                result[symbol] = None

        if not wanted:
            return result

        payload = await self._fetch_simple_price(list(dict.fromkeys(wanted.values())))
        for symbol, coin_id in wanted.items():
            raw = payload.get(coin_id)
            if raw is None:
                logger.debug("CoinGecko response had no entry for {} ({})", coin_id, symbol)
                result[symbol] = None
                continue
            try:
                entry = CoinGeckoPriceEntry.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Discarding malformed CoinGecko entry for {}: {}", coin_id, exc)
                result[symbol] = None
                continue
            result[symbol] = self._to_quote(symbol, coin_id, entry)
        return result

    async def _fetch_simple_price(self, coin_ids: List[str]) -> Dict[str, object]:
        params = {
            "ids": ",".join(coin_ids),
            "vs_currencies": "usd",
            "include_24hr_change": "true",
        }
        logger.debug("Requesting CoinGecko simple price for {}", params["ids"])
        try:
            response = await self._client.get(
                f"{self._base_url}/simple/price",
                params=params,
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise NetworkError(f"CoinGecko request failed for {params['ids']}: {exc}") from exc

        if not response.is_success:
            raise ProviderError(f"CoinGecko API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("CoinGecko returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise ProviderError(f"Unexpected CoinGecko payload type: {type(data).__name__}")
        return data

    def _to_quote(self, symbol: str, coin_id: str, entry: CoinGeckoPriceEntry) -> PriceQuote:
        return PriceQuote(
            symbol=symbol.upper(),
            price=entry.usd,
            change_24h=entry.usd_24h_change,
            provider_id=coin_id,
            source=self.name,
        )

    @property
    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-cg-demo-api-key"] = self._api_key
        return headers
