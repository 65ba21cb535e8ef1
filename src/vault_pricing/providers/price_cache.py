"""In-memory price cache keyed by provider identifier.

The cache is shared by every caller that holds a reference to it. It is not
locked: all mutations happen on the asyncio event loop. Wrap ``get``/``put``
in a ``threading.Lock`` before sharing an instance across threads.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from loguru import logger

from .price_sources.base import PriceQuote


DEFAULT_TTL_SECONDS = 60.0

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class CacheEntry:
    quote: PriceQuote
    cached_at: float


@dataclass(slots=True)
class CacheStatus:
    size: int
    entries: List[str]


class PriceCache:
    """Last-known quote per provider identifier with TTL-based freshness.

    Stale entries are kept: they are overwritten by the next successful fetch
    and stay readable as "last known good" until then. Only ``clear`` removes
    anything.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, *, clock: Clock = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, provider_id: str) -> Optional[CacheEntry]:
        return self._entries.get(provider_id)

    def put(self, provider_id: str, quote: PriceQuote) -> CacheEntry:
        entry = CacheEntry(quote=quote, cached_at=self._clock())
        self._entries[provider_id] = entry
        logger.debug("Cached {} price {} under {}", quote.symbol, quote.price, provider_id)
        return entry

    def is_fresh(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.cached_at < self._ttl_seconds

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Cleared price cache ({} entries)", count)

    def status(self) -> CacheStatus:
        return CacheStatus(size=len(self._entries), entries=list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._entries
