from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional


class PriceSourceError(RuntimeError):
    """Raised when a price source cannot produce a quote."""


class NotSupportedError(PriceSourceError):
    """The symbol has no provider identifier; no request was made."""


class NetworkError(PriceSourceError):
    """Transport failure or timeout while talking to the provider."""


class ProviderError(PriceSourceError):
    """Non-2xx response or a payload that could not be understood."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class PriceQuote:
    symbol: str
    price: float
    change_24h: Optional[float] = None
    observed_at: datetime = field(default_factory=_utcnow)
    provider_id: Optional[str] = None
    source: str = "unknown"

    def __post_init__(self) -> None:
        if not self.price > 0:
            raise ValueError(f"Quote price for {self.symbol} must be positive, got {self.price!r}")


class PriceSource(ABC):
    name: str

    @abstractmethod
    def resolve(self, symbol: str) -> Optional[str]:
        """Return the provider identifier for a symbol, or None when unmapped."""

    @abstractmethod
    async def fetch_one(self, symbol: str) -> PriceQuote:
        """Return a quote or raise a PriceSourceError."""

    @abstractmethod
    async def fetch_many(self, symbols: Iterable[str]) -> Dict[str, Optional[PriceQuote]]:
        """Return a quote per symbol, None where the provider had nothing."""
