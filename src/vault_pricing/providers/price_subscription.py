from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from ..config.settings import config
from ..utils.event import EventEmitter, EventName, Listener
from ..utils.formatting import format_price_change, format_usd_price
from ..utils.scheduler import ScheduleHandle, Scheduler
from .price_service import PriceService
from .price_sources.base import PriceQuote


Now = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SubscriptionState:
    status: SubscriptionStatus = SubscriptionStatus.IDLE
    quote: Optional[PriceQuote] = None
    error: Optional[str] = None
    last_updated: Optional[datetime] = None
    seconds_since_update: Optional[int] = None

    @property
    def price(self) -> Optional[float]:
        return self.quote.price if self.quote else None

    @property
    def change_24h(self) -> Optional[float]:
        return self.quote.change_24h if self.quote else None

    @property
    def is_loading(self) -> bool:
        return self.status is SubscriptionStatus.LOADING


class _PollingSubscription(ABC):
    """Shared mount/unmount and timer bookkeeping for price subscriptions."""

    label: str

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        poll_interval: float,
        auto_refresh: bool,
    ) -> None:
        self._scheduler = scheduler
        self._poll_interval = poll_interval
        self._auto_refresh = auto_refresh
        self._handles: List[ScheduleHandle] = []
        self._mounted = False
        self._generation = 0
        self._events = EventEmitter()

    @property
    def mounted(self) -> bool:
        return self._mounted

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        return self._events.add_listener(listener)

    async def mount(self) -> None:
        if self._mounted:
            return
        self._mounted = True
        self._generation += 1
        if self._auto_refresh:
            self._handles.append(self._scheduler.schedule(self._poll_interval, self.refetch))
        self._start_extra_timers()
        logger.debug("Mounted price subscription for {}", self.label)
        await self.refetch()

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        logger.debug("Unmounted price subscription for {}", self.label)

    @abstractmethod
    async def refetch(self) -> None:
        """Fetch through the price service and publish the new state."""

    def _start_extra_timers(self) -> None:
        return None

    def _is_current(self, generation: int) -> bool:
        if self._mounted and generation == self._generation:
            return True
        logger.debug("Dropping late price result for unmounted subscription {}", self.label)
        return False

    async def __aenter__(self):
        await self.mount()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unmount()


class PriceSubscription(_PollingSubscription):
    """Live, auto-refreshing view of one token's USD price.

    Every subscriber reads through the shared ``PriceService`` cache, so any
    number of subscriptions to one symbol cost at most one request per TTL
    window. A failed refresh keeps the previous quote and only sets ``error``.
    """

    def __init__(
        self,
        symbol: str,
        service: PriceService,
        scheduler: Scheduler,
        *,
        poll_interval: float = config.price_poll_interval_seconds,
        freshness_interval: float = config.price_freshness_interval_seconds,
        auto_refresh: bool = True,
        now: Now = _utcnow,
    ) -> None:
        super().__init__(scheduler, poll_interval=poll_interval, auto_refresh=auto_refresh)
        self.symbol = symbol.strip().upper()
        self.label = self.symbol
        self._service = service
        self._freshness_interval = freshness_interval
        self._now = now
        self._state = SubscriptionState()

    @property
    def state(self) -> SubscriptionState:
        return self._state

    async def refetch(self) -> None:
        if not self._mounted:
            return
        generation = self._generation
        self._set(EventName.LOADING, replace(self._state, status=SubscriptionStatus.LOADING, error=None))

        try:
            quote = await self._service.get_price(self.symbol)
        except Exception as exc:
            logger.exception("Price refresh for {} failed: {}", self.symbol, exc)
            if self._is_current(generation):
                self._set(EventName.ERROR, replace(self._state, status=SubscriptionStatus.ERROR, error=str(exc)))
            return

        if not self._is_current(generation):
            return
        if quote is None:
            self._set(
                EventName.ERROR,
                replace(
                    self._state,
                    status=SubscriptionStatus.ERROR,
                    error=f"Unable to fetch price for {self.symbol}",
                ),
            )
            return

        self._set(
            EventName.READY,
            SubscriptionState(
                status=SubscriptionStatus.READY,
                quote=quote,
                last_updated=quote.observed_at,
                seconds_since_update=self._seconds_since(quote.observed_at),
            ),
        )

    def usd_value(self, amount: float) -> Optional[float]:
        price = self._state.price
        if price is None or not amount:
            return None
        return price * amount

    @property
    def formatted_price(self) -> Optional[str]:
        price = self._state.price
        return format_usd_price(price) if price is not None else None

    @property
    def formatted_change(self) -> Optional[str]:
        change = self._state.change_24h
        return format_price_change(change) if change is not None else None

    def _start_extra_timers(self) -> None:
        self._handles.append(self._scheduler.schedule(self._freshness_interval, self._tick_freshness))

    def _tick_freshness(self) -> None:
        if not self._mounted or self._state.last_updated is None:
            return
        seconds = self._seconds_since(self._state.last_updated)
        if seconds != self._state.seconds_since_update:
            self._set(EventName.FRESHNESS, replace(self._state, seconds_since_update=seconds))

    def _seconds_since(self, moment: datetime) -> int:
        return max(0, int((self._now() - moment).total_seconds()))

    def _set(self, name: EventName, state: SubscriptionState) -> None:
        self._state = state
        self._events.emit(name, self.symbol, state)


@dataclass(frozen=True, slots=True)
class MultiPriceState:
    status: SubscriptionStatus = SubscriptionStatus.IDLE
    prices: Dict[str, Optional[PriceQuote]] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_loading(self) -> bool:
        return self.status is SubscriptionStatus.LOADING


class MultiPriceSubscription(_PollingSubscription):
    """Batch variant of ``PriceSubscription`` covering several symbols."""

    def __init__(
        self,
        symbols: Iterable[str],
        service: PriceService,
        scheduler: Scheduler,
        *,
        poll_interval: float = config.price_poll_interval_seconds,
        auto_refresh: bool = True,
    ) -> None:
        super().__init__(scheduler, poll_interval=poll_interval, auto_refresh=auto_refresh)
        self.symbols = list(dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip()))
        self.label = ",".join(self.symbols)
        self._service = service
        self._state = MultiPriceState()

    @property
    def state(self) -> MultiPriceState:
        return self._state

    async def refetch(self) -> None:
        if not self._mounted or not self.symbols:
            return
        generation = self._generation
        self._set(EventName.LOADING, replace(self._state, status=SubscriptionStatus.LOADING, error=None))

        try:
            fetched = await self._service.get_prices(self.symbols)
        except Exception as exc:
            logger.exception("Batch price refresh for {} failed: {}", self.label, exc)
            if self._is_current(generation):
                self._set(EventName.ERROR, replace(self._state, status=SubscriptionStatus.ERROR, error=str(exc)))
            return

        if not self._is_current(generation):
            return

        prices = dict(self._state.prices)
        for symbol in self.symbols:
            quote = fetched.get(symbol)
            if quote is not None:
                prices[symbol] = quote
            else:
                prices.setdefault(symbol, None)
        missing = [symbol for symbol in self.symbols if fetched.get(symbol) is None]

        if missing:
            error = f"Unable to fetch prices for {', '.join(missing)}"
            status = SubscriptionStatus.ERROR if len(missing) == len(self.symbols) else SubscriptionStatus.READY
            name = EventName.ERROR if status is SubscriptionStatus.ERROR else EventName.READY
            self._set(name, MultiPriceState(status=status, prices=prices, error=error))
            return

        self._set(EventName.READY, MultiPriceState(status=SubscriptionStatus.READY, prices=prices))

    def _set(self, name: EventName, state: MultiPriceState) -> None:
        self._state = state
        self._events.emit(name, self.label, state)
