import asyncio

import pytest

from conftest import settle
from vault_pricing.providers.price_sources.base import NetworkError
from vault_pricing.providers.price_subscription import (
    MultiPriceSubscription,
    PriceSubscription,
    SubscriptionStatus,
)
from vault_pricing.utils.event import EventName

POLL = 300.0
TICK = 1.0


def _subscribe(symbol, service, scheduler, fake_now=None, **kwargs):
    extra = {"now": fake_now} if fake_now is not None else {}
    return PriceSubscription(
        symbol,
        service,
        scheduler,
        poll_interval=POLL,
        freshness_interval=TICK,
        **extra,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_mount_fetches_and_becomes_ready(service, scheduler, source, fake_now):
    sub = _subscribe("avax", service, scheduler, fake_now)
    events = []
    sub.add_listener(events.append)

    await sub.mount()

    assert sub.state.status is SubscriptionStatus.READY
    assert sub.state.price == 25.0
    assert sub.state.change_24h == 1.25
    assert sub.state.error is None
    assert sub.state.seconds_since_update == 0
    assert [event.name for event in events] == [EventName.LOADING, EventName.READY]
    assert events[0].state.is_loading
    assert events[1].symbol == "AVAX"
    assert source.calls == 1
    assert len(scheduler.active(POLL)) == 1
    assert len(scheduler.active(TICK)) == 1


@pytest.mark.asyncio
async def test_mount_is_idempotent(service, scheduler, source):
    sub = _subscribe("ETH", service, scheduler)
    await sub.mount()
    await sub.mount()

    assert source.calls == 1
    assert len(scheduler.active()) == 2


@pytest.mark.asyncio
async def test_same_tick_subscribers_share_one_request(service, scheduler, source):
    source.gate = asyncio.Event()
    subs = [_subscribe("ETH", service, scheduler) for _ in range(3)]
    mounts = [asyncio.create_task(sub.mount()) for sub in subs]
    await settle()

    assert all(sub.state.is_loading for sub in subs)
    assert source.calls == 1

    source.gate.set()
    await asyncio.gather(*mounts)

    quotes = [sub.state.quote for sub in subs]
    assert quotes[0] is not None
    assert all(quote is quotes[0] for quote in quotes)
    assert source.calls == 1


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_quote(service, scheduler, source, clock):
    sub = _subscribe("ETH", service, scheduler)
    await sub.mount()
    previous = sub.state.quote

    clock.advance(POLL)
    source.error = NetworkError("timed out")
    await scheduler.fire(POLL)

    assert sub.state.status is SubscriptionStatus.ERROR
    assert sub.state.error == "Unable to fetch price for ETH"
    assert sub.state.quote is previous
    assert sub.state.price == 2500.0


@pytest.mark.asyncio
async def test_unsupported_symbol_reports_error_without_request(service, scheduler, source):
    sub = _subscribe("DOGE", service, scheduler)
    await sub.mount()

    assert sub.state.status is SubscriptionStatus.ERROR
    assert sub.state.price is None
    assert sub.state.error == "Unable to fetch price for DOGE"
    assert source.calls == 0


@pytest.mark.asyncio
async def test_unexpected_exception_is_surfaced_as_error(service, scheduler, source):
    source.error = ValueError("boom")
    sub = _subscribe("ETH", service, scheduler)
    await sub.mount()

    assert sub.state.status is SubscriptionStatus.ERROR
    assert sub.state.error == "boom"


@pytest.mark.asyncio
async def test_unmount_cancels_timers_and_drops_late_result(service, scheduler, source):
    source.gate = asyncio.Event()
    sub = _subscribe("ETH", service, scheduler)
    mounting = asyncio.create_task(sub.mount())
    await settle()

    sub.unmount()
    assert scheduler.active() == []

    source.gate.set()
    await mounting

    assert sub.state.quote is None
    assert sub.state.status is SubscriptionStatus.LOADING
    assert service.get_cached_quote("ETH").price == 2500.0


@pytest.mark.asyncio
async def test_refetch_after_unmount_is_a_no_op(service, scheduler, source):
    sub = _subscribe("ETH", service, scheduler)
    await sub.mount()
    sub.unmount()
    service.clear_cache()

    await sub.refetch()
    assert source.calls == 1


@pytest.mark.asyncio
async def test_freshness_tick_updates_age_without_fetching(service, scheduler, source, fake_now):
    sub = _subscribe("ETH", service, scheduler, fake_now)
    await sub.mount()
    events = []
    sub.add_listener(events.append)

    fake_now.advance(7)
    await scheduler.fire(TICK)
    await scheduler.fire(TICK)

    assert sub.state.seconds_since_update == 7
    assert [event.name for event in events] == [EventName.FRESHNESS]
    assert source.calls == 1


@pytest.mark.asyncio
async def test_poll_refetches_once_cache_expires(service, scheduler, source, clock):
    sub = _subscribe("ETH", service, scheduler)
    await sub.mount()

    await scheduler.fire(POLL)
    assert source.calls == 1

    clock.advance(POLL)
    await scheduler.fire(POLL)
    assert source.calls == 2
    assert sub.state.status is SubscriptionStatus.READY


@pytest.mark.asyncio
async def test_manual_refetch_respects_cache(service, scheduler, source):
    sub = _subscribe("ETH", service, scheduler, auto_refresh=False)
    await sub.mount()
    assert scheduler.active(POLL) == []

    await sub.refetch()
    assert source.calls == 1

    service.clear_cache()
    await sub.refetch()
    assert source.calls == 2


@pytest.mark.asyncio
async def test_helpers_format_current_quote(service, scheduler):
    sub = _subscribe("ETH", service, scheduler)
    assert sub.usd_value(2) is None

    async with sub:
        assert sub.usd_value(2) == 5000.0
        assert sub.usd_value(0) is None
        assert sub.formatted_price == "$2,500.00"
        assert sub.formatted_change == "+1.25%"
    assert not sub.mounted


@pytest.mark.asyncio
async def test_multi_subscription_partial_miss(service, scheduler, source):
    sub = MultiPriceSubscription(["eth", "doge", "ETH"], service, scheduler, poll_interval=POLL)
    await sub.mount()

    assert sub.symbols == ["ETH", "DOGE"]
    assert sub.state.status is SubscriptionStatus.READY
    assert sub.state.prices["ETH"].price == 2500.0
    assert sub.state.prices["DOGE"] is None
    assert sub.state.error == "Unable to fetch prices for DOGE"
    assert source.many_calls == [["ETH"]]


@pytest.mark.asyncio
async def test_multi_subscription_keeps_quotes_on_total_failure(service, scheduler, source, clock):
    sub = MultiPriceSubscription(["ETH", "AVAX"], service, scheduler, poll_interval=POLL)
    await sub.mount()

    clock.advance(POLL)
    source.error = NetworkError("offline")
    await scheduler.fire(POLL)

    assert sub.state.status is SubscriptionStatus.ERROR
    assert sub.state.error == "Unable to fetch prices for ETH, AVAX"
    assert sub.state.prices["AVAX"].price == 25.0
