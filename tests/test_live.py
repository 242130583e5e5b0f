import asyncio
import json
import signal

import httpx
import pytest

from funding_arb import exchanges
from funding_arb.config import BotConfig
from funding_arb.errors import ConfigurationError, ExecutionError, FeedError
from funding_arb.executor import PaperExecutionAdapter, execute_transition
from funding_arb.exchanges import HyperliquidFundingFeed
from funding_arb.http_client import JsonHttpClient
from funding_arb.main import LiveLoop, install_stop_handlers
from funding_arb.models import FundingSnapshot
from funding_arb.state import PositionStateMachine

NOW = 1_704_067_200_000


class StubFeed:
    def __init__(self, venue, rates, fail_markets=()):
        self.venue = venue
        self.rates = dict(rates)
        self.fail_markets = set(fail_markets)
        self.calls = []

    async def fetch_funding(self, market):
        self.calls.append(market)
        if market in self.fail_markets:
            raise FeedError("upstream 500", venue=self.venue, market=market)
        return FundingSnapshot.from_hourly(self.venue, market, self.rates[market], NOW - 60_000)

    async def funding_history(self, market, start_ms, end_ms):
        return []

    async def aclose(self):
        pass


class BlockingFeed(StubFeed):
    def __init__(self, venue, rates):
        super().__init__(venue, rates)
        self.release = asyncio.Event()
        self.entered = asyncio.Event()

    async def fetch_funding(self, market):
        self.entered.set()
        await self.release.wait()
        return await super().fetch_funding(market)


class FailingAdapter(PaperExecutionAdapter):
    def __init__(self, fail_open=True, fail_close=False):
        super().__init__()
        self.fail_open = fail_open
        self.fail_close = fail_close

    async def open_position(self, market, side, notional_usd, **kwargs):
        if self.fail_open:
            raise ExecutionError("venue rejected order", market=market)
        return await super().open_position(market, side, notional_usd, **kwargs)

    async def close_position(self, market, **kwargs):
        if self.fail_close:
            raise ExecutionError("venue rejected close", market=market)
        return await super().close_position(market, **kwargs)


def _cfg(**kw):
    base = dict(markets=("SOL-PERP", "ETH-PERP"), cooldown_seconds=0.0, poll_seconds=0.01)
    base.update(kw)
    return BotConfig(**base)


def _clock(start=NOW, step=3_600_000):
    t = {"now": start - step}

    def clock():
        t["now"] += step
        return t["now"]

    return clock


@pytest.mark.asyncio
async def test_tick_enters_with_paper_adapter():
    adapter = PaperExecutionAdapter()
    feed = StubFeed("hyperliquid", {"SOL-PERP": 0.0014, "ETH-PERP": 0.0005})
    loop = LiveLoop(_cfg(), feed, adapter=adapter, clock=_clock())

    events = await loop.tick()

    assert [(e.market, e.kind, e.action) for e in events] == [("SOL-PERP", "SINGLE", "ENTER")]
    assert events[0].ts == NOW
    assert feed.calls == ["SOL-PERP", "ETH-PERP"]
    assert len(adapter.intents) == 1
    intent = adapter.intents[0]
    assert (intent.kind, intent.venue, intent.side, intent.spot_side) == ("OPEN", "hyperliquid", "SHORT", "BUY")
    assert intent.notional_usd == 500.0

    status = loop.status()
    assert status.tick_count == 1
    assert status.positions["SOL-PERP"].startswith("SINGLE perp=SHORT")
    assert status.positions["ETH-PERP"] == "FLAT"


@pytest.mark.asyncio
async def test_feed_error_skips_only_that_market():
    feed = StubFeed("hyperliquid", {"SOL-PERP": 0.0014, "ETH-PERP": 0.0014}, fail_markets={"SOL-PERP"})
    loop = LiveLoop(_cfg(), feed, clock=_clock())

    events = await loop.tick()

    assert [e.market for e in events] == ["ETH-PERP"]
    assert not loop.machine.position("SOL-PERP").single.open
    assert loop.machine.position("ETH-PERP").single.open


@pytest.mark.asyncio
async def test_secondary_feed_error_skips_market():
    cfg = _cfg(markets=("SOL-PERP",), cross_venue_enabled=True, secondary_venue="dydx")
    primary = StubFeed("hyperliquid", {"SOL-PERP": 0.002})
    secondary = StubFeed("dydx", {"SOL-PERP": -0.0015}, fail_markets={"SOL-PERP"})
    loop = LiveLoop(cfg, primary, secondary, clock=_clock())

    assert await loop.tick() == []
    state = loop.machine.position("SOL-PERP")
    assert not state.single.open and not state.cross.open


def test_cross_mode_requires_secondary_feed():
    cfg = _cfg(cross_venue_enabled=True, secondary_venue="dydx")
    with pytest.raises(ConfigurationError):
        LiveLoop(cfg, StubFeed("hyperliquid", {}))


@pytest.mark.asyncio
async def test_execution_error_leaves_state_unchanged():
    feed = StubFeed("hyperliquid", {"SOL-PERP": 0.0014, "ETH-PERP": 0.0})
    machine = PositionStateMachine(_cfg())
    loop = LiveLoop(_cfg(), feed, adapter=FailingAdapter(), machine=machine, clock=_clock())

    assert await loop.tick() == []
    pos = machine.position("SOL-PERP").single
    assert not pos.open
    assert pos.last_action_at is None

    # next tick re-evaluates from the same believed state
    loop.adapter = PaperExecutionAdapter()
    events = await loop.tick()
    assert [(e.market, e.action) for e in events] == [("SOL-PERP", "ENTER")]


@pytest.mark.asyncio
async def test_execution_error_mid_hand_over_keeps_acknowledged_exit():
    cfg = _cfg(markets=("SOL-PERP",), cross_venue_enabled=True, secondary_venue="dydx")
    primary = StubFeed("hyperliquid", {"SOL-PERP": 0.0014})
    secondary = StubFeed("dydx", {"SOL-PERP": 0.0014})
    loop = LiveLoop(cfg, primary, secondary, clock=_clock())

    first = await loop.tick()
    assert [(e.kind, e.action) for e in first] == [("SINGLE", "ENTER")]

    primary.rates["SOL-PERP"] = 0.002
    secondary.rates["SOL-PERP"] = -0.0015
    loop.adapter = FailingAdapter(fail_open=True)
    events = await loop.tick()

    assert [(e.kind, e.action) for e in events] == [("SINGLE", "EXIT")]
    state = loop.machine.position("SOL-PERP")
    assert not state.single.open
    assert not state.cross.open


@pytest.mark.asyncio
async def test_in_flight_tick_is_skipped():
    feed = BlockingFeed("hyperliquid", {"SOL-PERP": 0.0014, "ETH-PERP": 0.0})
    loop = LiveLoop(_cfg(), feed, clock=_clock())

    first = asyncio.create_task(loop.tick_safe())
    await feed.entered.wait()
    assert loop.status().in_flight is True

    assert await loop.tick_safe() is False
    feed.release.set()
    assert await first is True

    status = loop.status()
    assert status.tick_count == 1
    assert status.skipped_ticks == 1
    assert status.in_flight is False


@pytest.mark.asyncio
async def test_run_forever_fires_ticks_on_schedule():
    feed = StubFeed("hyperliquid", {"SOL-PERP": 0.0014, "ETH-PERP": 0.0})
    loop = LiveLoop(_cfg(), feed, clock=_clock())

    await loop.run_forever(max_ticks=3)

    status = loop.status()
    assert status.tick_count == 3
    assert status.running is False
    assert loop.machine.position("SOL-PERP").single.open


@pytest.mark.asyncio
async def test_cross_transition_opens_both_legs():
    cfg = _cfg(markets=("SOL-PERP",), cross_venue_enabled=True, secondary_venue="drift")
    machine = PositionStateMachine(cfg)
    plan = machine.plan(
        FundingSnapshot.from_hourly("hyperliquid", "SOL-PERP", 0.002, NOW),
        FundingSnapshot.from_hourly("drift", "SOL-PERP", -0.0015, NOW),
    )
    adapter = PaperExecutionAdapter()
    acks = await execute_transition(adapter, plan.transitions[0], cfg)

    assert [(a.intent.venue, a.intent.side) for a in acks] == [("hyperliquid", "SHORT"), ("drift", "LONG")]
    assert acks[0].order_id != acks[1].order_id
    assert all(a.intent.kind == "OPEN" for a in acks)


@pytest.mark.asyncio
async def test_transport_error_on_one_market_does_not_cost_the_others(monkeypatch):
    def handler(request):
        body = json.loads(request.content)
        if body["coin"] == "SOL":
            raise httpx.WriteTimeout("slow", request=request)
        rows = [{"coin": "ETH", "fundingRate": "0.00002", "time": NOW - 60_000}]
        return httpx.Response(200, json=[r for r in rows if body["startTime"] <= r["time"] <= body["endTime"]])

    monkeypatch.setattr(exchanges, "now_ms", lambda: NOW)
    client = JsonHttpClient(
        "https://venue.test",
        "hyperliquid",
        retry_attempts=1,
        backoff_base_seconds=0.0,
        transport=httpx.MockTransport(handler),
    )
    feed = HyperliquidFundingFeed(client)
    loop = LiveLoop(_cfg(), feed, clock=_clock())

    assert await loop.tick_safe() is True
    assert not loop.machine.position("SOL-PERP").single.open
    eth = loop.machine.position("ETH-PERP").single
    assert eth.open and eth.perp_side == "SHORT"
    await feed.aclose()


class BrokenFeed(StubFeed):
    async def fetch_funding(self, market):
        if market == "SOL-PERP":
            raise RuntimeError("payload changed shape")
        return await super().fetch_funding(market)


@pytest.mark.asyncio
async def test_unexpected_feed_exception_skips_only_that_market():
    feed = BrokenFeed("hyperliquid", {"SOL-PERP": 0.0014, "ETH-PERP": 0.0014})
    loop = LiveLoop(_cfg(), feed, clock=_clock())

    events = await loop.tick()

    assert [(e.market, e.action) for e in events] == [("ETH-PERP", "ENTER")]
    assert not loop.machine.position("SOL-PERP").single.open


@pytest.mark.asyncio
async def test_stop_ends_run_forever_after_in_flight_ticks():
    feed = StubFeed("hyperliquid", {"SOL-PERP": 0.0014, "ETH-PERP": 0.0})
    loop = LiveLoop(_cfg(), feed, clock=_clock())

    runner = asyncio.create_task(loop.run_forever())
    while loop.tick_count < 2:
        await asyncio.sleep(0.005)
    assert loop.status().running is True

    loop.stop()
    await asyncio.wait_for(runner, timeout=1.0)

    status = loop.status()
    assert status.running is False
    assert status.in_flight is False
    assert loop.machine.position("SOL-PERP").single.open


@pytest.mark.asyncio
async def test_stop_handlers_route_signals_to_loop():
    loop = LiveLoop(_cfg(), StubFeed("hyperliquid", {}), clock=_clock())
    installed = install_stop_handlers(loop)
    try:
        assert installed == [signal.SIGINT, signal.SIGTERM]
    finally:
        aio_loop = asyncio.get_running_loop()
        for sig in installed:
            aio_loop.remove_signal_handler(sig)
