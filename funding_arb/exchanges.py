from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx
from loguru import logger

from .config import BotConfig
from .errors import FeedError
from .http_client import JsonHttpClient
from .models import MS_PER_HOUR, FundingSnapshot


HYPERLIQUID_URL = "https://api.hyperliquid.xyz"
DYDX_INDEXER_URL = "https://indexer.dydx.trade"
DRIFT_DATA_URL = "https://data.api.drift.trade"

LATEST_LOOKBACK_HOURS = 24


class FundingFeed(Protocol):
    venue: str

    async def fetch_funding(self, market: str) -> FundingSnapshot:
        ...

    async def funding_history(self, market: str, start_ms: int, end_ms: int) -> List[FundingSnapshot]:
        ...

    async def aclose(self) -> None:
        ...


def now_ms() -> int:
    return int(time.time() * 1000)


def base_asset(market: str) -> str:
    m = market.strip().upper()
    for suffix in ("-PERP", "-USD", "-USDC"):
        if m.endswith(suffix):
            return m[: -len(suffix)]
    return m


def _finite(value: Any, what: str, venue: str, market: str) -> float:
    try:
        x = float(value)
    except (TypeError, ValueError):
        raise FeedError(f"bad {what}={value!r}", venue=venue, market=market) from None
    if not math.isfinite(x):
        raise FeedError(f"non-finite {what}={value!r}", venue=venue, market=market)
    return x


def _latest(series: List[FundingSnapshot], venue: str, market: str) -> FundingSnapshot:
    if not series:
        raise FeedError("no funding records returned", venue=venue, market=market)
    return max(series, key=lambda s: s.ts)


def _iso_to_ms(text: str) -> int:
    return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp() * 1000)


def _ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


# --------------------------------------------------
# Hyperliquid
# --------------------------------------------------

class HyperliquidFundingFeed:
    """Hyperliquid /info fundingHistory. fundingRate is a fraction per hour."""

    venue = "hyperliquid"

    def __init__(self, client: JsonHttpClient) -> None:
        self.client = client

    def coin(self, market: str) -> str:
        return base_asset(market)

    async def funding_history(self, market: str, start_ms: int, end_ms: int) -> List[FundingSnapshot]:
        coin = self.coin(market)
        out: List[FundingSnapshot] = []
        cursor = int(start_ms)

        # time-range endpoint is paginated: advance startTime past the last record
        while cursor <= end_ms:
            payload = {
                "type": "fundingHistory",
                "coin": coin,
                "startTime": cursor,
                "endTime": int(end_ms),
            }
            data = await self.client.post_json("/info", payload)
            if data is None:
                raise FeedError("fundingHistory request failed", venue=self.venue, market=market)
            if not isinstance(data, list):
                raise FeedError(f"unexpected fundingHistory type={type(data).__name__}", venue=self.venue, market=market)
            if not data:
                break

            page = [self._parse(rec, market) for rec in data]
            out.extend(page)
            last_t = max(s.ts for s in page)
            if last_t < cursor:
                break
            cursor = last_t + 1

        return out

    def _parse(self, rec: Any, market: str) -> FundingSnapshot:
        if not isinstance(rec, dict):
            raise FeedError(f"malformed record {rec!r}", venue=self.venue, market=market)
        rate = _finite(rec.get("fundingRate"), "fundingRate", self.venue, market)
        t_ms = int(_finite(rec.get("time"), "time", self.venue, market))
        return FundingSnapshot.from_hourly(self.venue, market, rate * 100, t_ms)

    async def fetch_funding(self, market: str) -> FundingSnapshot:
        end = now_ms()
        series = await self.funding_history(market, end - LATEST_LOOKBACK_HOURS * MS_PER_HOUR, end)
        return _latest(series, self.venue, market)

    async def aclose(self) -> None:
        await self.client.aclose()


# --------------------------------------------------
# dYdX v4 indexer
# --------------------------------------------------

class DydxFundingFeed:
    """dYdX v4 indexer historicalFunding. `rate` is a fraction per hour."""

    venue = "dydx"
    page_limit = 100

    def __init__(self, client: JsonHttpClient, ticker_overrides: Optional[Dict[str, str]] = None) -> None:
        self.client = client
        self.ticker_overrides = {k.upper(): v for k, v in (ticker_overrides or {}).items()}

    def ticker(self, market: str) -> str:
        base = base_asset(market)
        return self.ticker_overrides.get(base) or f"{base}-USD"

    async def _page(self, market: str, before_ms: Optional[int]) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": self.page_limit}
        if before_ms is not None:
            params["effectiveBeforeOrAt"] = _ms_to_iso(before_ms)
        data = await self.client.get_json(f"/v4/historicalFunding/{self.ticker(market)}", params=params)
        if data is None:
            raise FeedError("historicalFunding request failed", venue=self.venue, market=market)
        rows = data.get("historicalFunding") if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise FeedError("unexpected historicalFunding shape", venue=self.venue, market=market)
        return rows

    def _parse(self, rec: Any, market: str) -> FundingSnapshot:
        if not isinstance(rec, dict) or "effectiveAt" not in rec:
            raise FeedError(f"malformed record {rec!r}", venue=self.venue, market=market)
        rate = _finite(rec.get("rate"), "rate", self.venue, market)
        try:
            t_ms = _iso_to_ms(str(rec["effectiveAt"]))
        except ValueError:
            raise FeedError(f"bad effectiveAt={rec['effectiveAt']!r}", venue=self.venue, market=market) from None
        return FundingSnapshot.from_hourly(self.venue, market, rate * 100, t_ms)

    async def funding_history(self, market: str, start_ms: int, end_ms: int) -> List[FundingSnapshot]:
        out: List[FundingSnapshot] = []
        before: Optional[int] = int(end_ms)

        # newest first: walk backwards until the page predates start_ms
        while True:
            rows = await self._page(market, before)
            if not rows:
                break
            page = [self._parse(rec, market) for rec in rows]
            out.extend(s for s in page if start_ms <= s.ts <= end_ms)
            oldest = min(s.ts for s in page)
            if oldest <= start_ms or len(rows) < self.page_limit or (before is not None and oldest >= before):
                break
            before = oldest - 1

        out.sort(key=lambda s: s.ts)
        return out

    async def fetch_funding(self, market: str) -> FundingSnapshot:
        rows = await self._page(market, None)
        return _latest([self._parse(rec, market) for rec in rows[:1]], self.venue, market)

    async def aclose(self) -> None:
        await self.client.aclose()


# --------------------------------------------------
# Drift data API
# --------------------------------------------------

class DriftFundingFeed:
    """
    Drift data API fundingRates. fundingRate is quote/base at 1e9 precision,
    oraclePriceTwap at 1e6; hourly % = rate / twap * 100.
    """

    venue = "drift"

    def __init__(self, client: JsonHttpClient) -> None:
        self.client = client

    async def _records(self, market: str) -> List[Dict[str, Any]]:
        data = await self.client.get_json("/fundingRates", params={"marketName": market.upper()})
        if data is None:
            raise FeedError("fundingRates request failed", venue=self.venue, market=market)
        rows = data.get("fundingRates") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise FeedError("unexpected fundingRates shape", venue=self.venue, market=market)
        return rows

    def _parse(self, rec: Any, market: str) -> FundingSnapshot:
        if not isinstance(rec, dict):
            raise FeedError(f"malformed record {rec!r}", venue=self.venue, market=market)
        funding_rate = _finite(rec.get("fundingRate"), "fundingRate", self.venue, market) / 1e9
        twap = _finite(rec.get("oraclePriceTwap"), "oraclePriceTwap", self.venue, market) / 1e6
        ts_s = _finite(rec.get("ts"), "ts", self.venue, market)
        hourly_pct = (funding_rate / twap) * 100 if twap else 0.0
        return FundingSnapshot.from_hourly(self.venue, market, hourly_pct, int(ts_s * 1000))

    async def funding_history(self, market: str, start_ms: int, end_ms: int) -> List[FundingSnapshot]:
        series = [self._parse(rec, market) for rec in await self._records(market)]
        return sorted((s for s in series if start_ms <= s.ts <= end_ms), key=lambda s: s.ts)

    async def fetch_funding(self, market: str) -> FundingSnapshot:
        rows = await self._records(market)
        return _latest([self._parse(rec, market) for rec in rows], self.venue, market)

    async def aclose(self) -> None:
        await self.client.aclose()


# --------------------------------------------------
# Factory
# --------------------------------------------------

_BASE_URLS = {
    "hyperliquid": HYPERLIQUID_URL,
    "dydx": DYDX_INDEXER_URL,
    "drift": DRIFT_DATA_URL,
}


def build_feed(
    venue: str,
    cfg: BotConfig,
    base_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FundingFeed:
    if venue not in _BASE_URLS:
        raise ValueError(f"unknown venue {venue!r}")
    client = JsonHttpClient(
        base_url=base_url or _BASE_URLS[venue],
        name=venue,
        timeout_seconds=cfg.request_timeout_seconds,
        retry_attempts=cfg.retry_attempts,
        backoff_base_seconds=cfg.backoff_base_seconds,
        transport=transport,
    )
    logger.info(f"FEED_READY | venue={venue} base_url={client.base_url}")
    if venue == "hyperliquid":
        return HyperliquidFundingFeed(client)
    if venue == "dydx":
        venues = cfg.extra.get("venues")
        overrides = venues.get("dydx_tickers") if isinstance(venues, dict) else None
        return DydxFundingFeed(client, ticker_overrides=overrides)
    return DriftFundingFeed(client)


async def close_feeds(feeds: Iterable[Optional[FundingFeed]]) -> None:
    for feed in feeds:
        if feed is not None:
            await feed.aclose()
