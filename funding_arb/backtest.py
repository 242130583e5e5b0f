from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from .config import DEFAULT_CONFIG_PATH, BotConfig, load_bot_config
from .errors import FeedError
from .exchanges import build_feed, close_feeds, now_ms
from .logging_setup import setup_logger
from .models import MS_PER_HOUR, FundingSnapshot, PnlPoint, TradeEvent
from .report import load_series_csv, summarize, write_series_csv, write_trade_log
from .state import MarketState, PositionStateMachine
from .strategy import funding_sign


ALIGN_TOLERANCE_MS = 30 * 60 * 1000

SeriesByMarket = Mapping[str, Sequence[FundingSnapshot]]


@dataclass(frozen=True)
class BacktestResult:
    events: List[TradeEvent]
    pnl_series: List[PnlPoint]
    accrued_total: float
    realized_pnl_total: float


def align_secondary(
    primary: Sequence[FundingSnapshot],
    secondary: Sequence[FundingSnapshot],
    tolerance_ms: int = ALIGN_TOLERANCE_MS,
) -> List[Optional[FundingSnapshot]]:
    """
    For each primary snapshot (ts ascending) return the closest secondary
    snapshot, or None when nothing lies strictly within tolerance_ms.
    Both inputs must be sorted; the pointer only moves forward.
    """
    out: List[Optional[FundingSnapshot]] = []
    j = 0
    n = len(secondary)
    for p in primary:
        if n == 0:
            out.append(None)
            continue
        while j + 1 < n and abs(secondary[j + 1].ts - p.ts) <= abs(secondary[j].ts - p.ts):
            j += 1
        cand = secondary[j]
        out.append(cand if abs(cand.ts - p.ts) < tolerance_ms else None)
    return out


def step_accrual(
    state: MarketState,
    primary: FundingSnapshot,
    secondary: Optional[FundingSnapshot],
    notional_usd: float,
) -> float:
    """Funding earned for one step by whatever is open after the step's transitions."""
    pnl = 0.0
    if state.single.open and state.single.perp_side is not None:
        pnl += primary.hourly_pct / 100 * notional_usd * funding_sign(state.single.perp_side)
    if state.cross.open and state.cross.side_a is not None and state.cross.side_b is not None:
        hourly_b = secondary.hourly_pct if secondary is not None else 0.0
        pnl += primary.hourly_pct / 100 * notional_usd * funding_sign(state.cross.side_a)
        pnl += hourly_b / 100 * notional_usd * funding_sign(state.cross.side_b)
    return pnl


class BacktestSimulator:
    """
    Replays historical funding through one PositionStateMachine.

    The cumulative series sums continuous accrual only. Realized pnl on
    EXIT events is reported separately (realized_pnl_total) and never added
    to the cumulative total, so no hour is counted twice.
    """

    def __init__(self, cfg: BotConfig) -> None:
        self.cfg = cfg

    def run(
        self,
        primary_by_market: SeriesByMarket,
        secondary_by_market: Optional[SeriesByMarket] = None,
    ) -> BacktestResult:
        cfg = self.cfg
        machine = PositionStateMachine(cfg)
        events: List[TradeEvent] = []
        steps: List[Tuple[int, str, float]] = []

        for market in cfg.markets:
            primary = sorted(primary_by_market.get(market, ()), key=lambda s: s.ts)
            if not primary:
                logger.warning(f"BACKTEST_SKIP | market={market} reason=no primary series")
                continue

            aligned: List[Optional[FundingSnapshot]] = [None] * len(primary)
            if cfg.cross_active:
                secondary = sorted((secondary_by_market or {}).get(market, ()), key=lambda s: s.ts)
                aligned = align_secondary(primary, secondary)
                gaps = sum(1 for s in aligned if s is None)
                if gaps:
                    logger.debug(f"ALIGNMENT_GAP | market={market} gaps={gaps}/{len(primary)}")

            for snap, sec in zip(primary, aligned):
                plan = machine.step(snap, sec, now=snap.ts)
                events.extend(plan.events)
                steps.append((snap.ts, market, step_accrual(machine.position(market), snap, sec, cfg.notional_usd)))

        # stable: equal timestamps keep configured market order
        steps.sort(key=lambda x: x[0])

        pnl_series: List[PnlPoint] = []
        cumulative = 0.0
        for ts, market, step_pnl in steps:
            cumulative += step_pnl
            pnl_series.append(PnlPoint(ts=ts, market=market, step_pnl=step_pnl, cumulative_pnl=cumulative))

        realized = sum(e.pnl for e in events if e.action == "EXIT")
        return BacktestResult(
            events=events,
            pnl_series=pnl_series,
            accrued_total=cumulative,
            realized_pnl_total=realized,
        )


def run_backtest(
    cfg: BotConfig,
    primary_by_market: SeriesByMarket,
    secondary_by_market: Optional[SeriesByMarket] = None,
) -> BacktestResult:
    return BacktestSimulator(cfg).run(primary_by_market, secondary_by_market)


# --------------------------------------------------
# Collection from live feeds
# --------------------------------------------------

async def collect_series(
    cfg: BotConfig,
    days: float,
    end_ms: Optional[int] = None,
) -> Tuple[Dict[str, List[FundingSnapshot]], Dict[str, List[FundingSnapshot]]]:
    end = now_ms() if end_ms is None else int(end_ms)
    start = end - int(days * 24 * MS_PER_HOUR)

    primary_feed = build_feed(cfg.primary_venue, cfg)
    secondary_feed = build_feed(cfg.secondary_venue, cfg) if cfg.cross_active else None

    primary: Dict[str, List[FundingSnapshot]] = {}
    secondary: Dict[str, List[FundingSnapshot]] = {}
    try:
        for market in cfg.markets:
            try:
                primary[market] = await primary_feed.funding_history(market, start, end)
                if secondary_feed is not None:
                    secondary[market] = await secondary_feed.funding_history(market, start, end)
            except FeedError as e:
                logger.error(f"COLLECT_FAILED | market={market} venue={e.venue} err={e}")
                primary.pop(market, None)
                continue
            logger.info(
                f"COLLECTED | market={market} primary={len(primary[market])} "
                f"secondary={len(secondary.get(market, []))}"
            )
    finally:
        await close_feeds([primary_feed, secondary_feed])

    return primary, secondary


def save_collected(
    cfg: BotConfig,
    primary: Dict[str, List[FundingSnapshot]],
    secondary: Dict[str, List[FundingSnapshot]],
    primary_path: Optional[str] = None,
    secondary_path: Optional[str] = None,
) -> List[str]:
    """Write collected series so the same run can be replayed with --primary-csv/--secondary-csv."""
    written: List[str] = []
    if primary_path:
        write_series_csv(primary, primary_path)
        written.append(primary_path)
    if secondary_path:
        if not cfg.cross_active:
            logger.warning(f"SERIES_NOT_SAVED | path={secondary_path} reason=cross-venue mode is off")
        else:
            write_series_csv(secondary, secondary_path)
            written.append(secondary_path)
    for path in written:
        logger.info(f"SERIES_SAVED | path={path}")
    return written


def main() -> None:
    ap = argparse.ArgumentParser(description="Replay funding history through the carry strategy.")
    ap.add_argument("--config", default=None, help=f"YAML config (e.g. {DEFAULT_CONFIG_PATH})")
    ap.add_argument("--primary-csv", default=None, help="venue,market,hourly_pct,ts rows for the primary venue")
    ap.add_argument("--secondary-csv", default=None, help="same format, secondary venue")
    ap.add_argument("--days", type=float, default=30.0, help="lookback when collecting from feeds (default: 30)")
    ap.add_argument("--out", default="trade_log.csv", help="trade log path (default: trade_log.csv)")
    ap.add_argument("--save-series", default=None, help="write collected primary series to this CSV")
    ap.add_argument("--save-secondary-series", default=None, help="write collected secondary series to this CSV (cross mode)")
    args = ap.parse_args()

    setup_logger()
    cfg = load_bot_config(args.config)

    if args.primary_csv:
        primary = load_series_csv(args.primary_csv)
        secondary = load_series_csv(args.secondary_csv) if args.secondary_csv else {}
    else:
        if args.days <= 0:
            raise SystemExit("--days must be > 0")
        primary, secondary = asyncio.run(collect_series(cfg, args.days))
        save_collected(cfg, primary, secondary, args.save_series, args.save_secondary_series)

    logger.info(
        f"BACKTEST_START | markets={list(cfg.markets)} enter={cfg.enter_threshold_pct}% "
        f"exit={cfg.exit_pct}% cooldown={cfg.cooldown_seconds:g}s notional=${cfg.notional_usd:.2f} "
        f"cross={cfg.cross_active}"
    )
    result = run_backtest(cfg, primary, secondary)
    write_trade_log(result.events, args.out)
    summarize(result)


if __name__ == "__main__":
    main()
