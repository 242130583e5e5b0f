from __future__ import annotations

import csv
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from loguru import logger

from .errors import FeedError
from .models import FundingSnapshot, TradeEvent

if TYPE_CHECKING:
    from .backtest import BacktestResult


TRADE_LOG_HEADER = [
    "timestamp",
    "market",
    "kind",
    "action",
    "side_a",
    "side_b",
    "spot_side",
    "apr_a(%)",
    "apr_b(%)",
    "net_apr(%)",
    "pnl",
]

SERIES_HEADER = ["venue", "market", "hourly_pct", "ts"]


def iso_ms(ts_ms: int) -> str:
    """1704067200000 -> '2024-01-01T00:00:00.000Z'"""
    d = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return d.strftime("%Y-%m-%dT%H:%M:%S.") + f"{d.microsecond // 1000:03d}Z"


def _num(x: Optional[float]) -> str:
    return "" if x is None else f"{x:.2f}"


def format_row(ev: TradeEvent) -> List[str]:
    return [
        iso_ms(ev.ts),
        ev.market,
        ev.kind,
        ev.action,
        ev.side_a or "",
        ev.side_b or "",
        ev.spot_side or "",
        _num(ev.apr_a),
        _num(ev.apr_b),
        _num(ev.net_apr),
        _num(ev.pnl),
    ]


def write_trade_log(events: Iterable[TradeEvent], path: str | Path) -> Path:
    p = Path(path)
    if p.parent and not p.parent.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
    rows = 0
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.writer(f, lineterminator="\n")
        w.writerow(TRADE_LOG_HEADER)
        for ev in events:
            w.writerow(format_row(ev))
            rows += 1
    logger.info(f"TRADE_LOG_WRITTEN | path={p} rows={rows}")
    return p


@dataclass(frozen=True)
class BacktestSummary:
    total_pnl: float
    realized_pnl_total: float
    trades: int
    single_entries: int
    cross_entries: int
    avg_entry_net_apr: Optional[float]


def summarize(result: "BacktestResult") -> BacktestSummary:
    entries = [e for e in result.events if e.action in ("ENTER", "FLIP")]
    single_entries = sum(1 for e in entries if e.kind == "SINGLE")
    cross = [e for e in entries if e.kind == "CROSS"]
    nets = [e.net_apr for e in cross if e.net_apr is not None]

    summary = BacktestSummary(
        total_pnl=result.pnl_series[-1].cumulative_pnl if result.pnl_series else 0.0,
        realized_pnl_total=result.realized_pnl_total,
        trades=len(entries),
        single_entries=single_entries,
        cross_entries=len(cross),
        avg_entry_net_apr=(sum(nets) / len(nets)) if nets else None,
    )

    avg = "NA" if summary.avg_entry_net_apr is None else f"{summary.avg_entry_net_apr:.2f}%"
    logger.info(
        f"BACKTEST_SUMMARY | total_pnl=${summary.total_pnl:.2f} "
        f"realized_informational=${summary.realized_pnl_total:.2f} trades={summary.trades} "
        f"single={summary.single_entries} cross={summary.cross_entries} avg_entry_net_apr={avg}"
    )
    return summary


def load_series_csv(path: str | Path) -> Dict[str, List[FundingSnapshot]]:
    """
    Read `venue,market,hourly_pct,ts` rows into snapshots grouped by market.
    ts is milliseconds. Rows keep file order.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Series file not found: {p.resolve()}")

    out: Dict[str, List[FundingSnapshot]] = {}
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        missing = [c for c in SERIES_HEADER if c not in (reader.fieldnames or [])]
        if missing:
            raise FeedError(f"{p.name}: missing columns {missing}")

        for lineno, row in enumerate(reader, start=2):
            try:
                hourly = float(row["hourly_pct"])
                ts = int(float(row["ts"]))
            except (TypeError, ValueError):
                raise FeedError(f"{p.name}:{lineno}: bad row {row!r}") from None
            if not math.isfinite(hourly):
                raise FeedError(f"{p.name}:{lineno}: non-finite hourly_pct {row['hourly_pct']!r}")
            venue = (row["venue"] or "").strip().lower()
            market = (row["market"] or "").strip().upper()
            if not market:
                raise FeedError(f"{p.name}:{lineno}: empty market")
            out.setdefault(market, []).append(FundingSnapshot.from_hourly(venue, market, hourly, ts))

    logger.info(f"SERIES_LOADED | path={p} markets={list(out)} rows={sum(len(v) for v in out.values())}")
    return out


def write_series_csv(series_by_market: Dict[str, List[FundingSnapshot]], path: str | Path) -> Path:
    p = Path(path)
    if p.parent and not p.parent.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.writer(f, lineterminator="\n")
        w.writerow(SERIES_HEADER)
        for market, series in series_by_market.items():
            for s in series:
                w.writerow([s.venue, market, repr(s.hourly_pct), s.ts])
    return p
