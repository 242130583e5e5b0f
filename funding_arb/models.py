from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional


# --- Types used across the project ---

Side = Literal["LONG", "SHORT"]
SpotSide = Literal["BUY", "SELL"]

Kind = Literal["SINGLE", "CROSS"]
Action = Literal["ENTER", "EXIT", "FLIP"]

HOURS_PER_YEAR = 24 * 365
MS_PER_HOUR = 3_600_000


# --- Funding observation used by strategy/state/backtest ---

@dataclass(frozen=True)
class FundingSnapshot:
    venue: str
    market: str
    hourly_pct: float  # % per hour, positive => longs pay shorts
    apr_pct: float     # hourly_pct * 24 * 365
    ts: int            # ms

    @staticmethod
    def from_hourly(venue: str, market: str, hourly_pct: float, ts: int) -> "FundingSnapshot":
        hourly = float(hourly_pct)
        return FundingSnapshot(
            venue=venue,
            market=market,
            hourly_pct=hourly,
            apr_pct=hourly * HOURS_PER_YEAR,
            ts=int(ts),
        )


# --- Per-market position state owned by the state machine ---

@dataclass(frozen=True)
class SingleVenuePosition:
    # one venue's perp + spot hedge
    open: bool = False
    perp_side: Optional[Side] = None
    spot_side: Optional[SpotSide] = None
    opened_at: Optional[int] = None
    last_action_at: Optional[int] = None
    last_apr_pct: float = 0.0


@dataclass(frozen=True)
class CrossVenuePosition:
    # perp on venue A against perp on venue B, no spot leg
    open: bool = False
    side_a: Optional[Side] = None
    side_b: Optional[Side] = None
    opened_at: Optional[int] = None
    last_action_at: Optional[int] = None
    last_net_apr_pct: float = 0.0


# --- Append-only trade log entry ---

@dataclass(frozen=True)
class TradeEvent:
    ts: int
    market: str
    kind: Kind
    action: Action
    side_a: Optional[Side] = None       # perp side (SINGLE) or venue A side (CROSS)
    side_b: Optional[Side] = None       # venue B side (CROSS only)
    spot_side: Optional[SpotSide] = None
    apr_a: Optional[float] = None
    apr_b: Optional[float] = None
    net_apr: Optional[float] = None
    pnl: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class PnlPoint:
    ts: int
    market: str
    step_pnl: float
    cumulative_pnl: float
