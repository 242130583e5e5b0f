from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple, Union

from loguru import logger

from .config import BotConfig
from .cooldown import is_cooling, latest_action
from .models import (
    HOURS_PER_YEAR,
    MS_PER_HOUR,
    Action,
    CrossVenuePosition,
    FundingSnapshot,
    Kind,
    SingleVenuePosition,
    TradeEvent,
)
from .strategy import CrossDecision, cross_decision, decide_receive_side, spot_side_for_perp


REASON_SUPERSEDED = "superseded by cross"

Position = Union[SingleVenuePosition, CrossVenuePosition]


@dataclass(frozen=True)
class MarketState:
    single: SingleVenuePosition = field(default_factory=SingleVenuePosition)
    cross: CrossVenuePosition = field(default_factory=CrossVenuePosition)


@dataclass(frozen=True)
class Transition:
    """One state change plus the event it emits. `position` is the state after it."""
    kind: Kind
    action: Action
    position: Position
    event: TradeEvent


@dataclass(frozen=True)
class StepPlan:
    market: str
    ts: int
    transitions: Tuple[Transition, ...]
    decision: Optional[CrossDecision]
    suppressed: Tuple[str, ...]

    @property
    def events(self) -> List[TradeEvent]:
        return [t.event for t in self.transitions]


class PositionStore:
    """Per-market single/cross positions for one run. Process lifetime only."""

    def __init__(self) -> None:
        self._markets: Dict[str, MarketState] = {}

    def get(self, market: str) -> MarketState:
        state = self._markets.get(market)
        if state is None:
            state = MarketState()
            self._markets[market] = state
        return state

    def set_single(self, market: str, position: SingleVenuePosition) -> None:
        self._markets[market] = replace(self.get(market), single=position)

    def set_cross(self, market: str, position: CrossVenuePosition) -> None:
        self._markets[market] = replace(self.get(market), cross=position)


def realized_pnl(last_apr_pct: float, apr_now_pct: float, opened_at: Optional[int], now: int, notional_usd: float) -> float:
    """Funding earned over the holding period, from the average of entry and exit APR."""
    if opened_at is None:
        return 0.0
    hours_held = (now - opened_at) / MS_PER_HOUR
    avg_apr = (last_apr_pct + apr_now_pct) / 2
    return avg_apr / 100 * (hours_held / HOURS_PER_YEAR) * notional_usd


class PositionStateMachine:
    """
    Single-venue (perp + spot hedge) and cross-venue (perp vs perp) position
    logic for every configured market.

    plan() is side-effect free; apply() commits one transition; step() does both.
    Drivers (backtest, live loop) share one instance per run.
    """

    def __init__(self, cfg: BotConfig, store: Optional[PositionStore] = None) -> None:
        self.cfg = cfg
        self.store = store if store is not None else PositionStore()

    def position(self, market: str) -> MarketState:
        return self.store.get(market)

    # -------------------------
    # planning
    # -------------------------

    def plan(
        self,
        primary: FundingSnapshot,
        secondary: Optional[FundingSnapshot] = None,
        now: Optional[int] = None,
    ) -> StepPlan:
        cfg = self.cfg
        market = primary.market
        now = primary.ts if now is None else int(now)

        state = self.store.get(market)
        single, cross = state.single, state.cross
        cooling = is_cooling(
            latest_action(single.last_action_at, cross.last_action_at),
            now,
            cfg.cooldown_seconds,
        )

        transitions: List[Transition] = []
        suppressed: List[str] = []
        decision: Optional[CrossDecision] = None
        cross_engaged = False

        # ---------- CROSS ----------
        if cfg.cross_active:
            hourly_b = secondary.hourly_pct if secondary is not None else 0.0
            apr_b = secondary.apr_pct if secondary is not None else 0.0
            decision = cross_decision(primary.hourly_pct, primary.apr_pct, hourly_b, apr_b, cfg.epsilon)
            net = decision.net_apr_pct

            def cross_event(action: Action, pos: CrossVenuePosition, pnl: float, reason: str) -> TradeEvent:
                return TradeEvent(
                    ts=now,
                    market=market,
                    kind="CROSS",
                    action=action,
                    side_a=pos.side_a,
                    side_b=pos.side_b,
                    apr_a=primary.apr_pct,
                    apr_b=apr_b,
                    net_apr=net,
                    pnl=pnl,
                    reason=reason,
                )

            def open_cross() -> CrossVenuePosition:
                return CrossVenuePosition(
                    open=True,
                    side_a=decision.side_a,
                    side_b=decision.side_b,
                    opened_at=now,
                    last_action_at=now,
                    last_net_apr_pct=net,
                )

            if not cross.open:
                if net >= cfg.enter_threshold_pct:
                    if cooling:
                        suppressed.append("CROSS_ENTER")
                    else:
                        if single.open:
                            single, t = self._exit_single(single, primary, now, REASON_SUPERSEDED)
                            transitions.append(t)
                        cross = open_cross()
                        transitions.append(Transition("CROSS", "ENTER", cross, cross_event("ENTER", cross, 0.0, decision.reason)))
                        cross_engaged = True
            else:
                flip_needed = cross.side_a != decision.side_a or cross.side_b != decision.side_b
                should_close = net <= cfg.exit_pct or (flip_needed and net < cfg.enter_threshold_pct)
                should_flip = flip_needed and net >= cfg.enter_threshold_pct

                if (should_close or should_flip) and cooling:
                    suppressed.append("CROSS_FLIP" if should_flip else "CROSS_EXIT")
                    cross_engaged = True
                elif should_close or should_flip:
                    pnl = realized_pnl(cross.last_net_apr_pct, net, cross.opened_at, now, cfg.notional_usd)
                    closed = replace(cross, open=False, last_action_at=now, last_net_apr_pct=net)
                    exit_reason = "flip" if should_flip else ("below exit" if net <= cfg.exit_pct else "sides changed below enter")
                    transitions.append(Transition("CROSS", "EXIT", closed, cross_event("EXIT", cross, pnl, exit_reason)))
                    cross = closed
                    if should_flip:
                        cross = open_cross()
                        transitions.append(Transition("CROSS", "FLIP", cross, cross_event("FLIP", cross, 0.0, decision.reason)))
                        cross_engaged = True
                else:
                    cross_engaged = True

        # ---------- SINGLE ----------
        if not cross_engaged:
            abs_apr = abs(primary.apr_pct)
            desired_perp = decide_receive_side(primary.hourly_pct)
            desired_spot = spot_side_for_perp(desired_perp)

            def open_single() -> SingleVenuePosition:
                return SingleVenuePosition(
                    open=True,
                    perp_side=desired_perp,
                    spot_side=desired_spot,
                    opened_at=now,
                    last_action_at=now,
                    last_apr_pct=primary.apr_pct,
                )

            def single_event(action: Action, pos: SingleVenuePosition, reason: str) -> TradeEvent:
                return TradeEvent(
                    ts=now,
                    market=market,
                    kind="SINGLE",
                    action=action,
                    side_a=pos.perp_side,
                    spot_side=pos.spot_side,
                    apr_a=primary.apr_pct,
                    pnl=0.0,
                    reason=reason,
                )

            if not single.open:
                if abs_apr >= cfg.enter_threshold_pct:
                    if cooling:
                        suppressed.append("SINGLE_ENTER")
                    else:
                        single = open_single()
                        transitions.append(Transition("SINGLE", "ENTER", single, single_event("ENTER", single, "above enter")))
            else:
                signal_flipped = desired_perp != single.perp_side
                should_close = abs_apr <= cfg.exit_pct or (signal_flipped and abs_apr < cfg.enter_threshold_pct)
                should_flip = signal_flipped and abs_apr >= cfg.enter_threshold_pct

                if (should_close or should_flip) and cooling:
                    suppressed.append("SINGLE_FLIP" if should_flip else "SINGLE_EXIT")
                elif should_close or should_flip:
                    exit_reason = "flip" if should_flip else ("below exit" if abs_apr <= cfg.exit_pct else "side changed below enter")
                    single, t = self._exit_single(single, primary, now, exit_reason)
                    transitions.append(t)
                    if should_flip:
                        single = open_single()
                        transitions.append(Transition("SINGLE", "FLIP", single, single_event("FLIP", single, "signal flipped")))

        for what in suppressed:
            logger.info(
                f"COOLDOWN_ACTIVE | market={market} suppressed={what} "
                f"cooldown_sec={cfg.cooldown_seconds:g} ts={now}"
            )

        return StepPlan(
            market=market,
            ts=now,
            transitions=tuple(transitions),
            decision=decision,
            suppressed=tuple(suppressed),
        )

    def _exit_single(
        self,
        single: SingleVenuePosition,
        primary: FundingSnapshot,
        now: int,
        reason: str,
    ) -> Tuple[SingleVenuePosition, Transition]:
        pnl = realized_pnl(abs(single.last_apr_pct), abs(primary.apr_pct), single.opened_at, now, self.cfg.notional_usd)
        closed = replace(single, open=False, last_action_at=now, last_apr_pct=primary.apr_pct)
        event = TradeEvent(
            ts=now,
            market=primary.market,
            kind="SINGLE",
            action="EXIT",
            side_a=single.perp_side,
            spot_side=single.spot_side,
            apr_a=primary.apr_pct,
            pnl=pnl,
            reason=reason,
        )
        return closed, Transition("SINGLE", "EXIT", closed, event)

    # -------------------------
    # commit
    # -------------------------

    def apply(self, market: str, transition: Transition) -> None:
        if isinstance(transition.position, CrossVenuePosition):
            self.store.set_cross(market, transition.position)
        else:
            self.store.set_single(market, transition.position)

        state = self.store.get(market)
        if state.single.open and state.cross.open:
            raise RuntimeError(f"single and cross positions both open for {market}")

        ev = transition.event
        logger.info(
            f"[{ev.market}] {ev.kind} {ev.action} | side_a={ev.side_a} side_b={ev.side_b} "
            f"spot={ev.spot_side} apr_a={_fmt(ev.apr_a)} apr_b={_fmt(ev.apr_b)} "
            f"net={_fmt(ev.net_apr)} pnl={ev.pnl:.4f} | reason={ev.reason}"
        )

    def step(
        self,
        primary: FundingSnapshot,
        secondary: Optional[FundingSnapshot] = None,
        now: Optional[int] = None,
    ) -> StepPlan:
        plan = self.plan(primary, secondary, now=now)
        for t in plan.transitions:
            self.apply(plan.market, t)
        return plan


def _fmt(x: Optional[float]) -> str:
    return "NA" if x is None else f"{x:+.2f}%"
