from __future__ import annotations

import argparse
import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from loguru import logger

from .config import DEFAULT_CONFIG_PATH, BotConfig, load_bot_config
from .errors import ConfigurationError, ExecutionError, FeedError
from .exchanges import FundingFeed, build_feed, close_feeds, now_ms
from .executor import ExecutionAdapter, PaperExecutionAdapter, execute_transition
from .logging_setup import setup_logger
from .models import FundingSnapshot, TradeEvent
from .state import MarketState, PositionStateMachine


def now_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def describe(state: MarketState) -> str:
    if state.cross.open:
        return f"CROSS {state.cross.side_a}/{state.cross.side_b} net={state.cross.last_net_apr_pct:+.2f}%"
    if state.single.open:
        return f"SINGLE perp={state.single.perp_side} spot={state.single.spot_side} apr={state.single.last_apr_pct:+.2f}%"
    return "FLAT"


@dataclass(frozen=True)
class LoopStatus:
    running: bool
    in_flight: bool
    tick_count: int
    skipped_ticks: int
    last_tick_at: Optional[int]
    positions: Dict[str, str]


class LiveLoop:
    """
    One tick = every configured market evaluated once, sequentially.

    Transitions are applied to the state machine only after the execution
    adapter acknowledged them; the first ExecutionError stops the rest of
    that market's step. A feed failure skips that market for this tick.
    """

    def __init__(
        self,
        cfg: BotConfig,
        primary_feed: FundingFeed,
        secondary_feed: Optional[FundingFeed] = None,
        adapter: Optional[ExecutionAdapter] = None,
        machine: Optional[PositionStateMachine] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if cfg.cross_active and secondary_feed is None:
            raise ConfigurationError("cross-venue mode needs a secondary feed")
        self.cfg = cfg
        self.primary_feed = primary_feed
        self.secondary_feed = secondary_feed if cfg.cross_active else None
        self.adapter: ExecutionAdapter = adapter if adapter is not None else PaperExecutionAdapter()
        self.machine = machine if machine is not None else PositionStateMachine(cfg)
        self.clock = clock

        self.tick_count = 0
        self.skipped_ticks = 0
        self.last_tick_at: Optional[int] = None
        self._in_flight = False
        self._running = False

    # -------------------------
    # per-tick logic
    # -------------------------

    async def _fetch(self, market: str) -> Optional[Tuple[FundingSnapshot, Optional[FundingSnapshot]]]:
        try:
            primary = await self.primary_feed.fetch_funding(market)
            secondary = None
            if self.secondary_feed is not None:
                secondary = await self.secondary_feed.fetch_funding(market)
        except FeedError as e:
            logger.error(f"FEED_FAILED | tick={self.tick_count} market={market} venue={e.venue} err={e}")
            return None
        except Exception as e:
            # a broken feed costs this market its tick, not the other markets
            logger.exception(f"FEED_FAILED | tick={self.tick_count} market={market} unexpected err={e!r}")
            return None
        return primary, secondary

    async def tick(self) -> List[TradeEvent]:
        self.tick_count += 1
        now = self.clock()
        self.last_tick_at = now
        events: List[TradeEvent] = []

        for market in self.cfg.markets:
            fetched = await self._fetch(market)
            if fetched is None:
                continue
            primary, secondary = fetched

            sec_txt = "NA" if secondary is None else f"{secondary.apr_pct:+.2f}%"
            logger.info(
                f"[{now_iso(now)}] [{market}] FUNDING | tick={self.tick_count} "
                f"{primary.venue}={primary.apr_pct:+.2f}% secondary={sec_txt}"
            )

            plan = self.machine.plan(primary, secondary, now=now)
            for t in plan.transitions:
                try:
                    acks = await execute_transition(self.adapter, t, self.cfg)
                except ExecutionError as e:
                    logger.error(
                        f"EXECUTION_FAILED | tick={self.tick_count} market={market} "
                        f"{t.kind} {t.action} err={e!r} | remaining transitions dropped"
                    )
                    break
                self.machine.apply(market, t)
                events.append(t.event)
                logger.debug(f"EXECUTION_ACK | market={market} ids={[a.order_id for a in acks]}")

        return events

    async def tick_safe(self) -> bool:
        """Run one tick unless another is still in flight. Returns False when skipped."""
        if self._in_flight:
            self.skipped_ticks += 1
            logger.warning(f"TICK_SKIPPED | previous tick still in flight | skipped={self.skipped_ticks}")
            return False

        self._in_flight = True
        try:
            await self.tick()
        except Exception as e:
            # never let one tick crash the scheduler
            logger.exception(f"TICK_FAILED | tick={self.tick_count} err={e!r}")
        finally:
            self._in_flight = False
        return True

    def status(self) -> LoopStatus:
        return LoopStatus(
            running=self._running,
            in_flight=self._in_flight,
            tick_count=self.tick_count,
            skipped_ticks=self.skipped_ticks,
            last_tick_at=self.last_tick_at,
            positions={m: describe(self.machine.position(m)) for m in self.cfg.markets},
        )

    # -------------------------
    # scheduler
    # -------------------------

    def stop(self) -> None:
        """Let run_forever() finish: no new ticks, in-flight ticks are awaited."""
        if self._running:
            logger.info(f"STOP_REQUESTED | tick={self.tick_count}")
        self._running = False

    async def run_forever(self, max_ticks: Optional[int] = None) -> None:
        """Fire tick_safe() every poll_seconds without waiting for the previous tick."""
        self._running = True
        pending: Set[asyncio.Task] = set()
        fired = 0
        try:
            while self._running and (max_ticks is None or fired < max_ticks):
                task = asyncio.create_task(self.tick_safe())
                pending.add(task)
                task.add_done_callback(pending.discard)
                fired += 1
                await asyncio.sleep(self.cfg.poll_seconds)
        finally:
            self._running = False
            if pending:
                await asyncio.gather(*pending)


# --------------------------------------------------
# Entry point
# --------------------------------------------------

def install_stop_handlers(live: LiveLoop) -> List[signal.Signals]:
    """Route SIGINT/SIGTERM to LiveLoop.stop(). Returns the signals handled."""
    aio_loop = asyncio.get_running_loop()
    installed: List[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            aio_loop.add_signal_handler(sig, live.stop)
        except NotImplementedError:
            # no loop signal handlers on Windows; Ctrl+C still raises KeyboardInterrupt
            continue
        installed.append(sig)
    return installed


async def _run(cfg: BotConfig, once: bool) -> None:
    primary_feed = build_feed(cfg.primary_venue, cfg)
    secondary_feed = build_feed(cfg.secondary_venue, cfg) if cfg.cross_active else None
    loop = LiveLoop(cfg, primary_feed, secondary_feed, adapter=PaperExecutionAdapter())
    try:
        if once:
            await loop.tick_safe()
        else:
            install_stop_handlers(loop)
            await loop.run_forever()
    finally:
        await close_feeds([primary_feed, secondary_feed])
        st = loop.status()
        logger.info(f"LOOP_STOPPED | ticks={st.tick_count} skipped={st.skipped_ticks}")
        for market, pos in st.positions.items():
            logger.info(f"STATUS | market={market} position={pos}")


def main() -> None:
    ap = argparse.ArgumentParser(description="Funding-rate carry bot (paper execution).")
    ap.add_argument("--config", default=None, help=f"YAML config (default: {DEFAULT_CONFIG_PATH} if present)")
    ap.add_argument("--once", action="store_true", help="run a single tick and exit")
    args = ap.parse_args()

    setup_logger()

    cfg_path = args.config
    if cfg_path is None and Path(DEFAULT_CONFIG_PATH).exists():
        cfg_path = DEFAULT_CONFIG_PATH
    cfg = load_bot_config(cfg_path)
    logger.info(f"CONFIG_LOADED | path={cfg_path or 'env/defaults'}")

    if not cfg.paper_mode:
        raise SystemExit("Only paper execution is available: set FRA_PAPER=1 or runtime.paper: true")

    logger.info(
        f"START | markets={list(cfg.markets)} primary={cfg.primary_venue} "
        f"secondary={cfg.secondary_venue if cfg.cross_active else 'none'} "
        f"enter={cfg.enter_threshold_pct}% exit={cfg.exit_pct}% cooldown={cfg.cooldown_seconds:g}s "
        f"notional=${cfg.notional_usd:.2f} poll={cfg.poll_seconds:g}s paper={cfg.paper_mode}"
    )

    try:
        asyncio.run(_run(cfg, args.once))
    except KeyboardInterrupt:
        logger.info("Stopped by user")


if __name__ == "__main__":
    main()
