from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Set, Tuple

from loguru import logger

from .config import BotConfig
from .errors import ExecutionError
from .models import Side, SpotSide
from .state import Transition


@dataclass(frozen=True)
class OrderIntent:
    venue: str
    market: str
    side: Optional[Side]
    notional_usd: float
    kind: str   # "OPEN" | "CLOSE"
    reason: str
    ts_ms: int
    spot_side: Optional[SpotSide] = None


@dataclass(frozen=True)
class ExecutionAck:
    order_id: str
    intent: OrderIntent


class ExecutionAdapter(Protocol):
    async def open_position(
        self,
        market: str,
        side: Side,
        notional_usd: float,
        *,
        venue: str,
        spot_side: Optional[SpotSide] = None,
        reason: str = "",
        ts_ms: int = 0,
    ) -> ExecutionAck:
        ...

    async def close_position(
        self,
        market: str,
        *,
        venue: str,
        reason: str = "",
        ts_ms: int = 0,
    ) -> ExecutionAck:
        ...


class PaperExecutionAdapter:
    """
    No-exchange execution. Logs order intents and acknowledges every one.
    Identical intents are logged once to avoid spam.
    """

    def __init__(self) -> None:
        self.intents: List[OrderIntent] = []
        self._seen: Set[Tuple[str, str, str, Optional[str], int]] = set()
        self._next_id = 1

    def _key(self, intent: OrderIntent) -> Tuple[str, str, str, Optional[str], int]:
        return (intent.kind, intent.venue, intent.market, intent.side, intent.ts_ms)

    def _ack(self, intent: OrderIntent) -> ExecutionAck:
        self.intents.append(intent)
        order_id = f"paper-{self._next_id}"
        self._next_id += 1

        k = self._key(intent)
        if k not in self._seen:
            self._seen.add(k)
            spot = f" spot={intent.spot_side}" if intent.spot_side else ""
            logger.info(
                f"ORDER_INTENT | kind={intent.kind} venue={intent.venue} market={intent.market} "
                f"side={intent.side}{spot} notional=${intent.notional_usd:.2f} "
                f"ts={intent.ts_ms} id={order_id} | reason={intent.reason}"
            )
        return ExecutionAck(order_id=order_id, intent=intent)

    async def open_position(
        self,
        market: str,
        side: Side,
        notional_usd: float,
        *,
        venue: str,
        spot_side: Optional[SpotSide] = None,
        reason: str = "",
        ts_ms: int = 0,
    ) -> ExecutionAck:
        if notional_usd <= 0:
            raise ExecutionError(f"notional must be > 0, got {notional_usd}", market=market)
        return self._ack(OrderIntent(venue, market, side, float(notional_usd), "OPEN", reason, int(ts_ms), spot_side))

    async def close_position(
        self,
        market: str,
        *,
        venue: str,
        reason: str = "",
        ts_ms: int = 0,
    ) -> ExecutionAck:
        return self._ack(OrderIntent(venue, market, None, 0.0, "CLOSE", reason, int(ts_ms)))


async def execute_transition(
    adapter: ExecutionAdapter,
    transition: Transition,
    cfg: BotConfig,
) -> List[ExecutionAck]:
    """
    Translate one planned transition into adapter calls.

    SINGLE: one perp leg on the primary venue (spot hedge side carried along).
    CROSS: one perp leg per venue. EXIT closes, ENTER/FLIP opens; a flip
    arrives as EXIT followed by FLIP so FLIP never needs to close.
    """
    ev = transition.event
    acks: List[ExecutionAck] = []

    if transition.kind == "SINGLE":
        legs = [(cfg.primary_venue, ev.side_a, ev.spot_side)]
    else:
        legs = [(cfg.primary_venue, ev.side_a, None), (cfg.secondary_venue, ev.side_b, None)]

    for venue, side, spot_side in legs:
        if transition.action == "EXIT":
            acks.append(await adapter.close_position(ev.market, venue=venue, reason=ev.reason, ts_ms=ev.ts))
            continue
        if side is None:
            raise ExecutionError(f"missing side for {transition.kind} {transition.action} on {venue}", market=ev.market)
        acks.append(
            await adapter.open_position(
                ev.market,
                side,
                cfg.notional_usd,
                venue=venue,
                spot_side=spot_side,
                reason=ev.reason,
                ts_ms=ev.ts,
            )
        )

    return acks
