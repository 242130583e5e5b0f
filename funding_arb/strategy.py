from __future__ import annotations

from dataclasses import dataclass

from .models import Side, SpotSide


DEFAULT_EPSILON = 1e-6

REASON_OPPOSITE = "opposite signs, receive both"
REASON_ONE_ZERO = "one side ~0, single receive"
REASON_SAME_SIGN = "same sign, receive larger pay smaller"


@dataclass(frozen=True)
class CrossDecision:
    net_apr_pct: float
    side_a: Side
    side_b: Side
    reason: str


def decide_receive_side(hourly_pct: float) -> Side:
    """Perp side that receives funding: shorts when funding >= 0, longs otherwise."""
    return "SHORT" if hourly_pct >= 0 else "LONG"


def spot_side_for_perp(perp_side: Side) -> SpotSide:
    # short perp is hedged by buying spot, long perp by selling it
    return "BUY" if perp_side == "SHORT" else "SELL"


def opposite_side(side: Side) -> Side:
    return "LONG" if side == "SHORT" else "SHORT"


def funding_sign(side: Side) -> int:
    """+1 when the side is paid by positive funding (SHORT), -1 for LONG."""
    return 1 if side == "SHORT" else -1


def _sgn(x: float, epsilon: float) -> int:
    if abs(x) <= epsilon:
        return 0
    return 1 if x > 0 else -1


def cross_decision(
    hourly_a: float,
    apr_a: float,
    hourly_b: float,
    apr_b: float,
    epsilon: float = DEFAULT_EPSILON,
) -> CrossDecision:
    """
    Pick perp sides on two venues and the combined APR they earn.

    - opposite signs      => receive on both, net = |A| + |B|
    - exactly one ~0      => receive where possible, net = max(|A|, |B|)
    - same sign / both ~0 => receive on the larger, pay on the smaller,
                             net = ||A| - |B||
    """
    s_a = _sgn(hourly_a, epsilon)
    s_b = _sgn(hourly_b, epsilon)
    abs_a = abs(apr_a)
    abs_b = abs(apr_b)

    if s_a != 0 and s_b != 0 and s_a != s_b:
        return CrossDecision(
            net_apr_pct=abs_a + abs_b,
            side_a=decide_receive_side(hourly_a),
            side_b=decide_receive_side(hourly_b),
            reason=REASON_OPPOSITE,
        )

    if (s_a == 0) != (s_b == 0):
        return CrossDecision(
            net_apr_pct=max(abs_a, abs_b),
            side_a=decide_receive_side(hourly_a),
            side_b=decide_receive_side(hourly_b),
            reason=REASON_ONE_ZERO,
        )

    if abs_a >= abs_b:
        side_a = decide_receive_side(hourly_a)
        side_b = opposite_side(side_a)
    else:
        side_b = decide_receive_side(hourly_b)
        side_a = opposite_side(side_b)

    return CrossDecision(
        net_apr_pct=abs(abs_a - abs_b),
        side_a=side_a,
        side_b=side_b,
        reason=REASON_SAME_SIGN,
    )
