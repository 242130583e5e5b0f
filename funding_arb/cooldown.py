from __future__ import annotations

from typing import Iterable, Optional


def is_cooling(last_action_at: Optional[int], now: int, cooldown_seconds: float) -> bool:
    """True while less than cooldown_seconds have passed since the last action (ms clock)."""
    if last_action_at is None:
        return False
    return (now - last_action_at) < cooldown_seconds * 1000


def latest_action(*timestamps: Optional[int]) -> Optional[int]:
    seen: Iterable[int] = [t for t in timestamps if t is not None]
    return max(seen, default=None)
