"""
Execution price estimation by walking book depth.
"""

from __future__ import annotations

from typing import Iterable

from hedgearb.core.types import DepthLevel


def estimate(levels: Iterable[DepthLevel], target_notional: float) -> float:
    """
    Volume-weighted average fill price for `target_notional` of quote currency.

    Levels are consumed in the order given (best first). Returns 0.0 when
    nothing could be filled; callers must treat 0.0 as "no reliable price".
    """
    if not target_notional > 0:
        return 0.0
    remaining = float(target_notional)
    cost = 0.0
    filled = 0.0
    for level in levels:
        # Skipped rather than divided by.
        if not level.price > 0 or not level.volume > 0:
            continue
        wanted = remaining / level.price
        if wanted <= level.volume:
            # Level covers the rest; pin to zero instead of leaving float dust.
            cost += remaining
            filled += wanted
            remaining = 0.0
            break
        cost += level.price * level.volume
        filled += level.volume
        remaining -= level.price * level.volume
    if filled > 0:
        return cost / filled
    return 0.0
