"""
Market data and position types shared across the engine.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Tuple

from hedgearb.core.errors import InvariantViolation


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def inverse(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


class Phase(str, Enum):
    IDLE = "IDLE"
    OPEN = "OPEN"


class QuoteMode(str, Enum):
    DEPTH = "depth"
    # Fixed-spread approximation used only when a venue publishes no depth.
    SPREAD = "spread"


def is_valid_price(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


@dataclass(frozen=True)
class DepthLevel:
    price: float
    volume: float


def _clean_levels(levels: Iterable[Tuple[float, float] | DepthLevel], descending: bool) -> Tuple[DepthLevel, ...]:
    cleaned = []
    for lvl in levels:
        if isinstance(lvl, DepthLevel):
            px, vol = lvl.price, lvl.volume
        else:
            px, vol = lvl[0], lvl[1]
        px = float(px)
        vol = float(vol)
        if not is_valid_price(px) or not math.isfinite(vol) or vol < 0:
            continue
        cleaned.append(DepthLevel(px, vol))
    cleaned.sort(key=lambda l: l.price, reverse=descending)
    return tuple(cleaned)


@dataclass(frozen=True)
class DepthBook:
    """
    Depth snapshot for one venue, best price first on each side.

    Asks are kept ascending and bids descending; the VWAP walk relies on it.
    Use `DepthBook.build` to sort and sanitize raw levels.
    """
    venue: str
    asks: Tuple[DepthLevel, ...]
    bids: Tuple[DepthLevel, ...]
    observed_at: float

    @classmethod
    def build(
        cls,
        venue: str,
        asks: Iterable[Tuple[float, float] | DepthLevel],
        bids: Iterable[Tuple[float, float] | DepthLevel],
        observed_at: Optional[float] = None,
    ) -> "DepthBook":
        return cls(
            venue=venue,
            asks=_clean_levels(asks, descending=False),
            bids=_clean_levels(bids, descending=True),
            observed_at=observed_at if observed_at is not None else time.time(),
        )

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.observed_at

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None


@dataclass(frozen=True)
class PriceUpdate:
    venue: str
    price: float


@dataclass(frozen=True)
class DepthUpdate:
    venue: str
    asks: Tuple[Tuple[float, float], ...]
    bids: Tuple[Tuple[float, float], ...]
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class SyntheticQuote:
    venue: str
    long_price: float
    short_price: float
    mode: QuoteMode


@dataclass(frozen=True)
class PositionState:
    """
    The single tagged position record.

    OPEN requires every optional field; IDLE requires none of them.
    """
    phase: Phase = Phase.IDLE
    entry_gap: Optional[float] = None
    leg_a_side: Optional[Side] = None
    leg_b_side: Optional[Side] = None
    opened_at: Optional[float] = None
    leg_a_qty: Optional[float] = None
    leg_b_qty: Optional[float] = None

    def __post_init__(self) -> None:
        described = [
            self.entry_gap, self.leg_a_side, self.leg_b_side,
            self.opened_at, self.leg_a_qty, self.leg_b_qty,
        ]
        if self.phase is Phase.OPEN and any(v is None for v in described):
            raise InvariantViolation("OPEN position missing entry fields")
        if self.phase is Phase.IDLE and any(v is not None for v in described):
            raise InvariantViolation("IDLE position carries entry fields")
        if self.phase is Phase.OPEN and self.leg_a_side == self.leg_b_side:
            raise InvariantViolation("both legs on the same side")

    @classmethod
    def idle(cls) -> "PositionState":
        return cls()

    @property
    def is_open(self) -> bool:
        return self.phase is Phase.OPEN

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "entry_gap": self.entry_gap,
            "leg_a_side": self.leg_a_side.value if self.leg_a_side else None,
            "leg_b_side": self.leg_b_side.value if self.leg_b_side else None,
            "opened_at": self.opened_at,
            "leg_a_qty": self.leg_a_qty,
            "leg_b_qty": self.leg_b_qty,
        }


@dataclass(frozen=True)
class Fill:
    venue: str
    side: Side
    quantity: float
    avg_price: float
    order_id: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)
