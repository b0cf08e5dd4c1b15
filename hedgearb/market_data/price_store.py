"""
Lock-guarded store of top-of-book prices and depth books per venue.

Writers (one task per venue feed) and the evaluation path share a single
lock so a market view always pairs both venues as of the same instant. The
lock is only held for dict writes and shallow copies, never across I/O.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from hedgearb.core.types import DepthBook, DepthUpdate, is_valid_price

log = logging.getLogger("hedgearb")

PriceSnapshot = Mapping[str, float]


class UpdateResult(Enum):
    STORED = "stored"
    REJECTED = "rejected"


@dataclass(frozen=True)
class MarketView:
    """Consistent copy of every venue's price and depth."""
    prices: PriceSnapshot
    depth: Mapping[str, DepthBook]
    taken_at: float

    def price(self, venue: str) -> Optional[float]:
        return self.prices.get(venue)

    def depth_for(self, venue: str) -> Optional[DepthBook]:
        return self.depth.get(venue)


class PriceStore:
    def __init__(self) -> None:
        self._prices: Dict[str, float] = {}
        self._depth: Dict[str, DepthBook] = {}
        self._updated_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def upsert(self, venue: str, price: float) -> UpdateResult:
        if not is_valid_price(price):
            log.warning(json.dumps({"event": "price_rejected", "venue": venue, "price": repr(price)}))
            return UpdateResult.REJECTED
        with self._lock:
            self._prices[venue] = float(price)
            self._updated_at[venue] = time.time()
        return UpdateResult.STORED

    def upsert_depth(self, update: DepthUpdate) -> UpdateResult:
        book = DepthBook.build(update.venue, update.asks, update.bids, update.timestamp)
        if not book.asks and not book.bids:
            log.warning(json.dumps({"event": "depth_rejected", "venue": update.venue, "reason": "no_valid_levels"}))
            return UpdateResult.REJECTED
        with self._lock:
            self._depth[update.venue] = book
        return UpdateResult.STORED

    def snapshot(self) -> PriceSnapshot:
        with self._lock:
            copy = dict(self._prices)
        return MappingProxyType(copy)

    def depth(self, venue: str) -> Optional[DepthBook]:
        with self._lock:
            return self._depth.get(venue)

    def last_update(self, venue: str) -> Optional[float]:
        with self._lock:
            return self._updated_at.get(venue)

    def market_view(self) -> MarketView:
        with self._lock:
            return self._view_locked()

    def try_market_view(self) -> Optional[MarketView]:
        """Non-blocking variant for monitors: None when a writer holds the lock."""
        if not self._lock.acquire(blocking=False):
            return None
        try:
            return self._view_locked()
        finally:
            self._lock.release()

    def _view_locked(self) -> MarketView:
        # DepthBook is frozen, so copying the mapping is enough.
        return MarketView(
            prices=MappingProxyType(dict(self._prices)),
            depth=MappingProxyType(dict(self._depth)),
            taken_at=time.time(),
        )
