"""
Synthetic long/short entry prices per venue.

A venue that publishes depth is priced by VWAP over its book; a venue that
publishes no depth at all falls back to a fixed spread around its last price.
Both quotes of one venue always come from the same mode. Depth that exists but
is stale, one-sided or too thin is an error for the cycle, not a reason to fall
back to the spread model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from hedgearb.core.errors import QuoteUnavailable, StaleDepthError
from hedgearb.core.types import DepthBook, QuoteMode, SyntheticQuote, is_valid_price
from hedgearb.market_data.price_store import MarketView
from hedgearb.strategy.vwap import estimate


@dataclass(frozen=True)
class QuoteBuilderConfig:
    target_notional: float
    half_spread: float = 0.0005
    depth_stale_after_sec: float = 5.0


class SyntheticQuoteBuilder:
    def __init__(self, config: QuoteBuilderConfig) -> None:
        self.config = config

    def build(self, view: MarketView, venue: str, now: Optional[float] = None) -> SyntheticQuote:
        book = view.depth_for(venue)
        if book is not None:
            return self._from_depth(venue, book, now if now is not None else view.taken_at)
        top = view.price(venue)
        if top is None or not is_valid_price(top):
            raise QuoteUnavailable(venue, "no_price")
        return self._from_spread(venue, top)

    def _from_depth(self, venue: str, book: DepthBook, now: float) -> SyntheticQuote:
        age = book.age(now)
        if age > self.config.depth_stale_after_sec:
            raise StaleDepthError(venue, f"depth_stale age={age:.2f}s")
        if not book.asks or not book.bids:
            raise StaleDepthError(venue, "depth_one_sided")
        long_px = estimate(book.asks, self.config.target_notional)
        short_px = estimate(book.bids, self.config.target_notional)
        if long_px <= 0 or short_px <= 0:
            raise StaleDepthError(venue, "depth_too_thin")
        return SyntheticQuote(venue=venue, long_price=long_px, short_price=short_px, mode=QuoteMode.DEPTH)

    def _from_spread(self, venue: str, top: float) -> SyntheticQuote:
        hs = self.config.half_spread
        return SyntheticQuote(
            venue=venue,
            long_price=top * (1 + hs),
            short_price=top * (1 - hs),
            mode=QuoteMode.SPREAD,
        )
