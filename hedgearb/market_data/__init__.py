"""
Market data package: venue feeds and the shared price/depth store.
"""

from hedgearb.market_data.feeds import (
    BinanceDepthCodec,
    BinanceTradeCodec,
    BitmartDepthCodec,
    BitmartTradeCodec,
    FeedAdapter,
    VenueCodec,
)
from hedgearb.market_data.price_store import MarketView, PriceStore, UpdateResult

__all__ = [
    "BinanceDepthCodec",
    "BinanceTradeCodec",
    "BitmartDepthCodec",
    "BitmartTradeCodec",
    "FeedAdapter",
    "VenueCodec",
    "MarketView",
    "PriceStore",
    "UpdateResult",
]
