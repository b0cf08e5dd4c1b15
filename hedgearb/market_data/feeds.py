"""
Venue websocket feeds.

One FeedAdapter runs the connect/subscribe/read/reconnect loop; a VenueCodec
per venue and message shape knows how to subscribe and how to turn a raw
frame into PriceUpdate/DepthUpdate values. Malformed frames raise FeedError
from the codec and are dropped by the adapter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Callable, Iterable, List, Optional, Protocol, Tuple, Union

import websockets

from hedgearb.core.errors import FeedError
from hedgearb.core.event_bus import EventBus, EventType
from hedgearb.core.types import DepthUpdate, PriceUpdate

log = logging.getLogger("hedgearb")

FeedUpdate = Union[PriceUpdate, DepthUpdate]


class VenueCodec(Protocol):
    venue: str

    def subscribe_messages(self) -> List[str]:
        ...

    def parse(self, raw: Union[str, bytes]) -> Any:
        ...

    def normalize(self, payload: Any) -> List[FeedUpdate]:
        ...


def _load_json(venue: str, raw: Union[str, bytes]) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise FeedError(venue, f"invalid json: {exc}", raw=str(raw)[:200]) from exc


def _to_float(venue: str, value: Any, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise FeedError(venue, f"non-numeric {field_name}: {value!r}") from exc


def _pair_levels(venue: str, levels: Any) -> Tuple[Tuple[float, float], ...]:
    # Binance: [["price", "qty"], ...]
    if not isinstance(levels, list):
        raise FeedError(venue, "depth side is not a list")
    out = []
    for lvl in levels:
        if not isinstance(lvl, (list, tuple)) or len(lvl) < 2:
            raise FeedError(venue, f"bad depth level: {lvl!r}")
        out.append((_to_float(venue, lvl[0], "price"), _to_float(venue, lvl[1], "qty")))
    return tuple(out)


def _dict_levels(venue: str, levels: Any) -> Tuple[Tuple[float, float], ...]:
    # Bitmart: [{"price": "...", "vol": "..."}, ...]
    if not isinstance(levels, list):
        raise FeedError(venue, "depth side is not a list")
    out = []
    for lvl in levels:
        if not isinstance(lvl, dict):
            raise FeedError(venue, f"bad depth level: {lvl!r}")
        out.append((_to_float(venue, lvl.get("price"), "price"), _to_float(venue, lvl.get("vol"), "vol")))
    return tuple(out)


def _ms_to_sec(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)) and value > 0:
        return float(value) / 1000.0 if value > 1e12 else float(value)
    return None


# ========== Binance USDⓈ-M futures ==========

class BinanceTradeCodec:
    """Aggregated trade stream; the last trade price is the venue's top price."""

    def __init__(self, symbol: str, venue: str = "binance") -> None:
        self.symbol = symbol.lower()
        self.venue = venue

    @property
    def stream(self) -> str:
        return f"{self.symbol}@aggTrade"

    def subscribe_messages(self) -> List[str]:
        return [json.dumps({"method": "SUBSCRIBE", "params": [self.stream], "id": 1})]

    def parse(self, raw: Union[str, bytes]) -> Any:
        return _load_json(self.venue, raw)

    def normalize(self, payload: Any) -> List[FeedUpdate]:
        if not isinstance(payload, dict):
            raise FeedError(self.venue, "payload is not an object")
        # Subscription acks look like {"result": null, "id": 1}.
        if "result" in payload and "id" in payload:
            return []
        if "p" not in payload:
            raise FeedError(self.venue, "aggTrade missing 'p'")
        return [PriceUpdate(self.venue, _to_float(self.venue, payload["p"], "p"))]


class BinanceDepthCodec:
    """Partial book depth stream (top 20 levels)."""

    def __init__(self, symbol: str, venue: str = "binance", levels: int = 20) -> None:
        self.symbol = symbol.lower()
        self.venue = venue
        self.levels = levels

    @property
    def stream(self) -> str:
        return f"{self.symbol}@depth{self.levels}@100ms"

    def subscribe_messages(self) -> List[str]:
        return [json.dumps({"method": "SUBSCRIBE", "params": [self.stream], "id": 2})]

    def parse(self, raw: Union[str, bytes]) -> Any:
        return _load_json(self.venue, raw)

    def normalize(self, payload: Any) -> List[FeedUpdate]:
        if not isinstance(payload, dict):
            raise FeedError(self.venue, "payload is not an object")
        if "result" in payload and "id" in payload:
            return []
        if "a" not in payload or "b" not in payload:
            raise FeedError(self.venue, "depth missing 'a'/'b'")
        return [DepthUpdate(
            venue=self.venue,
            asks=_pair_levels(self.venue, payload["a"]),
            bids=_pair_levels(self.venue, payload["b"]),
            timestamp=_ms_to_sec(payload.get("E")),
        )]


# ========== Bitmart futures ==========

class BitmartTradeCodec:
    def __init__(self, symbol: str, venue: str = "bitmart") -> None:
        self.symbol = symbol.upper()
        self.venue = venue

    def subscribe_messages(self) -> List[str]:
        return [json.dumps({"action": "subscribe", "args": [f"futures/trade:{self.symbol}"]})]

    def parse(self, raw: Union[str, bytes]) -> Any:
        return _load_json(self.venue, raw)

    def normalize(self, payload: Any) -> List[FeedUpdate]:
        if not isinstance(payload, dict):
            raise FeedError(self.venue, "payload is not an object")
        if "data" not in payload:
            # Subscribe acks and heartbeats carry no data.
            return []
        data = payload["data"]
        if not isinstance(data, list):
            raise FeedError(self.venue, "trade data is not a list")
        updates: List[FeedUpdate] = []
        for trade in data:
            if not isinstance(trade, dict) or "deal_price" not in trade:
                raise FeedError(self.venue, "trade missing 'deal_price'")
            updates.append(PriceUpdate(self.venue, _to_float(self.venue, trade["deal_price"], "deal_price")))
        return updates


class BitmartDepthCodec:
    def __init__(self, symbol: str, venue: str = "bitmart", levels: int = 20) -> None:
        self.symbol = symbol.upper()
        self.venue = venue
        self.levels = levels

    def subscribe_messages(self) -> List[str]:
        return [json.dumps({"action": "subscribe", "args": [f"futures/depth{self.levels}:{self.symbol}"]})]

    def parse(self, raw: Union[str, bytes]) -> Any:
        return _load_json(self.venue, raw)

    def normalize(self, payload: Any) -> List[FeedUpdate]:
        if not isinstance(payload, dict):
            raise FeedError(self.venue, "payload is not an object")
        if "data" not in payload:
            return []
        data = payload["data"]
        if not isinstance(data, dict) or "asks" not in data or "bids" not in data:
            raise FeedError(self.venue, "depth missing asks/bids")
        return [DepthUpdate(
            venue=self.venue,
            asks=_dict_levels(self.venue, data["asks"]),
            bids=_dict_levels(self.venue, data["bids"]),
            timestamp=_ms_to_sec(data.get("ms_t")),
        )]


# ========== Adapter ==========

class FeedAdapter:
    """
    Websocket loop for one codec.

    Updates are handed to `on_update` in receipt order. The adapter reconnects
    with exponential backoff plus jitter; ping/pong is left to `websockets`.
    """

    def __init__(
        self,
        url: str,
        codec: VenueCodec,
        on_update: Callable[[FeedUpdate], Any],
        bus: Optional[EventBus] = None,
        backoff_initial: float = 1.0,
        backoff_max: float = 60.0,
    ) -> None:
        self.url = url
        self.codec = codec
        self._on_update = on_update
        self._bus = bus
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._running = False
        self.messages_received = 0
        self.messages_dropped = 0
        self.reconnects = 0
        self.last_message_at: Optional[float] = None

    @property
    def venue(self) -> str:
        return self.codec.venue

    def handle_message(self, raw: Union[str, bytes]) -> int:
        """Decode one frame and dispatch its updates. Returns how many were dispatched."""
        self.messages_received += 1
        self.last_message_at = time.time()
        try:
            updates = self.codec.normalize(self.codec.parse(raw))
        except FeedError as exc:
            self.messages_dropped += 1
            log.warning(json.dumps({"event": "feed_error", "venue": exc.venue, "err": str(exc)}))
            if self._bus is not None:
                self._bus.emit(EventType.FEED_ERROR, source="feed", venue=exc.venue, err=str(exc))
            return 0
        for update in updates:
            self._on_update(update)
        return len(updates)

    async def run(self) -> None:
        self._running = True
        backoff = self._backoff_initial
        while self._running:
            try:
                async with websockets.connect(self.url) as ws:
                    backoff = self._backoff_initial
                    log.info(json.dumps({"event": "feed_connected", "venue": self.venue, "url": self.url}))
                    for msg in self.codec.subscribe_messages():
                        await ws.send(msg)
                    async for raw in ws:
                        self.handle_message(raw)
                        if not self._running:
                            break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning(json.dumps({"event": "feed_disconnected", "venue": self.venue, "err": str(exc)}))
            if not self._running:
                break
            self.reconnects += 1
            sleep_for = backoff + random.uniform(0, backoff / 2)
            log.info(json.dumps({"event": "feed_reconnect", "venue": self.venue, "sleep_sec": round(sleep_for, 2)}))
            await asyncio.sleep(sleep_for)
            backoff = min(backoff * 2, self._backoff_max)

    def stop(self) -> None:
        self._running = False

    def stats(self) -> dict:
        return {
            "venue": self.venue,
            "received": self.messages_received,
            "dropped": self.messages_dropped,
            "reconnects": self.reconnects,
            "last_message_at": self.last_message_at,
        }


def build_codecs(
    symbol: str,
    venue_a: str,
    venue_b: str,
    use_depth_a: bool,
    use_depth_b: bool,
) -> Iterable[VenueCodec]:
    """Trade codecs for both venues plus depth codecs where enabled."""
    codecs: List[VenueCodec] = []
    for venue, use_depth in ((venue_a, use_depth_a), (venue_b, use_depth_b)):
        if venue == "binance":
            codecs.append(BinanceTradeCodec(symbol, venue))
            if use_depth:
                codecs.append(BinanceDepthCodec(symbol, venue))
        elif venue == "bitmart":
            codecs.append(BitmartTradeCodec(symbol, venue))
            if use_depth:
                codecs.append(BitmartDepthCodec(symbol, venue))
        else:
            raise ValueError(f"unsupported venue: {venue}")
    return codecs
