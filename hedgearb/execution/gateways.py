"""
Per-venue order gateways.

Every gateway exposes the same coroutine:

    await gateway.place_order(symbol, side, quantity, reduce_only=False) -> Fill

and raises OrderError on any failure (signing, transport, non-2xx status,
venue error code). Live gateways share one httpx.AsyncClient per venue.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import math
import time
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx

from hedgearb.core.errors import OrderError, QuoteUnavailable
from hedgearb.core.types import Fill, Side, SyntheticQuote

log = logging.getLogger("hedgearb")


class OrderGateway(Protocol):
    venue: str

    async def place_order(self, symbol: str, side: Side, quantity: float, reduce_only: bool = False) -> Fill:
        ...

    async def close(self) -> None:
        ...


def now_ms() -> int:
    return int(time.time() * 1000)


def hmac_sha256_hex(secret: str, payload: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def floor_to_decimals(value: float, decimals: int) -> float:
    factor = 10 ** decimals
    return math.floor(value * factor + 1e-9) / factor


class _HttpGateway:
    """Shared client ownership and transport error mapping."""

    venue = ""

    def __init__(self, base_url: str, timeout: float, client: Optional[httpx.AsyncClient]) -> None:
        self.base_url = base_url.rstrip("/")
        # A shared client passed in is not closed by close(); otherwise we own it.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _post(self, side: Side, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            resp = await self.client.post(path, **kwargs)
        except httpx.TimeoutException as exc:
            raise OrderError(self.venue, side.value, "timeout", str(exc)) from exc
        except httpx.HTTPError as exc:
            raise OrderError(self.venue, side.value, "transport", str(exc)) from exc
        try:
            body = resp.json()
        except ValueError:
            body = {"raw": resp.text[:200]}
        if resp.status_code >= 300:
            raise OrderError(self.venue, side.value, "http_status", f"{resp.status_code} {body}")
        if not isinstance(body, dict):
            raise OrderError(self.venue, side.value, "bad_response", str(body)[:200])
        return body


class BinanceFuturesGateway(_HttpGateway):
    """USDⓈ-M futures market orders via POST /fapi/v1/order."""

    ORDER_PATH = "/fapi/v1/order"

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str = "https://fapi.binance.com",
        qty_decimals: int = 1,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        venue: str = "binance",
    ) -> None:
        super().__init__(base_url, timeout, client)
        self.venue = venue
        self._api_key = api_key
        self._secret = secret_key
        self.qty_decimals = qty_decimals

    def signed_query(self, params: Dict[str, Any]) -> str:
        query = urlencode(params)
        return f"{query}&signature={hmac_sha256_hex(self._secret, query)}"

    async def place_order(self, symbol: str, side: Side, quantity: float, reduce_only: bool = False) -> Fill:
        qty = floor_to_decimals(quantity, self.qty_decimals)
        if qty <= 0:
            raise OrderError(self.venue, side.value, "size", f"quantity {quantity} rounds to 0")
        params: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "side": "BUY" if side is Side.LONG else "SELL",
            "type": "MARKET",
            "quantity": f"{qty:.{self.qty_decimals}f}",
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        params["timestamp"] = now_ms()
        body = await self._post(
            side,
            f"{self.ORDER_PATH}?{self.signed_query(params)}",
            headers={"X-MBX-APIKEY": self._api_key},
        )
        if "code" in body and "orderId" not in body:
            raise OrderError(self.venue, side.value, "rejected", f"{body.get('code')} {body.get('msg', '')}")
        try:
            avg_price = float(body.get("avgPrice") or 0.0)
            executed = float(body.get("executedQty") or qty)
        except (TypeError, ValueError) as exc:
            raise OrderError(self.venue, side.value, "bad_response", str(body)[:200]) from exc
        return Fill(
            venue=self.venue,
            side=side,
            quantity=executed,
            avg_price=avg_price,
            order_id=str(body.get("orderId")),
            raw=body,
        )


class BitmartFuturesGateway(_HttpGateway):
    """Contract market orders via POST /contract/private/submit-order."""

    ORDER_PATH = "/contract/private/submit-order"
    SUCCESS_CODE = 1000

    # (side, reduce_only) -> Bitmart side code
    SIDE_CODES = {
        (Side.LONG, False): 1,   # open long
        (Side.LONG, True): 2,    # close short
        (Side.SHORT, True): 3,   # close long
        (Side.SHORT, False): 4,  # open short
    }

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        memo: str,
        base_url: str = "https://api-cloud-v2.bitmart.com",
        contract_size: float = 1.0,
        leverage: float = 5.0,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        venue: str = "bitmart",
    ) -> None:
        super().__init__(base_url, timeout, client)
        self.venue = venue
        self._api_key = api_key
        self._secret = secret_key
        self._memo = memo
        self.contract_size = contract_size
        self.leverage = leverage

    def sign(self, timestamp: int, body: str) -> str:
        return hmac_sha256_hex(self._secret, f"{timestamp}#{self._memo}#{body}")

    def contracts_for(self, quantity: float) -> int:
        return int(math.floor(quantity / self.contract_size + 1e-9))

    async def place_order(self, symbol: str, side: Side, quantity: float, reduce_only: bool = False) -> Fill:
        size = self.contracts_for(quantity)
        if size < 1:
            raise OrderError(self.venue, side.value, "size", f"quantity {quantity} is below one contract")
        body = json.dumps({
            "symbol": symbol.upper(),
            "side": self.SIDE_CODES[(side, reduce_only)],
            "type": "market",
            "size": size,
            "leverage": f"{self.leverage:g}",
            "open_type": "isolated",
        }, separators=(",", ":"))
        ts = now_ms()
        resp = await self._post(
            side,
            self.ORDER_PATH,
            content=body,
            headers={
                "X-BM-KEY": self._api_key,
                "X-BM-SIGN": self.sign(ts, body),
                "X-BM-TIMESTAMP": str(ts),
                "Content-Type": "application/json",
            },
        )
        if resp.get("code") != self.SUCCESS_CODE:
            raise OrderError(self.venue, side.value, "rejected", f"{resp.get('code')} {resp.get('message', '')}")
        data = resp.get("data") or {}
        try:
            avg_price = float(data.get("price") or 0.0)
        except (TypeError, ValueError):
            avg_price = 0.0
        return Fill(
            venue=self.venue,
            side=side,
            quantity=size * self.contract_size,
            avg_price=avg_price,
            order_id=str(data.get("order_id")) if data.get("order_id") is not None else None,
            raw=resp,
        )


class PaperGateway:
    """Dry-run gateway: fills instantly at the venue's current synthetic quote."""

    def __init__(self, venue: str, quote_source: Callable[[str], SyntheticQuote]) -> None:
        self.venue = venue
        self._quote_source = quote_source
        self.orders: list = []
        self._seq = 0

    async def place_order(self, symbol: str, side: Side, quantity: float, reduce_only: bool = False) -> Fill:
        if quantity <= 0:
            raise OrderError(self.venue, side.value, "size", f"quantity {quantity} must be > 0")
        try:
            quote = self._quote_source(self.venue)
        except QuoteUnavailable as exc:
            raise OrderError(self.venue, side.value, "no_quote", exc.reason) from exc
        price = quote.long_price if side is Side.LONG else quote.short_price
        self._seq += 1
        order = {"symbol": symbol, "side": side.value, "quantity": quantity, "reduce_only": reduce_only, "price": price}
        self.orders.append(order)
        log.info(json.dumps({"event": "paper_fill", "venue": self.venue, **order}))
        return Fill(
            venue=self.venue,
            side=side,
            quantity=quantity,
            avg_price=price,
            order_id=f"paper-{self.venue}-{self._seq}",
            raw=order,
        )

    async def close(self) -> None:
        return None
