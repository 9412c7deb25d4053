from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from ..errors import ExchangePositionNotFound, TransportFailure
from ..models import ExchangeCredentials, LivePosition


logger = logging.getLogger(__name__)

BYBIT_MAINNET_URL = "https://api.bybit.com"
BYBIT_BASE_URLS = {
    "mainnet": BYBIT_MAINNET_URL,
    "testnet": "https://api-testnet.bybit.com",
    "demo": "https://api-demo.bybit.com",
}

_SIDE_TO_EXCHANGE = {"BUY": "Buy", "SELL": "Sell"}
_SIDE_FROM_EXCHANGE = {"buy": "BUY", "sell": "SELL"}


def to_exchange_symbol(symbol: str) -> str:
    clean = re.sub(r"\s+", "", symbol).upper()
    if clean.endswith("USDT"):
        return clean
    return f"{clean}USDT"


def from_exchange_symbol(symbol: str) -> str:
    return re.sub(r"USDT$", "", symbol)


def to_exchange_side(side: str) -> str:
    try:
        return _SIDE_TO_EXCHANGE[side.upper()]
    except KeyError:
        raise ValueError(f"unknown side: {side!r}") from None


def from_exchange_side(side: str) -> Optional[str]:
    # One-way mode reports an empty side for flat positions.
    return _SIDE_FROM_EXCHANGE.get((side or "").lower())


def sign(api_secret: str, timestamp: str, api_key: str, recv_window: str, payload: str) -> str:
    message = timestamp + api_key + recv_window + payload
    return hmac.new(api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class BybitRestClient:
    def __init__(
        self,
        credentials: ExchangeCredentials,
        base_url: Optional[str] = None,
        recv_window: int = 5000,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._credentials = credentials
        self._base_url = (base_url or BYBIT_BASE_URLS.get(credentials.environment, BYBIT_MAINNET_URL)).rstrip("/")
        self._recv_window = str(recv_window)
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "BybitRestClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            )
        return self._client

    def to_exchange_symbol(self, symbol: str) -> str:
        return to_exchange_symbol(symbol)

    def _headers(self, payload: str) -> Dict[str, str]:
        ts = str(int(time.time() * 1000))
        return {
            "X-BAPI-API-KEY": self._credentials.api_key,
            "X-BAPI-TIMESTAMP": ts,
            "X-BAPI-SIGN": sign(
                self._credentials.api_secret, ts, self._credentials.api_key, self._recv_window, payload
            ),
            "X-BAPI-RECV-WINDOW": self._recv_window,
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Dict[str, Any]:
        client = self._ensure_client()
        params = {k: v for k, v in (params or {}).items() if v is not None}
        logger.debug("Bybit %s %s params=%s", method, endpoint, params)
        try:
            if method == "GET":
                query = urlencode(params)
                url = f"{endpoint}?{query}" if query else endpoint
                headers = self._headers(query) if signed else {}
                resp = await client.get(url, headers=headers)
            else:
                body = json.dumps(params, separators=(",", ":"))
                headers = self._headers(body) if signed else {}
                headers["Content-Type"] = "application/json"
                resp = await client.post(endpoint, content=body, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Bybit request failed: {exc}") from exc

        text = resp.text
        if resp.status_code >= 400:
            if "<!DOCTYPE html>" in text or "<html" in text:
                raise TransportFailure(f"CloudFlare/WAF block ({resp.status_code})", status_code=resp.status_code)
            raise TransportFailure(
                f"Bybit API error: {resp.status_code} - {text}", status_code=resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportFailure(f"Bybit returned non-JSON body: {text[:200]}") from exc

        ret_code = data.get("retCode")
        if ret_code != 0:
            raise TransportFailure(
                f"Bybit API error: {data.get('retMsg')} (Code: {ret_code})", ret_code=ret_code
            )
        return data.get("result") or {}

    async def get_positions(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        """Raw /v5/position/list rows, following the page cursor."""
        out: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            result = await self._request(
                "GET",
                "/v5/position/list",
                {
                    "category": "linear",
                    "settleCoin": None if symbol else "USDT",
                    "symbol": symbol,
                    "limit": 200,
                    "cursor": cursor,
                },
            )
            out.extend(result.get("list") or [])
            cursor = result.get("nextPageCursor") or None
            if not cursor or symbol:
                return out

    async def list_open_positions(self) -> List[LivePosition]:
        rows = await self.get_positions()
        positions: List[LivePosition] = []
        for p in rows:
            side = from_exchange_side(p.get("side", ""))
            size = abs(float(p.get("size") or 0.0))
            if side is None or size <= 0:
                continue
            positions.append(_parse_position(p, side, size))
        logger.info("Bybit reports %d open positions", len(positions))
        return positions

    async def close_position(self, symbol: str, side: str, qty: Optional[float] = None) -> str:
        """Reduce-only market order against a BUY/SELL position; returns the order id."""
        bybit_symbol = to_exchange_symbol(symbol)
        if qty is None:
            rows = await self.get_positions(bybit_symbol)
            match = next(
                (
                    p
                    for p in rows
                    if p.get("symbol") == bybit_symbol
                    and from_exchange_side(p.get("side", "")) == side.upper()
                    and abs(float(p.get("size") or 0.0)) > 0
                ),
                None,
            )
            if match is None:
                raise ExchangePositionNotFound(symbol, side)
            qty = abs(float(match["size"]))

        close_side = "Sell" if to_exchange_side(side) == "Buy" else "Buy"
        result = await self._request(
            "POST",
            "/v5/order/create",
            {
                "category": "linear",
                "symbol": bybit_symbol,
                "side": close_side,
                "orderType": "Market",
                "qty": _fmt_qty(qty),
                "reduceOnly": True,
                "positionIdx": 0,
            },
        )
        order_id = str(result.get("orderId") or "")
        logger.info("Closed %s %s qty=%s order=%s", bybit_symbol, side, qty, order_id)
        return order_id

    async def current_price(self, symbol: str) -> float:
        bybit_symbol = to_exchange_symbol(symbol)
        rows = await self.get_positions(bybit_symbol)
        if rows and rows[0].get("markPrice"):
            return float(rows[0]["markPrice"])

        result = await self._request(
            "GET",
            "/v5/market/tickers",
            {"category": "linear", "symbol": bybit_symbol},
            signed=False,
        )
        items = result.get("list") or []
        if not items:
            raise TransportFailure(f"Failed to get market price for {symbol}")
        return float(items[0]["lastPrice"])

    async def realized_pnl(self, order_id: Optional[str], symbol: str) -> Optional[float]:
        bybit_symbol = to_exchange_symbol(symbol)
        result = await self._request(
            "GET",
            "/v5/position/closed-pnl",
            {"category": "linear", "symbol": bybit_symbol, "limit": 50},
        )
        items = [i for i in (result.get("list") or []) if i.get("symbol") == bybit_symbol]
        if not items:
            return None
        match = next((i for i in items if order_id and i.get("orderId") == order_id), items[0])
        return float(match.get("closedPnl") or 0.0)


def _parse_position(p: Dict[str, Any], side: str, size: float) -> LivePosition:
    def opt_float(key: str) -> Optional[float]:
        v = p.get(key)
        if v in (None, ""):
            return None
        return float(v)

    return LivePosition(
        symbol=p["symbol"],
        side=side,
        size=size,
        unrealised_pnl=float(p.get("unrealisedPnl") or 0.0),
        mark_price=opt_float("markPrice"),
        avg_price=opt_float("avgPrice"),
        leverage=opt_float("leverage"),
    )


def _fmt_qty(qty: float) -> str:
    text = f"{qty:.8f}".rstrip("0").rstrip(".")
    return text or "0"
