from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from ..config import Settings
from ..errors import ExchangeError, InstrumentError
from ..utils.time_ms import now_ms
from .base import Instrument, RequestPacer

log = logging.getLogger("exchange.bybit_rest")

MAINNET_REST = "https://api.bybit.com"
TESTNET_REST = "https://api-testnet.bybit.com"

RET_LEVERAGE_NOT_MODIFIED = 110043


def sign_v5(secret: str, payload: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class BybitRest:
    """Minimal Bybit V5 REST client: instrument metadata and order entry."""

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.s = settings
        self.base = TESTNET_REST if settings.BYBIT_TESTNET else MAINNET_REST
        self._session = session
        self._pacer = RequestPacer(settings.REST_MIN_INTERVAL_MS)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _auth_headers(self, payload: str) -> Dict[str, str]:
        ts = str(now_ms())
        recv = str(self.s.RECV_WINDOW_MS)
        return {
            "X-BAPI-API-KEY": self.s.BYBIT_KEY,
            "X-BAPI-TIMESTAMP": ts,
            "X-BAPI-RECV-WINDOW": recv,
            "X-BAPI-SIGN": sign_v5(self.s.BYBIT_SECRET, ts + self.s.BYBIT_KEY + recv + payload),
            "Content-Type": "application/json",
        }

    @staticmethod
    def _unwrap(body: Dict[str, Any], what: str, accept: tuple = ()) -> Dict[str, Any]:
        code = int(body.get("retCode", -1))
        if code != 0 and code not in accept:
            raise ExchangeError(f"{what} rejected: {code} {body.get('retMsg', '')}", ret_code=code)
        return body.get("result") or {}

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        sess = await self._get_session()
        query = urlencode(params)

        async def _call():
            async with sess.get(f"{self.base}{path}?{query}") as r:
                r.raise_for_status()
                return await r.json()

        return await self._pacer.run(_call)

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.s.has_credentials:
            raise ExchangeError(f"{path}: API credentials not configured")
        sess = await self._get_session()
        payload = json.dumps(body, separators=(",", ":"))

        async def _call():
            # sign inside the pacer so the timestamp is fresh when the request leaves
            async with sess.post(f"{self.base}{path}", data=payload, headers=self._auth_headers(payload)) as r:
                r.raise_for_status()
                return await r.json()

        try:
            return await self._pacer.run(_call)
        except aiohttp.ClientError as e:
            raise ExchangeError(f"{path} failed: {e}") from e

    async def get_instrument(self, category: str, symbol: str) -> Instrument:
        try:
            body = await self._get("/v5/market/instruments-info", {"category": category, "symbol": symbol})
            result = self._unwrap(body, "instruments-info")
        except (aiohttp.ClientError, ExchangeError) as e:
            raise InstrumentError(f"instrument fetch failed for {symbol}: {e}") from e

        rows = result.get("list") or []
        if not rows:
            raise InstrumentError(f"instrument not found: {symbol}")
        info = rows[0]
        price_f = info.get("priceFilter") or {}
        lot_f = info.get("lotSizeFilter") or {}
        # spot reports basePrecision instead of qtyStep
        qty_step = lot_f.get("qtyStep") or lot_f.get("basePrecision")
        try:
            inst = Instrument(
                symbol=symbol,
                tick_size=float(price_f.get("tickSize")),
                qty_step=float(qty_step),
                min_order_qty=float(lot_f.get("minOrderQty") or 0.0),
            )
        except (TypeError, ValueError) as e:
            raise InstrumentError(f"instrument metadata incomplete for {symbol}: {info}") from e
        return inst.validate()

    async def submit_order(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._unwrap(await self._post("/v5/order/create", body), "order")

    async def cancel_order(self, category: str, symbol: str, order_id: str) -> Dict[str, Any]:
        body = {"category": category, "symbol": symbol, "orderId": order_id}
        return self._unwrap(await self._post("/v5/order/cancel", body), "cancel")

    async def cancel_all(self, category: str, symbol: str) -> Dict[str, Any]:
        body = {"category": category, "symbol": symbol}
        return self._unwrap(await self._post("/v5/order/cancel-all", body), "cancel-all")

    async def set_leverage(self, category: str, symbol: str, leverage: float) -> None:
        lev = f"{leverage:g}"
        body = {"category": category, "symbol": symbol, "buyLeverage": lev, "sellLeverage": lev}
        self._unwrap(
            await self._post("/v5/position/set-leverage", body),
            "set-leverage",
            accept=(RET_LEVERAGE_NOT_MODIFIED,),
        )
