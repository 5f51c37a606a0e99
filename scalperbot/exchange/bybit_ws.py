from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import WebSocketException

from ..config import Settings
from ..state.models import MarketSnapshot, OrderStatus, OrderStatusUpdate, Side, Trade
from ..utils.time_ms import now_ms
from .bybit_rest import sign_v5

log = logging.getLogger("exchange.bybit_ws")

MAINNET_WS = "wss://stream.bybit.com/v5"
TESTNET_WS = "wss://stream-testnet.bybit.com/v5"

PING_INTERVAL_S = 20.0


def _f(v: Any, default: float = float("nan")) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def parse_orderbook_l1(msg: Dict[str, Any]) -> Optional[MarketSnapshot]:
    data = msg.get("data") or {}
    bids = data.get("b") or []
    asks = data.get("a") or []
    if not bids or not asks:
        return None
    snap = MarketSnapshot(
        best_bid=_f(bids[0][0]),
        bid_size=_f(bids[0][1], 0.0),
        best_ask=_f(asks[0][0]),
        ask_size=_f(asks[0][1], 0.0),
        ts_ms=int(_f(msg.get("ts"), 0.0)),
    )
    return snap if snap.is_valid() else None


def parse_public_trades(msg: Dict[str, Any]) -> List[Trade]:
    rows = msg.get("data")
    if not isinstance(rows, list):
        return []
    fallback_ts = _f(msg.get("ts"), float(now_ms()))
    out: List[Trade] = []
    for row in rows:
        side = Side.parse(row.get("S") or row.get("side"))
        ts = _f(row.get("T") or row.get("ts"), fallback_ts)
        if side is None or math.isnan(ts):
            continue
        t = Trade(side=side, price=_f(row.get("p") or row.get("price")), qty=_f(row.get("v") or row.get("qty")), ts_ms=int(ts))
        if t.is_valid():
            out.append(t)
    return out


def parse_order_rows(msg: Dict[str, Any]) -> List[OrderStatusUpdate]:
    rows = msg.get("data")
    if not isinstance(rows, list):
        return []
    out: List[OrderStatusUpdate] = []
    for row in rows:
        oid = row.get("orderId")
        if not oid:
            continue
        out.append(
            OrderStatusUpdate(
                order_id=str(oid),
                status=OrderStatus.parse(row.get("orderStatus")),
                side=Side.parse(row.get("side")),
                price=_f(row.get("price"), 0.0),
                qty=_f(row.get("qty"), 0.0),
                cum_exec_qty=_f(row.get("cumExecQty"), 0.0),
                avg_price=_f(row.get("avgPrice"), 0.0),
                cum_exec_fee=_f(row.get("cumExecFee"), 0.0),
                ts_ms=int(_f(row.get("updatedTime"), 0.0)),
            )
        )
    return out


@dataclass
class WSStats:
    connected: bool = False
    reconnects: int = 0
    last_event_ts_ms: int = 0


class BybitStream:
    """One Bybit V5 WebSocket connection with resubscribe-on-reconnect."""

    def __init__(
        self,
        url: str,
        topics: List[str],
        on_message: Callable[[Dict[str, Any]], None],
        *,
        name: str,
        auth: Optional[Callable[[], Dict[str, Any]]] = None,
    ) -> None:
        self.url = url
        self.topics = list(topics)
        self.name = name
        self.stats = WSStats()
        self._on_message = on_message
        self._auth = auth
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"ws_{self.name}")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _pinger(self, ws) -> None:
        while True:
            await asyncio.sleep(PING_INTERVAL_S)
            try:
                await ws.send(json.dumps({"op": "ping"}))
            except (OSError, WebSocketException) as e:
                # the reader loop sees the same failure and reconnects
                log.debug("ws_ping_failed name=%s err=%s", self.name, e)
                return

    async def _run(self) -> None:
        backoff = 0.5
        while not self._stop.is_set():
            pinger: Optional[asyncio.Task] = None
            try:
                async with websockets.connect(self.url, ping_interval=None, close_timeout=2) as ws:
                    if self._auth is not None:
                        await ws.send(json.dumps(self._auth()))
                    await ws.send(json.dumps({"op": "subscribe", "args": self.topics}))
                    self.stats.connected = True
                    self.stats.last_event_ts_ms = now_ms()
                    backoff = 0.5
                    log.info("ws_connected name=%s url=%s topics=%s", self.name, self.url, ",".join(self.topics))
                    pinger = asyncio.create_task(self._pinger(ws))

                    while not self._stop.is_set():
                        raw = await ws.recv()
                        self.stats.last_event_ts_ms = now_ms()
                        msg = json.loads(raw)
                        if "topic" in msg:
                            try:
                                self._on_message(msg)
                            except Exception as e:
                                log.exception("ws_dispatch_error name=%s: %s", self.name, e)
                        elif msg.get("op") in ("auth", "subscribe") and not msg.get("success", True):
                            log.error("ws_op_failed name=%s msg=%s", self.name, msg)
            except asyncio.CancelledError:
                break
            except (OSError, WebSocketException, json.JSONDecodeError) as e:
                self.stats.connected = False
                self.stats.reconnects += 1
                log.warning("ws_reconnect name=%s err=%s", self.name, e)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 1.7, 8.0)
            finally:
                if pinger:
                    pinger.cancel()

        self.stats.connected = False
        log.info("ws_stopped name=%s", self.name)


def public_url(settings: Settings) -> str:
    base = TESTNET_WS if settings.BYBIT_TESTNET else MAINNET_WS
    return f"{base}/public/{settings.CATEGORY}"


def private_url(settings: Settings) -> str:
    base = TESTNET_WS if settings.BYBIT_TESTNET else MAINNET_WS
    return f"{base}/private"


def auth_message(settings: Settings) -> Dict[str, Any]:
    expires = now_ms() + 10_000
    return {
        "op": "auth",
        "args": [settings.BYBIT_KEY, expires, sign_v5(settings.BYBIT_SECRET, f"GET/realtime{expires}")],
    }
