from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..config import Settings
from ..bot.quoting import tick_decimals
from ..errors import ExchangeError
from ..state.models import Side
from ..utils.time_ms import now_ms
from .base import BookCallback, Instrument, OrderCallback, PlaceResult, TradesCallback
from .bybit_rest import BybitRest
from .bybit_ws import (
    BybitStream,
    auth_message,
    parse_order_rows,
    parse_orderbook_l1,
    parse_public_trades,
    private_url,
    public_url,
)

log = logging.getLogger("exchange.bybit")


class BybitExchange:
    """Bybit V5 venue adapter: L1 book + trade tape, private order stream, order entry."""

    def __init__(self, settings: Settings, rest: Optional[BybitRest] = None) -> None:
        self.s = settings
        self.rest = rest or BybitRest(settings)
        self.instrument: Optional[Instrument] = None

        self.on_book: Optional[BookCallback] = None
        self.on_trades: Optional[TradesCallback] = None
        self.on_order: Optional[OrderCallback] = None

        self._book_topic = f"orderbook.1.{settings.SYMBOL}"
        self._trade_topic = f"publicTrade.{settings.SYMBOL}"
        self.public = BybitStream(
            public_url(settings),
            [self._book_topic, self._trade_topic],
            self._on_public,
            name="public",
        )
        self.private: Optional[BybitStream] = None
        if settings.has_credentials:
            self.private = BybitStream(
                private_url(settings),
                ["order"],
                self._on_private,
                name="private",
                auth=lambda: auth_message(settings),
            )

    async def init(self) -> None:
        self.instrument = await self.rest.get_instrument(self.s.CATEGORY, self.s.SYMBOL)
        log.info(
            "instrument_loaded symbol=%s tick=%s qty_step=%s min_qty=%s",
            self.instrument.symbol,
            self.instrument.tick_size,
            self.instrument.qty_step,
            self.instrument.min_order_qty,
        )

    def start(self) -> None:
        self.public.start()
        if self.private is not None:
            self.private.start()

    async def stop(self) -> None:
        await self.public.stop()
        if self.private is not None:
            await self.private.stop()
        await self.rest.close()

    def _on_public(self, msg: Dict[str, Any]) -> None:
        topic = msg.get("topic")
        if topic == self._book_topic and self.on_book:
            snap = parse_orderbook_l1(msg)
            if snap is not None:
                self.on_book(snap)
        elif topic == self._trade_topic and self.on_trades:
            trades = parse_public_trades(msg)
            if trades:
                self.on_trades(trades)

    def _on_private(self, msg: Dict[str, Any]) -> None:
        if msg.get("topic") != "order" or not self.on_order:
            return
        for upd in parse_order_rows(msg):
            self.on_order(upd)

    def _require_instrument(self) -> Instrument:
        if self.instrument is None:
            raise ExchangeError("instrument not loaded; call init() first")
        return self.instrument

    async def place_limit(self, side: Side, price: float, qty: float, time_in_force: str) -> PlaceResult:
        inst = self._require_instrument()
        px = inst.round_price(price)
        q = inst.round_qty(qty)
        link_id = f"scalp-{now_ms()}-{side.value}"
        body = {
            "category": self.s.CATEGORY,
            "symbol": self.s.SYMBOL,
            "side": side.value,
            "orderType": "Limit",
            "qty": f"{q:.{tick_decimals(inst.qty_step)}f}",
            "price": f"{px:.{tick_decimals(inst.tick_size)}f}",
            "timeInForce": time_in_force,
            "orderLinkId": link_id,
        }
        result = await self.rest.submit_order(body)
        oid = result.get("orderId")
        log.info("order_placed side=%s price=%s qty=%s order_id=%s link_id=%s", side.value, px, q, oid, link_id)
        return PlaceResult(order_id=oid or None, order_link_id=link_id)

    async def cancel_order(self, order_id: str) -> None:
        await self.rest.cancel_order(self.s.CATEGORY, self.s.SYMBOL, order_id)
        log.info("order_cancelled order_id=%s", order_id)

    async def cancel_all(self) -> None:
        result = await self.rest.cancel_all(self.s.CATEGORY, self.s.SYMBOL)
        rows: List[Dict[str, Any]] = result.get("list") or []
        log.info("cancel_all symbol=%s n=%s", self.s.SYMBOL, len(rows))

    async def set_leverage(self, leverage: float) -> None:
        if self.s.CATEGORY not in ("linear", "inverse"):
            return
        await self.rest.set_leverage(self.s.CATEGORY, self.s.SYMBOL, leverage)
        log.info("leverage_set symbol=%s leverage=%s", self.s.SYMBOL, leverage)
