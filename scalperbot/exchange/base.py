from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol

from ..errors import InstrumentError
from ..state.models import MarketSnapshot, OrderStatusUpdate, Side, Trade
from ..bot.quoting import round_to_tick, tick_decimals

BookCallback = Callable[[MarketSnapshot], None]
TradesCallback = Callable[[List[Trade]], None]
OrderCallback = Callable[[OrderStatusUpdate], None]


@dataclass(frozen=True)
class Instrument:
    symbol: str
    tick_size: float
    qty_step: float
    min_order_qty: float = 0.0

    def validate(self) -> "Instrument":
        for name in ("tick_size", "qty_step"):
            v = getattr(self, name)
            if v is None or not math.isfinite(v) or v <= 0:
                raise InstrumentError(f"instrument {self.symbol}: {name} missing or invalid ({v!r})")
        return self

    def round_price(self, price: float) -> float:
        return round_to_tick(price, self.tick_size)

    def round_qty(self, qty: float) -> float:
        steps = math.floor(qty / self.qty_step + 1e-9)
        q = max(self.min_order_qty, steps * self.qty_step)
        return round(q, tick_decimals(self.qty_step))


@dataclass(frozen=True)
class PlaceResult:
    order_id: Optional[str]
    order_link_id: str = ""


class ExchangeAdapter(Protocol):
    """What the quote engine needs from a venue."""

    instrument: Optional[Instrument]
    on_book: Optional[BookCallback]
    on_trades: Optional[TradesCallback]
    on_order: Optional[OrderCallback]

    async def init(self) -> None: ...

    async def place_limit(self, side: Side, price: float, qty: float, time_in_force: str) -> PlaceResult: ...

    async def cancel_order(self, order_id: str) -> None: ...

    async def cancel_all(self) -> None: ...

    async def set_leverage(self, leverage: float) -> None: ...

    def start(self) -> None: ...

    async def stop(self) -> None: ...


class RequestPacer:
    """Serialises calls and keeps at least `min_interval_ms` between their starts."""

    def __init__(self, min_interval_ms: int) -> None:
        self._interval_s = max(0, int(min_interval_ms)) / 1000.0
        self._lock = asyncio.Lock()
        self._last = 0.0

    async def run(self, fn: Callable[[], Awaitable]):
        async with self._lock:
            wait = self._last + self._interval_s - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last = time.monotonic()
            return await fn()
