from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from ..state.models import OpenOrder, OrderStatus, Side
from ..utils.time_ms import Clock, ms_to_s, now_ms

log = logging.getLogger("bot.lifecycle")

# (delay_s, callback) -> handle with .cancel()
Scheduler = Callable[[float, Callable[[], None]], asyncio.TimerHandle]
ExpireCallback = Callable[[str, OpenOrder], None]


def _loop_scheduler(delay_s: float, cb: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay_s, cb)


class OrderLifecycleManager:
    """Owns the bot's open orders and their TTL timers.

    Pending -> Open -> {Filled, Cancelled, Rejected}. An order only becomes
    Open once the venue returned an id. Every removal path invalidates the
    order's timer, and a timer that fires for a record which is no longer the
    live one for its id is ignored.
    """

    def __init__(
        self,
        cancel_after_ms: int,
        on_expire: ExpireCallback,
        scheduler: Optional[Scheduler] = None,
        clock: Clock = now_ms,
    ) -> None:
        self.cancel_after_ms = int(cancel_after_ms)
        self._on_expire = on_expire
        self._schedule = scheduler or _loop_scheduler
        self._clock = clock

        self._open: Dict[str, OpenOrder] = {}
        self.pending: int = 0

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._open

    def get(self, order_id: str) -> Optional[OpenOrder]:
        return self._open.get(order_id)

    def open_orders(self) -> List[OpenOrder]:
        return list(self._open.values())

    @property
    def open_count(self) -> int:
        return len(self._open)

    def active_count(self) -> int:
        return len(self._open) + self.pending

    def begin_placement(self) -> None:
        self.pending += 1

    def end_placement(self) -> None:
        self.pending = max(0, self.pending - 1)

    def register(
        self,
        order_id: Optional[str],
        side: Side,
        price: float,
        qty: float,
        now: Optional[int] = None,
    ) -> Optional[OpenOrder]:
        if not order_id:
            return None
        stale = self._open.pop(order_id, None)
        if stale is not None:
            log.warning("order_id_reused order_id=%s", order_id)
            stale.invalidate_timer()

        rec = OpenOrder(
            order_id=order_id,
            side=side,
            price=float(price),
            qty=float(qty),
            placed_at_ms=int(self._clock() if now is None else now),
        )
        rec.timer = self._schedule(ms_to_s(self.cancel_after_ms), lambda: self._on_expire(order_id, rec))
        self._open[order_id] = rec
        return rec

    def expire(self, order_id: str, record: OpenOrder) -> Optional[OpenOrder]:
        """TTL fired. Returns the record to cancel, or None if it is already gone."""
        if self._open.get(order_id) is not record:
            return None
        record.timer = None
        del self._open[order_id]
        return record

    def on_external_status(self, order_id: str, status: OrderStatus) -> Optional[OpenOrder]:
        if not order_id or not status.terminal:
            return None
        rec = self._open.pop(order_id, None)
        if rec is None:
            return None
        rec.invalidate_timer()
        return rec

    def clear(self) -> List[OpenOrder]:
        recs = list(self._open.values())
        for rec in recs:
            rec.invalidate_timer()
        self._open.clear()
        return recs

    def status(self) -> dict:
        return {
            "open": [
                {"order_id": o.order_id, "side": o.side.value, "price": o.price, "placed_at_ms": o.placed_at_ms}
                for o in self._open.values()
            ],
            "pending": self.pending,
        }
