from __future__ import annotations

import logging
import uuid

from ..state.models import Side
from .base import PlaceResult
from .bybit import BybitExchange

log = logging.getLogger("exchange.dry_run")


class DryRunExchange(BybitExchange):
    """Live market data, simulated order entry.

    Placement always succeeds with a unique local id and cancellation always
    succeeds; nothing is sent to the venue and the private stream is never
    opened.
    """

    def start(self) -> None:
        self.public.start()

    async def stop(self) -> None:
        await self.public.stop()
        await self.rest.close()

    async def place_limit(self, side: Side, price: float, qty: float, time_in_force: str) -> PlaceResult:
        inst = self._require_instrument()
        oid = f"dry-{uuid.uuid4().hex[:16]}"
        px = inst.round_price(price)
        q = inst.round_qty(qty)
        log.info("dry_run_place side=%s price=%s qty=%s tif=%s order_id=%s", side.value, px, q, time_in_force, oid)
        return PlaceResult(order_id=oid, order_link_id=oid)

    async def cancel_order(self, order_id: str) -> None:
        log.info("dry_run_cancel order_id=%s", order_id)

    async def cancel_all(self) -> None:
        log.info("dry_run_cancel_all")

    async def set_leverage(self, leverage: float) -> None:
        log.info("dry_run_set_leverage leverage=%s", leverage)
