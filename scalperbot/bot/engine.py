from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Optional, Set

from ..config import Settings
from ..errors import InstrumentError
from ..exchange.base import ExchangeAdapter
from ..state.models import (
    AccountState,
    BookUpdate,
    Fill,
    MarketSnapshot,
    OpenOrder,
    OrderStatus,
    OrderStatusUpdate,
    PlacementResult,
    Side,
    TradeBatch,
    TtlExpired,
)
from ..telemetry.pnl import apply_fill
from ..telemetry.sink import TelemetrySink
from ..utils.time_ms import Clock, now_ms
from .aggregator import MarketStateAggregator
from .lifecycle import OrderLifecycleManager, Scheduler
from .quoting import QuoteParams, directional_filter, evaluate_spread
from .risk import RiskGovernor

log = logging.getLogger("bot.engine")

# Terminal updates that arrive while our placement call is still in flight.
_EARLY_TERMINAL_MAX = 256
# TTL-expired orders still waiting for their terminal status from the venue.
_EXPIRED_MAX = 256


class QuoteEngine:
    """Single-instrument quoting loop.

    Market events, private order updates, placement results and TTL expiries
    all go through one queue and are handled one at a time, so the windows,
    the open-order set and the rate counters need no locks. Venue calls run as
    background tasks and report back through the same queue.
    """

    def __init__(
        self,
        settings: Settings,
        adapter: ExchangeAdapter,
        telemetry: TelemetrySink,
        *,
        clock: Clock = now_ms,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        inst = adapter.instrument
        if inst is None:
            raise InstrumentError("instrument metadata not loaded; refusing to quote")
        self.instrument = inst.validate()

        self.s = settings
        self.adapter = adapter
        self.telemetry = telemetry
        self._clock = clock

        self.params = QuoteParams.from_settings(settings)
        self.aggregator = MarketStateAggregator.from_settings(settings, inst.tick_size, clock=clock)
        self.governor = RiskGovernor.from_settings(settings, clock=clock)
        self.lifecycle = OrderLifecycleManager(
            settings.CANCEL_AFTER_MS,
            on_expire=self._on_timer,
            scheduler=scheduler,
            clock=clock,
        )

        self.snapshot: Optional[MarketSnapshot] = None
        self.account = AccountState()

        self._queue: asyncio.Queue = asyncio.Queue()
        self._inflight: Set[asyncio.Task] = set()
        self._early_terminal: "OrderedDict[str, OrderStatusUpdate]" = OrderedDict()
        self._expired: "OrderedDict[str, OpenOrder]" = OrderedDict()
        self._task: Optional[asyncio.Task] = None

    # ---- wiring ----

    def attach(self) -> None:
        self.adapter.on_book = lambda snap: self.submit(BookUpdate(snap))
        self.adapter.on_trades = lambda trades: self.submit(TradeBatch(list(trades)))
        self.adapter.on_order = self.submit

    def submit(self, event: Any) -> None:
        self._queue.put_nowait(event)

    def _on_timer(self, order_id: str, record: OpenOrder) -> None:
        self.submit(TtlExpired(order_id, record))

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self.run(), name="quote_engine")

    async def run(self) -> None:
        while True:
            ev = await self._queue.get()
            self.process(ev)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for rec in self.lifecycle.clear():
            log.debug("stop_forget order_id=%s", rec.order_id)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        if self.s.CANCEL_ALL_ON_STOP:
            try:
                await self.adapter.cancel_all()
            except Exception as e:
                log.warning("cancel_all_failed err=%s", e)

    async def drain(self) -> None:
        """Handle everything queued and wait out in-flight venue calls."""
        while True:
            while not self._queue.empty():
                self.process(self._queue.get_nowait())
            if not self._inflight:
                return
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ---- dispatch ----

    def process(self, ev: Any) -> None:
        try:
            if isinstance(ev, BookUpdate):
                self._on_book(ev.snapshot)
            elif isinstance(ev, TradeBatch):
                self.aggregator.ingest_trades(ev.trades)
            elif isinstance(ev, OrderStatusUpdate):
                self._on_status(ev)
            elif isinstance(ev, PlacementResult):
                self._on_placement(ev)
            elif isinstance(ev, TtlExpired):
                self._on_ttl(ev)
            else:
                log.warning("unknown_event type=%s", type(ev).__name__)
        except Exception as e:
            log.exception("event_error type=%s: %s", type(ev).__name__, e)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    # ---- market ----

    def _on_book(self, snap: MarketSnapshot) -> None:
        self.snapshot = snap
        proposal = evaluate_spread(snap, self.instrument.tick_size, self.aggregator.current_volatility(), self.params)
        if proposal is None:
            return

        decision = directional_filter(
            snap.bid_size,
            snap.ask_size,
            self.aggregator.current_aggression_bias(),
            self.s.SIZE_IMBALANCE_TOLERANCE,
            self.s.AGGRESSOR_BIAS_TOL,
        )
        if decision.buy_allowed:
            self._quote(Side.BUY, proposal.buy_price)
        if decision.sell_allowed:
            self._quote(Side.SELL, proposal.sell_price)

    # ---- orders ----

    def _quote(self, side: Side, price: float) -> None:
        if not self.governor.admit(self.lifecycle.active_count()):
            return
        qty = self.s.ORDER_QTY
        self.telemetry.record_log("place_attempt", side=side.value, price=price, qty=qty)
        self.lifecycle.begin_placement()
        self._spawn(self._place(side, price, qty), name=f"place_{side.value}")

    async def _place(self, side: Side, price: float, qty: float) -> None:
        order_id: Optional[str] = None
        error: Optional[str] = None
        try:
            res = await self.adapter.place_limit(side, price, qty, self.s.TIME_IN_FORCE)
            order_id = res.order_id if res is not None else None
        except Exception as e:
            error = str(e) or type(e).__name__
        self.submit(PlacementResult(side=side, price=price, qty=qty, order_id=order_id, error=error))

    def _on_placement(self, res: PlacementResult) -> None:
        self.lifecycle.end_placement()
        if not res.order_id:
            log.warning("place_failed side=%s price=%s err=%s", res.side.value, res.price, res.error or "no order id")
            self.telemetry.record_log("place_failed", side=res.side.value, price=res.price, error=res.error)
            self.governor.trigger_cooldown()
            return

        early = self._early_terminal.pop(res.order_id, None)
        if early is not None:
            # the venue finished this order before we learned its id
            log.info("placed_already_terminal order_id=%s status=%s", res.order_id, early.status.value)
            rec = OpenOrder(res.order_id, res.side, res.price, res.qty, int(self._clock()))
            self._reconcile(rec, early)
            return

        self.lifecycle.register(res.order_id, res.side, res.price, res.qty)
        log.info("placed side=%s price=%s qty=%s order_id=%s", res.side.value, res.price, res.qty, res.order_id)
        self.telemetry.record_log("placed", side=res.side.value, price=res.price, qty=res.qty, order_id=res.order_id)

    def _on_ttl(self, ev: TtlExpired) -> None:
        rec = self.lifecycle.expire(ev.order_id, ev.record)
        if rec is None:
            return
        self._expired[rec.order_id] = rec
        while len(self._expired) > _EXPIRED_MAX:
            self._expired.popitem(last=False)
        self.telemetry.record_log("cancel", order_id=rec.order_id, side=rec.side.value, reason="ttl")
        self._spawn(self._cancel(rec.order_id), name=f"cancel_{rec.order_id}")

    async def _cancel(self, order_id: str) -> None:
        try:
            await self.adapter.cancel_order(order_id)
        except Exception as e:
            # usually the order already filled or was cancelled by the venue
            log.info("cancel_failed order_id=%s err=%s", order_id, e)
            self.telemetry.record_log("cancel_failed", order_id=order_id, error=str(e))

    def _on_status(self, upd: OrderStatusUpdate) -> None:
        log.debug("order_update order_id=%s status=%s", upd.order_id, upd.status.value)
        rec = self.lifecycle.on_external_status(upd.order_id, upd.status)
        if rec is None and upd.status.terminal:
            # our TTL cancel may have lost the race against a fill
            rec = self._expired.pop(upd.order_id, None)
        if rec is None:
            if upd.status.terminal and self.lifecycle.pending > 0:
                self._early_terminal[upd.order_id] = upd
                while len(self._early_terminal) > _EARLY_TERMINAL_MAX:
                    self._early_terminal.popitem(last=False)
            return
        self._reconcile(rec, upd)

    def _reconcile(self, rec: OpenOrder, upd: OrderStatusUpdate) -> None:
        self.telemetry.record_log("status", order_id=rec.order_id, side=rec.side.value, status=upd.status.value)
        if upd.status is OrderStatus.FILLED or upd.cum_exec_qty > 0:
            self._record_fill(rec, upd)

    def _record_fill(self, rec: OpenOrder, upd: OrderStatusUpdate) -> None:
        qty = upd.cum_exec_qty or rec.qty
        price = upd.avg_price or rec.price
        fee = upd.cum_exec_fee
        res = apply_fill(self.account, rec.side.value, price, qty, fee)
        self.account = res.account
        self.telemetry.record_fill(
            Fill(
                symbol=self.instrument.symbol,
                order_id=rec.order_id,
                side=rec.side.value,
                qty=qty,
                price=price,
                fee=fee,
                pnl=res.realized_delta,
                ts_ms=upd.ts_ms or int(self._clock()),
            )
        )

    # ---- observability ----

    def status(self) -> dict:
        snap = self.snapshot
        return {
            "symbol": self.instrument.symbol,
            "dry_run": self.s.DRY_RUN,
            "book": None if snap is None else {
                "best_bid": snap.best_bid,
                "best_ask": snap.best_ask,
                "bid_size": snap.bid_size,
                "ask_size": snap.ask_size,
            },
            "market": self.aggregator.status(),
            "risk": self.governor.status(),
            "orders": self.lifecycle.status(),
            "account": self.account.model_dump(),
            "queue_len": self._queue.qsize(),
        }
