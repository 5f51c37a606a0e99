from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Iterable, Optional

from ..state.models import Side, Trade
from ..utils.time_ms import Clock, now_ms

log = logging.getLogger("bot.aggregator")


class TradeWindow:
    """Trades seen within the last `horizon_ms`, in arrival order.

    A trade that is already older than the horizon when it arrives is never
    admitted, so pruning is monotonic.
    """

    def __init__(self, horizon_ms: int) -> None:
        self.horizon_ms = int(horizon_ms)
        self._trades: Deque[Trade] = deque()
        self._ordered = True

    def __len__(self) -> int:
        return len(self._trades)

    def __iter__(self):
        return iter(self._trades)

    def add(self, t: Trade, now: int) -> bool:
        if now - t.ts_ms > self.horizon_ms:
            return False
        if self._trades and t.ts_ms < self._trades[-1].ts_ms:
            self._ordered = False
        self._trades.append(t)
        return True

    def prune(self, now: int) -> None:
        cutoff = now - self.horizon_ms
        if self._ordered:
            while self._trades and self._trades[0].ts_ms < cutoff:
                self._trades.popleft()
            return
        # exchange delivered out-of-order timestamps; fall back to a full scan
        self._trades = deque(t for t in self._trades if t.ts_ms >= cutoff)
        ts = [t.ts_ms for t in self._trades]
        self._ordered = all(a <= b for a, b in zip(ts, ts[1:]))

    def first(self) -> Optional[Trade]:
        return self._trades[0] if self._trades else None

    def last(self) -> Optional[Trade]:
        return self._trades[-1] if self._trades else None

    def clear(self) -> None:
        self._trades.clear()
        self._ordered = True


class MarketStateAggregator:
    """Rolling trade-tape state: realized volatility, breakout, aggression.

    Three independent windows are maintained. Volatility is throttled to one
    recompute per `vol_refresh_ms`; aggression bias is recomputed on every
    batch. Reads never mutate state.
    """

    def __init__(
        self,
        tick_size: float,
        *,
        vol_window_ms: int = 30_000,
        vol_refresh_ms: int = 300,
        breakout_window_ms: int = 15_000,
        breakout_min_trades: int = 5,
        agg_window_ms: int = 1000,
        clock: Clock = now_ms,
    ) -> None:
        if not tick_size or tick_size <= 0:
            raise ValueError("tick_size must be positive")
        self.tick_size = float(tick_size)
        self.vol_refresh_ms = int(vol_refresh_ms)
        self.breakout_min_trades = int(breakout_min_trades)
        self._clock = clock

        self.vol_window = TradeWindow(vol_window_ms)
        self.breakout_window = TradeWindow(breakout_window_ms)
        self.agg_window = TradeWindow(agg_window_ms)

        self._volatility: float = 0.0
        self._vol_computed_ms: Optional[int] = None
        self._bias: float = 0.0
        self.dropped_trades: int = 0

    @classmethod
    def from_settings(cls, s, tick_size: float, clock: Clock = now_ms) -> "MarketStateAggregator":
        return cls(
            tick_size,
            vol_window_ms=s.VOL_WINDOW_MS,
            vol_refresh_ms=s.VOL_REFRESH_MS,
            breakout_window_ms=s.BREAKOUT_WINDOW_MS,
            breakout_min_trades=s.BREAKOUT_MIN_TRADES,
            agg_window_ms=s.TRADE_AGG_WINDOW_MS,
            clock=clock,
        )

    def ingest_trades(self, trades: Iterable[Trade], now: Optional[int] = None) -> int:
        """Fold a batch into the windows. Returns the number of trades accepted."""
        now = int(self._clock() if now is None else now)
        accepted = 0
        for t in trades:
            if not isinstance(t, Trade) or not t.is_valid():
                self.dropped_trades += 1
                continue
            self.vol_window.add(t, now)
            self.breakout_window.add(t, now)
            self.agg_window.add(t, now)
            accepted += 1

        self.vol_window.prune(now)
        self.breakout_window.prune(now)
        self.agg_window.prune(now)

        if self._vol_computed_ms is None or now - self._vol_computed_ms > self.vol_refresh_ms:
            self._volatility = self._realized_ticks()
            self._vol_computed_ms = now

        self._bias = self._aggression()
        return accepted

    def _realized_ticks(self) -> float:
        total = 0.0
        n = 0
        prev: Optional[Trade] = None
        for t in self.vol_window:
            if prev is not None:
                total += abs(t.price - prev.price) / self.tick_size
                n += 1
            prev = t
        return total / n if n else 0.0

    def _aggression(self) -> float:
        buy = sum(t.qty for t in self.agg_window if t.side is Side.BUY)
        sell = sum(t.qty for t in self.agg_window if t.side is Side.SELL)
        denom = buy + sell
        if denom <= 0:
            return 0.0
        return max(-1.0, min(1.0, (buy - sell) / denom))

    def current_volatility(self) -> float:
        return self._volatility

    def current_aggression_bias(self) -> float:
        return self._bias

    def current_breakout_ticks(self) -> float:
        """Signed tick move across the breakout window, 0 below the trade threshold."""
        if len(self.breakout_window) < self.breakout_min_trades:
            return 0.0
        first, last = self.breakout_window.first(), self.breakout_window.last()
        return (last.price - first.price) / self.tick_size

    def status(self) -> dict:
        return {
            "volatility_ticks": round(self._volatility, 6),
            "aggression_bias": round(self._bias, 6),
            "breakout_ticks": round(self.current_breakout_ticks(), 6),
            "vol_window_trades": len(self.vol_window),
            "agg_window_trades": len(self.agg_window),
            "dropped_trades": self.dropped_trades,
        }
