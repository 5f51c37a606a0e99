from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class Side(str, Enum):
    BUY = "Buy"
    SELL = "Sell"

    @classmethod
    def parse(cls, value: object) -> Optional["Side"]:
        s = str(value or "").strip().lower()
        if s == "buy":
            return cls.BUY
        if s == "sell":
            return cls.SELL
        return None


class OrderStatus(str, Enum):
    NEW = "New"
    PARTIALLY_FILLED = "PartiallyFilled"
    FILLED = "Filled"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: object) -> "OrderStatus":
        s = str(value or "")
        for st in cls:
            if st.value == s:
                return st
        # Bybit also reports PartiallyFilledCanceled / Deactivated for dead orders
        if s in ("PartiallyFilledCanceled", "Deactivated"):
            return cls.CANCELLED
        return cls.UNKNOWN

    @property
    def terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED)


def _finite_non_negative(x: float) -> bool:
    return isinstance(x, (int, float)) and math.isfinite(x) and x >= 0


@dataclass(frozen=True)
class MarketSnapshot:
    """Top of book; replaced wholesale on every book update."""

    best_bid: float
    best_ask: float
    bid_size: float = 0.0
    ask_size: float = 0.0
    ts_ms: int = 0

    def is_valid(self) -> bool:
        return (
            _finite_non_negative(self.best_bid)
            and _finite_non_negative(self.best_ask)
            and self.best_bid > 0
            and self.best_ask > 0
        )


@dataclass(frozen=True)
class Trade:
    side: Side
    price: float
    qty: float
    ts_ms: int

    def is_valid(self) -> bool:
        return (
            isinstance(self.side, Side)
            and _finite_non_negative(self.price)
            and _finite_non_negative(self.qty)
            and _finite_non_negative(self.ts_ms)
        )


@dataclass(frozen=True)
class QuoteProposal:
    buy_price: float
    sell_price: float
    edge_ticks: int
    spread_ticks: float
    net_spread_ticks: float


@dataclass(frozen=True)
class SideDecision:
    buy_allowed: bool
    sell_allowed: bool


@dataclass(eq=False)
class OpenOrder:
    """A live bot order. `timer` is the only scheduled cancellation for it."""

    order_id: str
    side: Side
    price: float
    qty: float
    placed_at_ms: int
    timer: Optional[asyncio.TimerHandle] = None

    def invalidate_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


# ---- engine events (single-consumer channel) ----


@dataclass(frozen=True)
class BookUpdate:
    snapshot: MarketSnapshot


@dataclass(frozen=True)
class TradeBatch:
    trades: List[Trade] = field(default_factory=list)


@dataclass(frozen=True)
class OrderStatusUpdate:
    order_id: str
    status: OrderStatus
    side: Optional[Side] = None
    price: float = 0.0
    qty: float = 0.0
    cum_exec_qty: float = 0.0
    avg_price: float = 0.0
    cum_exec_fee: float = 0.0
    ts_ms: int = 0


@dataclass(frozen=True)
class PlacementResult:
    side: Side
    price: float
    qty: float
    order_id: Optional[str]
    error: Optional[str] = None


@dataclass(frozen=True)
class TtlExpired:
    order_id: str
    record: OpenOrder


# ---- fill statistics ----


class Fill(BaseModel):
    symbol: str
    order_id: str
    side: str  # Buy/Sell
    qty: float
    price: float
    fee: float
    pnl: float
    ts_ms: int


class AccountState(BaseModel):
    position_qty: float = 0.0
    avg_entry_price: float = 0.0
    realized_pnl: float = 0.0
    fees_paid: float = 0.0
