from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..state.models import MarketSnapshot, QuoteProposal, SideDecision


def tick_decimals(step: float) -> int:
    exp = Decimal(str(step)).normalize().as_tuple().exponent
    return max(0, -int(exp))


def round_to_tick(price: float, tick: float) -> float:
    return round(round(price / tick) * tick, tick_decimals(tick))


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


@dataclass(frozen=True)
class QuoteParams:
    min_spread_ticks: float = 2
    edge_ticks: int = 2
    dyn_edge_base: int = 0
    dyn_edge_max: int = 0
    dyn_edge_vol_scale: float = 4.0
    min_net_spread_ticks: float = 1
    min_expected_profit_ticks: float = 1

    @classmethod
    def from_settings(cls, s) -> "QuoteParams":
        return cls(
            min_spread_ticks=s.MIN_SPREAD_TICKS,
            edge_ticks=s.EDGE_TICKS,
            dyn_edge_base=s.DYN_EDGE_BASE,
            dyn_edge_max=s.DYN_EDGE_MAX,
            dyn_edge_vol_scale=s.DYN_EDGE_VOL_SCALE,
            min_net_spread_ticks=s.MIN_NET_SPREAD_TICKS,
            min_expected_profit_ticks=s.MIN_EXPECTED_PROFIT_TICKS,
        )

    @property
    def edge_base(self) -> int:
        return max(1, int(self.dyn_edge_base or self.edge_ticks or 1))

    @property
    def edge_max(self) -> int:
        return max(self.edge_base, int(self.dyn_edge_max or self.edge_base + 6))

    @property
    def vol_scale(self) -> float:
        return max(1.0, float(self.dyn_edge_vol_scale or 4.0))


def compute_edge(volatility: float, p: QuoteParams) -> int:
    """Edge in ticks: widens with volatility, clamped to [1, edge_max]."""
    vol = volatility if math.isfinite(volatility) and volatility > 0 else 0.0
    return max(1, min(p.edge_max, _round_half_up(p.edge_base + vol / p.vol_scale)))


def evaluate_spread(
    snapshot: MarketSnapshot,
    tick_size: float,
    volatility: float,
    params: QuoteParams,
) -> Optional[QuoteProposal]:
    """Decide whether a two-sided quote is worth placing and at which prices.

    Both sides are pulled inward from the touch by the same edge; the spread
    left between them must cover the minimum net spread and expected profit.
    """
    if not snapshot.is_valid() or tick_size <= 0 or snapshot.best_ask <= snapshot.best_bid:
        return None

    spread_ticks = round((snapshot.best_ask - snapshot.best_bid) / tick_size, 9)
    if spread_ticks < params.min_spread_ticks:
        return None

    edge = compute_edge(volatility, params)
    net_spread_ticks = spread_ticks - 2 * edge
    if net_spread_ticks < params.min_net_spread_ticks:
        return None
    if net_spread_ticks < params.min_expected_profit_ticks:
        return None

    return QuoteProposal(
        buy_price=round_to_tick(snapshot.best_bid + edge * tick_size, tick_size),
        sell_price=round_to_tick(snapshot.best_ask - edge * tick_size, tick_size),
        edge_ticks=edge,
        spread_ticks=spread_ticks,
        net_spread_ticks=net_spread_ticks,
    )


def size_imbalance(bid_size: float, ask_size: float) -> float:
    if not (math.isfinite(bid_size) and math.isfinite(ask_size)):
        return 0.0
    denom = bid_size + ask_size
    if denom <= 0:
        return 0.0
    return (bid_size - ask_size) / denom


def directional_filter(
    bid_size: float,
    ask_size: float,
    aggression_bias: float,
    tolerance: float,
    aggressor_bias_tol: float,
) -> SideDecision:
    # ask-heavy book -> withhold buys; bid-heavy book -> withhold sells
    imb = size_imbalance(bid_size, ask_size)
    buy_allowed = imb >= -tolerance
    sell_allowed = imb <= tolerance

    # recent tape dominated by one side: do not quote into the momentum
    if aggression_bias > aggressor_bias_tol:
        sell_allowed = False
    elif aggression_bias < -aggressor_bias_tol:
        buy_allowed = False

    return SideDecision(buy_allowed=buy_allowed, sell_allowed=sell_allowed)
