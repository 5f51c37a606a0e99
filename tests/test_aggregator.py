"""Rolling trade windows, realized volatility, aggression bias, breakout."""
import pytest

from scalperbot.bot.aggregator import MarketStateAggregator, TradeWindow
from scalperbot.state.models import Side, Trade

T0 = 1_700_000_000_000


def tr(side: Side, price: float, qty: float = 1.0, ts: int = T0) -> Trade:
    return Trade(side=side, price=price, qty=qty, ts_ms=ts)


@pytest.fixture
def agg(clock):
    clock.now = T0
    return MarketStateAggregator(
        0.1,
        vol_window_ms=30_000,
        vol_refresh_ms=300,
        breakout_window_ms=15_000,
        breakout_min_trades=3,
        agg_window_ms=1000,
        clock=clock,
    )


class TestTradeWindow:
    def test_prunes_by_horizon(self):
        w = TradeWindow(1000)
        w.add(tr(Side.BUY, 1, ts=T0), T0)
        w.add(tr(Side.BUY, 2, ts=T0 + 500), T0 + 500)
        w.prune(T0 + 1000)
        assert len(w) == 2
        w.prune(T0 + 1001)
        assert [t.price for t in w] == [2]

    def test_never_admits_already_expired_trade(self):
        w = TradeWindow(1000)
        assert w.add(tr(Side.BUY, 1, ts=T0), T0 + 1001) is False
        assert len(w) == 0

    def test_out_of_order_timestamps_still_pruned(self):
        w = TradeWindow(1000)
        w.add(tr(Side.BUY, 1, ts=T0 + 900), T0 + 900)
        w.add(tr(Side.BUY, 2, ts=T0 + 100), T0 + 900)
        w.add(tr(Side.BUY, 3, ts=T0 + 950), T0 + 950)
        w.prune(T0 + 1500)
        assert [t.price for t in w] == [1, 3]


class TestVolatility:
    def test_zero_with_fewer_than_two_trades(self, agg):
        agg.ingest_trades([tr(Side.BUY, 100.0)])
        assert agg.current_volatility() == 0.0

    def test_mean_absolute_tick_change(self, agg):
        agg.ingest_trades([tr(Side.BUY, 100.0), tr(Side.SELL, 100.2), tr(Side.BUY, 100.1)])
        # |+2| and |-1| ticks
        assert agg.current_volatility() == pytest.approx(1.5)

    def test_recompute_is_throttled(self, agg, clock):
        agg.ingest_trades([tr(Side.BUY, 100.0), tr(Side.BUY, 100.2)])
        assert agg.current_volatility() == pytest.approx(2.0)

        clock.advance(100)
        agg.ingest_trades([tr(Side.BUY, 100.2, ts=clock.now)])
        assert agg.current_volatility() == pytest.approx(2.0)

        clock.advance(250)
        agg.ingest_trades([tr(Side.BUY, 100.2, ts=clock.now)])
        assert agg.current_volatility() == pytest.approx(2.0 / 3)

    def test_expired_trades_leave_the_estimate(self, agg, clock):
        agg.ingest_trades([tr(Side.BUY, 100.0), tr(Side.BUY, 101.0)])
        clock.advance(31_000)
        agg.ingest_trades([tr(Side.BUY, 100.0, ts=clock.now)])
        assert len(agg.vol_window) == 1
        assert agg.current_volatility() == 0.0


class TestAggression:
    def test_neutral_without_volume(self, agg):
        agg.ingest_trades([])
        assert agg.current_aggression_bias() == 0.0

    def test_buy_dominated_tape(self, agg):
        agg.ingest_trades([tr(Side.BUY, 100.0, 3.0), tr(Side.SELL, 100.0, 1.0)])
        assert agg.current_aggression_bias() == pytest.approx(0.5)

    def test_window_boundary_resets_bias(self, agg, clock):
        agg.ingest_trades([tr(Side.BUY, 100.0, 5.0)])
        assert agg.current_aggression_bias() == pytest.approx(1.0)
        clock.advance(1500)
        agg.ingest_trades([tr(Side.SELL, 100.0, 1.0, ts=clock.now)])
        assert agg.current_aggression_bias() == pytest.approx(-1.0)

    def test_bias_stays_in_range(self, agg):
        agg.ingest_trades([tr(Side.BUY, 100.0, 1e9), tr(Side.SELL, 100.0, 1e-9)])
        assert -1.0 <= agg.current_aggression_bias() <= 1.0


class TestMalformedInput:
    @pytest.mark.parametrize(
        "bad",
        [
            Trade(side=Side.BUY, price=float("nan"), qty=1.0, ts_ms=T0),
            Trade(side=Side.BUY, price=100.0, qty=float("inf"), ts_ms=T0),
            Trade(side=Side.BUY, price=-1.0, qty=1.0, ts_ms=T0),
            Trade(side="Both", price=100.0, qty=1.0, ts_ms=T0),
        ],
    )
    def test_invalid_trades_are_dropped(self, agg, bad):
        n = agg.ingest_trades([bad, tr(Side.SELL, 100.0)])
        assert n == 1
        assert agg.dropped_trades == 1
        assert len(agg.vol_window) == 1
        assert agg.current_aggression_bias() == pytest.approx(-1.0)

    def test_non_trade_objects_are_dropped(self, agg):
        assert agg.ingest_trades([{"price": 1}, None]) == 0


class TestBreakout:
    def test_zero_below_trade_threshold(self, agg):
        agg.ingest_trades([tr(Side.BUY, 100.0), tr(Side.BUY, 101.0)])
        assert agg.current_breakout_ticks() == 0.0

    def test_signed_move_across_window(self, agg):
        agg.ingest_trades([tr(Side.SELL, 100.0), tr(Side.SELL, 99.8), tr(Side.SELL, 99.5)])
        assert agg.current_breakout_ticks() == pytest.approx(-5.0)


def test_rejects_bad_tick_size():
    with pytest.raises(ValueError):
        MarketStateAggregator(0.0)
