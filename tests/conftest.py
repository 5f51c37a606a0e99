"""
Shared fixtures for the quote engine tests.

- settings factory isolated from the process environment / .env
- a fake venue adapter recording placements and cancels
- a manual TTL scheduler and a settable clock
"""
from typing import List, Optional

import pytest

from scalperbot.config import Settings
from scalperbot.errors import ExchangeError
from scalperbot.exchange.base import Instrument, PlaceResult
from scalperbot.telemetry.sink import StatsTelemetry

INSTRUMENT = Instrument(symbol="BTCUSDT", tick_size=0.1, qty_step=0.001, min_order_qty=0.001)


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeHandle:
    def __init__(self, delay: float, cb) -> None:
        self.delay = delay
        self.cb = cb
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Collects TTL callbacks; tests fire them explicitly."""

    def __init__(self) -> None:
        self.handles: List[FakeHandle] = []

    def __call__(self, delay: float, cb) -> FakeHandle:
        h = FakeHandle(delay, cb)
        self.handles.append(h)
        return h

    def live(self) -> List[FakeHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def fire_all(self) -> int:
        n = 0
        for h in self.live():
            h.fired = True
            h.cb()
            n += 1
        return n


class FakeAdapter:
    def __init__(self, instrument: Optional[Instrument] = INSTRUMENT) -> None:
        self.instrument = instrument
        self.on_book = None
        self.on_trades = None
        self.on_order = None
        self.placed: list = []
        self.cancelled: List[str] = []
        self.cancel_all_calls = 0
        self.fail_place = False
        self.fail_cancel = False
        self.return_id = True
        self._n = 0

    async def init(self) -> None:
        return None

    async def place_limit(self, side, price, qty, time_in_force) -> PlaceResult:
        self.placed.append((side, price, qty, time_in_force))
        if self.fail_place:
            raise ExchangeError("order rejected: 110007 insufficient balance", ret_code=110007)
        if not self.return_id:
            return PlaceResult(order_id=None)
        self._n += 1
        return PlaceResult(order_id=f"o{self._n}")

    async def cancel_order(self, order_id: str) -> None:
        self.cancelled.append(order_id)
        if self.fail_cancel:
            raise ExchangeError("cancel rejected: 110001 order not exists", ret_code=110001)

    async def cancel_all(self) -> None:
        self.cancel_all_calls += 1

    async def set_leverage(self, leverage: float) -> None:
        return None

    def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        return Settings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def telemetry():
    return StatsTelemetry("BTCUSDT")
