"""Order lifecycle: registration, TTL ownership, terminal-status reconciliation."""
import pytest

from scalperbot.bot.lifecycle import OrderLifecycleManager
from scalperbot.state.models import OrderStatus, Side


@pytest.fixture
def expired():
    return []


@pytest.fixture
def mgr(scheduler, clock, expired):
    return OrderLifecycleManager(2500, lambda oid, rec: expired.append((oid, rec)), scheduler=scheduler, clock=clock)


def test_register_schedules_one_timer(mgr, scheduler):
    rec = mgr.register("a", Side.BUY, 100.0, 0.001)
    assert "a" in mgr
    assert rec.placed_at_ms > 0
    assert len(scheduler.handles) == 1
    assert scheduler.handles[0].delay == pytest.approx(2.5)
    assert rec.timer is scheduler.handles[0]


def test_no_order_id_never_opens(mgr, scheduler):
    assert mgr.register(None, Side.BUY, 100.0, 0.001) is None
    assert mgr.register("", Side.SELL, 100.0, 0.001) is None
    assert mgr.open_count == 0
    assert scheduler.handles == []


def test_pending_counts_toward_active(mgr):
    mgr.begin_placement()
    mgr.register("a", Side.BUY, 100.0, 0.001)
    assert mgr.active_count() == 2
    mgr.end_placement()
    mgr.end_placement()
    assert mgr.pending == 0
    assert mgr.active_count() == 1


def test_ttl_fire_then_expire_removes(mgr, scheduler, expired):
    rec = mgr.register("a", Side.BUY, 100.0, 0.001)
    scheduler.fire_all()
    assert expired == [("a", rec)]
    assert mgr.expire("a", rec) is rec
    assert "a" not in mgr
    # second delivery of the same expiry is ignored
    assert mgr.expire("a", rec) is None


@pytest.mark.parametrize("status", [OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED])
def test_terminal_status_removes_and_invalidates_timer(mgr, scheduler, expired, status):
    mgr.register("a", Side.SELL, 100.0, 0.001)
    rec = mgr.on_external_status("a", status)
    assert rec is not None
    assert "a" not in mgr
    assert scheduler.handles[0].cancelled
    assert scheduler.fire_all() == 0
    assert expired == []


def test_non_terminal_status_keeps_order(mgr):
    mgr.register("a", Side.BUY, 100.0, 0.001)
    assert mgr.on_external_status("a", OrderStatus.PARTIALLY_FILLED) is None
    assert mgr.on_external_status("a", OrderStatus.NEW) is None
    assert "a" in mgr


def test_duplicate_terminal_status_is_idempotent(mgr):
    mgr.register("a", Side.BUY, 100.0, 0.001)
    mgr.register("b", Side.SELL, 100.5, 0.001)
    assert mgr.on_external_status("a", OrderStatus.FILLED) is not None
    once = [o.order_id for o in mgr.open_orders()]
    assert mgr.on_external_status("a", OrderStatus.FILLED) is None
    assert [o.order_id for o in mgr.open_orders()] == once == ["b"]


def test_timer_that_fired_before_terminal_status_is_stale(mgr, scheduler, expired):
    rec = mgr.register("a", Side.BUY, 100.0, 0.001)
    scheduler.fire_all()
    mgr.on_external_status("a", OrderStatus.FILLED)
    oid, fired_rec = expired[0]
    assert mgr.expire(oid, fired_rec) is None
    assert fired_rec is rec


def test_reused_id_does_not_inherit_old_timer(mgr, scheduler, expired):
    old = mgr.register("a", Side.BUY, 100.0, 0.001)
    new = mgr.register("a", Side.BUY, 100.1, 0.001)
    assert scheduler.handles[0].cancelled
    assert mgr.get("a") is new
    assert mgr.expire("a", old) is None
    assert "a" in mgr


def test_clear_invalidates_every_timer(mgr, scheduler):
    mgr.register("a", Side.BUY, 100.0, 0.001)
    mgr.register("b", Side.SELL, 100.5, 0.001)
    assert len(mgr.clear()) == 2
    assert all(h.cancelled for h in scheduler.handles)
    assert mgr.open_count == 0
