from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from ..utils.time_ms import Clock, now_ms

log = logging.getLogger("bot.risk")

RATE_WINDOW_MS = 60_000


@dataclass
class RiskStatus:
    ok: bool
    reason: str = ""


class RiskGovernor:
    """Gates new placements: open-order cap, per-minute cap, global cooldown.

    Cancellation is never gated here so outstanding risk can always be unwound.
    """

    def __init__(
        self,
        max_open_orders: int,
        max_orders_per_minute: int,
        cooldown_ms: int = 0,
        clock: Clock = now_ms,
    ) -> None:
        self.max_open_orders = int(max_open_orders)
        self.max_orders_per_minute = int(max_orders_per_minute)
        self.cooldown_ms = int(cooldown_ms)
        self._clock = clock

        self.order_times: Deque[int] = deque()
        self.cooldown_until_ms: int = 0
        self.denials: dict = {}

    @classmethod
    def from_settings(cls, s, clock: Clock = now_ms) -> "RiskGovernor":
        return cls(s.MAX_OPEN_ORDERS, s.MAX_ORDERS_PER_MINUTE, s.GLOBAL_COOLDOWN_MS, clock=clock)

    def _trim(self, now: int) -> None:
        while self.order_times and now - self.order_times[0] > RATE_WINDOW_MS:
            self.order_times.popleft()

    def check(self, open_count: int, now: Optional[int] = None) -> RiskStatus:
        now = int(self._clock() if now is None else now)
        self._trim(now)
        if open_count >= self.max_open_orders:
            return RiskStatus(False, f"MAX_OPEN_ORDERS open={open_count}")
        if now < self.cooldown_until_ms:
            return RiskStatus(False, f"COOLDOWN left_ms={self.cooldown_until_ms - now}")
        if len(self.order_times) >= self.max_orders_per_minute:
            return RiskStatus(False, f"ORDER_RATE_LIMIT n={len(self.order_times)}")
        return RiskStatus(True)

    def admit(self, open_count: int, now: Optional[int] = None) -> bool:
        now = int(self._clock() if now is None else now)
        st = self.check(open_count, now)
        if not st.ok:
            key = st.reason.split(" ", 1)[0]
            self.denials[key] = self.denials.get(key, 0) + 1
            log.debug("risk_deny reason=%s", st.reason)
            return False
        self.order_times.append(now)
        return True

    def trigger_cooldown(self, now: Optional[int] = None) -> None:
        if self.cooldown_ms <= 0:
            return
        now = int(self._clock() if now is None else now)
        self.cooldown_until_ms = max(self.cooldown_until_ms, now + self.cooldown_ms)
        log.info("risk_cooldown until_ms=%s", self.cooldown_until_ms)

    def status(self, now: Optional[int] = None) -> dict:
        now = int(self._clock() if now is None else now)
        self._trim(now)
        return {
            "orders_last_min": len(self.order_times),
            "cooldown_left_ms": max(0, self.cooldown_until_ms - now),
            "denials": dict(self.denials),
        }
