from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict
from typing import Any, Deque, Dict, List, Optional, Protocol, Set

from ..state.models import Fill
from ..utils.ndjson_recorder import NDJSONRecorder
from ..utils.time_ms import now_ms

log = logging.getLogger("telemetry.sink")


class TelemetrySink(Protocol):
    """Where the engine reports what it did. Formatting and transport live elsewhere."""

    def record_log(self, event: str, **fields: Any) -> None: ...

    def record_fill(self, fill: Fill) -> None: ...


class StatsTelemetry:
    """In-memory fill statistics, event counters and a tail of recent events.

    Optionally mirrors every event to an NDJSON event log. Subscriber queues
    (the status WebSocket) receive each event as `{"type": "log"}` and a
    stats snapshot after every fill as `{"type": "stats"}`.
    """

    def __init__(
        self,
        symbol: str,
        recorder: Optional[NDJSONRecorder] = None,
        last_fills_max: int = 50,
        events_max: int = 500,
    ) -> None:
        self.symbol = symbol
        self.recorder = recorder
        self.trades: int = 0
        self.filled_qty: float = 0.0
        self.realized_pnl: float = 0.0
        self.fees: float = 0.0
        self.last_fills: Deque[Fill] = deque(maxlen=last_fills_max)
        self.counters: Dict[str, int] = {}
        self._events: Deque[Dict[str, Any]] = deque(maxlen=max(1, events_max))
        self._subscribers: Set[asyncio.Queue] = set()

    def _emit(self, ev: Dict[str, Any]) -> None:
        self._events.append(ev)
        if self.recorder is not None:
            self.recorder.record(ev)
        self._broadcast({"type": "log", "payload": ev})

    def record_log(self, event: str, **fields: Any) -> None:
        self.counters[event] = self.counters.get(event, 0) + 1
        self._emit({"type": "log", "event": event, "ts_ms": now_ms(), **fields})

    def record_fill(self, fill: Fill) -> None:
        self.counters["fill"] = self.counters.get("fill", 0) + 1
        self.trades += 1
        self.filled_qty += fill.qty
        self.realized_pnl += fill.pnl
        self.fees += fill.fee
        self.last_fills.append(fill)
        log.info(
            "fill side=%s qty=%s price=%s fee=%s pnl=%.6f total_pnl=%.6f",
            fill.side, fill.qty, fill.price, fill.fee, fill.pnl, self.realized_pnl,
        )
        self._emit({"type": "fill", **fill.model_dump()})
        self._broadcast({"type": "stats", "payload": self.snapshot()})

    def snapshot(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "trades": self.trades,
            "filled_qty": self.filled_qty,
            "realized_pnl": self.realized_pnl,
            "fees": self.fees,
            "last_fills": [f.model_dump() for f in self.last_fills],
            "counters": dict(self.counters),
        }

    def recorder_stats(self) -> Optional[Dict[str, Any]]:
        return asdict(self.recorder.stats()) if self.recorder is not None else None

    def recent_events(self, n: int = 500) -> List[Dict[str, Any]]:
        if n <= 0:
            return []
        return list(self._events)[-n:]

    def subscribe(self, maxsize: int = 256) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    def _broadcast(self, msg: Dict[str, Any]) -> None:
        for q in list(self._subscribers):
            try:
                q.put_nowait(msg)
            except asyncio.QueueFull:
                # slow client; it still gets the periodic stats push
                pass
