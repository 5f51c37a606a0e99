from __future__ import annotations

import threading
import time
from typing import Callable

# Engine clock: wall-clock epoch milliseconds, clamped to be non-decreasing so that
# rolling windows and TTL bookkeeping never see time step backwards (NTP adjustments).
Clock = Callable[[], int]

_lock = threading.Lock()
_last_ms: int = 0


def now_ms() -> int:
    global _last_ms
    ms = int(time.time() * 1000)
    with _lock:
        if ms < _last_ms:
            ms = _last_ms
        _last_ms = ms
    return ms


def ms_to_s(ms: int | float) -> float:
    return max(0.0, float(ms)) / 1000.0
