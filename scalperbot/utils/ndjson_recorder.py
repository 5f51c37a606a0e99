from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, TextIO

from .time_ms import now_ms

log = logging.getLogger("utils.ndjson_recorder")


def _ts_name() -> str:
    return time.strftime("%Y%m%d_%H%M%S", time.localtime())


@dataclass
class RecorderStats:
    enabled: bool
    path: str
    lines: int = 0
    dropped: int = 0
    last_write_ts_ms: int = 0
    rotated_parts: int = 0
    last_error: str = ""


class NDJSONRecorder:
    """Append-only NDJSON event log for engine telemetry.

    Events are queued without blocking the decision loop and written by a
    background task:
      - bounded queue (drops on overflow; counted in stats)
      - periodic flush, no per-line fsync
      - size-based rotation into `<name>_partN.ndjson`
    """

    def __init__(
        self,
        path: str,
        *,
        enabled: bool = True,
        flush_ms: int = 1000,
        queue_max: int = 5000,
        rotate_max_mb: int = 64,
    ) -> None:
        self.enabled = bool(enabled)
        self._base_path = str(path)
        self._path = self._base_path
        self._flush_s = max(200, int(flush_ms)) / 1000.0
        self._rotate_max_bytes = max(0, int(rotate_max_mb)) * 1024 * 1024

        self._q: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=max(100, int(queue_max)))
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self._part = 0
        self._bytes = 0
        self._lines = 0
        self._dropped = 0
        self._last_write_ts_ms = 0
        self._last_error = ""

    @staticmethod
    def make_default_path(log_dir: str, symbol: str) -> str:
        sym = str(symbol or "SYMBOL").upper()
        return os.path.join(str(log_dir), f"events_{sym}_{_ts_name()}.ndjson")

    def stats(self) -> RecorderStats:
        return RecorderStats(
            enabled=self.enabled,
            path=self._path,
            lines=self._lines,
            dropped=self._dropped,
            last_write_ts_ms=self._last_write_ts_ms,
            rotated_parts=self._part,
            last_error=self._last_error,
        )

    async def start(self) -> None:
        if not self.enabled or (self._task and not self._task.done()):
            return
        self._stop.clear()
        d = os.path.dirname(os.path.abspath(self._base_path))
        if d:
            os.makedirs(d, exist_ok=True)
        self._task = asyncio.create_task(self._writer_loop(), name="ndjson_recorder")

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            log.warning("recorder_stop_timeout path=%s", self._path)
            self._task.cancel()
        self._task = None

    def record(self, event: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        event.setdefault("ts_ms", now_ms())
        try:
            self._q.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1

    def _rotate_path(self) -> str:
        self._part += 1
        root, ext = os.path.splitext(self._base_path)
        return f"{root}_part{self._part}{ext or '.ndjson'}"

    def _write(self, f: TextIO, ev: Dict[str, Any]) -> None:
        line = json.dumps(ev, ensure_ascii=False, separators=(",", ":"), default=str)
        f.write(line + "\n")
        self._lines += 1
        self._bytes += len(line) + 1
        self._last_write_ts_ms = int(ev.get("ts_ms") or 0)

    async def _writer_loop(self) -> None:
        f: Optional[TextIO] = None
        last_flush = time.monotonic()
        try:
            f = open(self._path, "a", encoding="utf-8")
            while not self._stop.is_set() or not self._q.empty():
                try:
                    ev = await asyncio.wait_for(self._q.get(), timeout=self._flush_s)
                    self._write(f, ev)
                except asyncio.TimeoutError:
                    pass
                except (TypeError, ValueError) as e:
                    self._last_error = f"encode_error:{e}"[:240]

                now = time.monotonic()
                if now - last_flush >= self._flush_s:
                    f.flush()
                    last_flush = now

                if self._rotate_max_bytes and self._bytes >= self._rotate_max_bytes:
                    f.close()
                    self._bytes = 0
                    self._path = self._rotate_path()
                    f = open(self._path, "a", encoding="utf-8")
            f.flush()
        except OSError as e:
            self._last_error = f"recorder_fatal:{e}"[:240]
            log.warning("recorder_fatal err=%s", e)
        finally:
            if f:
                f.close()
