from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from .sink import StatsTelemetry

log = logging.getLogger("telemetry.web")

_INDEX_HTML = """<!doctype html>
<html><head><meta charset="utf-8"><title>scalperbot</title>
<style>body{font:13px monospace;margin:1em}pre{background:#f4f4f4;padding:.5em}</style></head>
<body><h3>scalperbot</h3><pre id="stats">connecting...</pre><pre id="log"></pre>
<script>
const proto = location.protocol === "https:" ? "wss" : "ws";
const ws = new WebSocket(`${proto}://${location.host}${location.pathname.replace(/\\/$/, "")}/ws`);
const logEl = document.getElementById("log");
ws.onmessage = (m) => {
  const msg = JSON.parse(m.data);
  if (msg.type === "stats") document.getElementById("stats").textContent = JSON.stringify(msg.payload, null, 2);
  if (msg.type === "log") logEl.textContent = JSON.stringify(msg.payload) + "\\n" + logEl.textContent.slice(0, 20000);
};
</script></body></html>
"""


def create_app(
    telemetry: StatsTelemetry,
    engine_status: Callable[[], Dict[str, Any]],
    push_ms: int = 1000,
) -> FastAPI:
    app = FastAPI(title="scalperbot status")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def _payload() -> Dict[str, Any]:
        return {
            "stats": telemetry.snapshot(),
            "engine": engine_status(),
            "event_log": telemetry.recorder_stats(),
        }

    @app.get("/", response_class=HTMLResponse)
    async def index() -> HTMLResponse:
        return HTMLResponse(_INDEX_HTML)

    @app.get("/api/stats")
    async def api_stats() -> JSONResponse:
        return JSONResponse(_payload())

    @app.get("/api/events")
    async def api_events(n: int = 200) -> JSONResponse:
        return JSONResponse(telemetry.recent_events(n))

    @app.websocket("/ws")
    async def ws_stats(sock: WebSocket) -> None:
        await sock.accept()
        q = telemetry.subscribe()
        try:
            await sock.send_json({"type": "stats", "payload": _payload()})
            for ev in telemetry.recent_events(500):
                await sock.send_json({"type": "log", "payload": ev})
            while True:
                try:
                    msg = await asyncio.wait_for(q.get(), timeout=push_ms / 1000.0)
                except asyncio.TimeoutError:
                    msg = None
                if msg is not None and msg["type"] == "log":
                    await sock.send_json(msg)
                else:
                    await sock.send_json({"type": "stats", "payload": _payload()})
        except WebSocketDisconnect:
            return
        except RuntimeError as e:
            log.warning("stats_ws_error err=%s", e)
        finally:
            telemetry.unsubscribe(q)

    return app
