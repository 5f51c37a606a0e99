from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from .bot.engine import QuoteEngine
from .config import Settings
from .errors import ExchangeError, InstrumentError
from .exchange.bybit import BybitExchange
from .exchange.dry_run import DryRunExchange
from .telemetry.sink import StatsTelemetry
from .telemetry.web import create_app
from .utils.logging_compat import setup_logging
from .utils.ndjson_recorder import NDJSONRecorder

log = logging.getLogger("app.main")


def build_adapter(s: Settings) -> BybitExchange:
    return DryRunExchange(s) if s.DRY_RUN else BybitExchange(s)


async def run(s: Settings) -> None:
    log.info(
        "starting symbol=%s category=%s dry_run=%s testnet=%s",
        s.SYMBOL, s.CATEGORY, s.DRY_RUN, s.BYBIT_TESTNET,
    )
    adapter = build_adapter(s)
    # no tick size / qty step -> InstrumentError, nothing below runs
    await adapter.init()
    try:
        await adapter.set_leverage(s.LEVERAGE)
    except ExchangeError as e:
        log.error("set_leverage_failed err=%s", e)

    recorder = NDJSONRecorder(
        NDJSONRecorder.make_default_path(s.EVENT_LOG_DIR, s.SYMBOL),
        enabled=s.EVENT_LOG_ENABLED,
    )
    telemetry = StatsTelemetry(s.SYMBOL, recorder=recorder)
    engine = QuoteEngine(s, adapter, telemetry)
    engine.attach()

    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task] = None
    if s.WEB_ENABLED:
        app = create_app(telemetry, engine.status, push_ms=s.STATS_PUSH_MS)
        server = uvicorn.Server(uvicorn.Config(app, host=s.HOST, port=s.PORT, log_level="warning"))
        # signals are handled below
        server.install_signal_handlers = lambda: None
        server_task = asyncio.create_task(server.serve(), name="status_web")
        log.info("status_web listening=http://%s:%s", s.HOST, s.PORT)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await recorder.start()
    engine.start()
    adapter.start()
    try:
        await stop.wait()
        log.warning("shutdown_requested")
    finally:
        # engine first: its cancel-all still needs the REST session
        await engine.stop()
        await adapter.stop()
        await recorder.stop()
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task
        log.info("stopped")


def main() -> int:
    s = Settings()
    setup_logging(s.LOG_LEVEL)
    try:
        asyncio.run(run(s))
    except InstrumentError as e:
        log.error("fatal_instrument err=%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
