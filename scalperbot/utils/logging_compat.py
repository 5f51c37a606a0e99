from __future__ import annotations

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    # websockets logs every keepalive at DEBUG; keep our own DEBUG readable
    logging.getLogger("websockets").setLevel(max(logging.INFO, logging.getLogger().level))
