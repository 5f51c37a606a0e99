from __future__ import annotations

from typing import Optional


class ScalperError(Exception):
    """Base class for engine and adapter errors."""


class InstrumentError(ScalperError):
    """Instrument metadata is missing or unusable. Fatal at startup."""


class ExchangeError(ScalperError):
    """The venue rejected a request or could not be reached."""

    def __init__(self, message: str, ret_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.ret_code = ret_code
