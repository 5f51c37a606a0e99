from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings.

    Values can be overridden via environment variables or a .env file.
    The object is frozen once validated; every field has a default so the
    engine starts in DRY_RUN against the testnet with no environment at all.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # ---- venue ----
    BYBIT_KEY: str = ""
    BYBIT_SECRET: str = ""
    BYBIT_TESTNET: bool = True
    CATEGORY: Literal["linear", "inverse", "spot", "option"] = "linear"
    SYMBOL: str = "BTCUSDT"
    LEVERAGE: float = Field(3.0, gt=0)

    # Serial REST pacing (~8 req/s ceiling).
    REST_MIN_INTERVAL_MS: int = Field(120, ge=0)
    RECV_WINDOW_MS: int = Field(5000, gt=0)

    # ---- quoting ----
    ORDER_QTY: float = Field(0.001, gt=0)
    MIN_SPREAD_TICKS: float = Field(2, ge=0)
    # Static edge, used as the dynamic-edge base when DYN_EDGE_BASE is 0.
    EDGE_TICKS: int = Field(2, ge=0)
    DYN_EDGE_BASE: int = Field(0, ge=0)
    # 0 -> base + 6
    DYN_EDGE_MAX: int = Field(0, ge=0)
    DYN_EDGE_VOL_SCALE: float = Field(4.0, ge=0)
    MIN_NET_SPREAD_TICKS: float = 1
    MIN_EXPECTED_PROFIT_TICKS: float = 1
    CANCEL_AFTER_MS: int = Field(2500, gt=0)
    TIME_IN_FORCE: Literal["GTC", "IOC", "FOK", "PostOnly"] = "PostOnly"

    # ---- directional filter ----
    SIZE_IMBALANCE_TOLERANCE: float = Field(0.3, ge=0)
    AGGRESSOR_BIAS_TOL: float = Field(0.3, ge=0)

    # ---- market state windows ----
    TRADE_AGG_WINDOW_MS: int = Field(1000, gt=0)
    VOL_WINDOW_MS: int = Field(30_000, gt=0)
    VOL_REFRESH_MS: int = Field(300, ge=0)
    BREAKOUT_WINDOW_MS: int = Field(15_000, gt=0)
    BREAKOUT_MIN_TRADES: int = Field(5, ge=2)

    # ---- risk / rate ----
    MAX_OPEN_ORDERS: int = Field(2, ge=0)
    MAX_ORDERS_PER_MINUTE: int = Field(30, ge=0)
    # Entry pause after a failed placement; 0 disables.
    GLOBAL_COOLDOWN_MS: int = Field(0, ge=0)
    CANCEL_ALL_ON_STOP: bool = True

    # ---- mode ----
    DRY_RUN: bool = True

    # ---- telemetry ----
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    EVENT_LOG_ENABLED: bool = False
    EVENT_LOG_DIR: str = "logs"
    WEB_ENABLED: bool = False
    HOST: str = "127.0.0.1"
    PORT: int = Field(3005, gt=0, lt=65536)
    STATS_PUSH_MS: int = Field(1000, ge=100)

    @model_validator(mode="after")
    def _check_edges(self) -> "Settings":
        if self.DYN_EDGE_MAX and self.DYN_EDGE_MAX < max(1, self.DYN_EDGE_BASE or self.EDGE_TICKS or 1):
            raise ValueError("DYN_EDGE_MAX must be >= the effective edge base")
        if not self.SYMBOL.strip():
            raise ValueError("SYMBOL must not be empty")
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.BYBIT_KEY and self.BYBIT_SECRET)
