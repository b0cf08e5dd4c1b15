"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

log = logging.getLogger("hedgearb")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class ArbitrageConfig:
    """Strategy parameters; fixed for the process lifetime."""
    entry_threshold_pct: float = 0.3
    exit_reduction_pct: float = 0.1
    position_notional: float = 100.0
    leverage: float = 5.0
    slippage_tolerance_pct: float = 0.1
    half_spread: float = 0.0005
    depth_stale_after_sec: float = 5.0
    order_timeout_sec: float = 5.0

    def __post_init__(self) -> None:
        if self.entry_threshold_pct <= 0:
            raise ValueError("entry_threshold_pct must be > 0")
        if self.exit_reduction_pct <= 0:
            raise ValueError("exit_reduction_pct must be > 0")
        if self.position_notional <= 0:
            raise ValueError("position_notional must be > 0")
        if self.leverage <= 0:
            raise ValueError("leverage must be > 0")
        if self.slippage_tolerance_pct < 0:
            raise ValueError("slippage_tolerance_pct must be >= 0")
        if not 0 <= self.half_spread < 1:
            raise ValueError("half_spread must be in [0, 1)")
        if self.depth_stale_after_sec <= 0:
            raise ValueError("depth_stale_after_sec must be > 0")
        if self.order_timeout_sec <= 0:
            raise ValueError("order_timeout_sec must be > 0")


@dataclass(frozen=True)
class Settings:
    symbol: str
    venue_a: str
    venue_b: str
    # Strategy
    entry_threshold_pct: float
    exit_reduction_pct: float
    position_notional: float
    leverage: float
    slippage_tolerance_pct: float
    half_spread: float
    depth_stale_after_sec: float
    order_timeout_sec: float
    # Feeds
    binance_ws_url: str
    bitmart_ws_url: str
    use_depth_binance: bool
    use_depth_bitmart: bool
    # Order transport
    dry_run: bool
    http_timeout: float
    binance_base_url: str
    binance_api_key: Optional[str]
    binance_secret_key: Optional[str]
    binance_qty_decimals: int
    bitmart_base_url: str
    bitmart_api_key: Optional[str]
    bitmart_secret_key: Optional[str]
    bitmart_memo: Optional[str]
    bitmart_contract_size: float
    # Observability
    log_level: str
    log_file: Optional[str]
    metrics_port: int
    dashboard: bool
    alert_webhook_url: Optional[str]
    alert_webhook_type: str  # generic, slack, discord
    alert_enabled: bool

    def dump(self) -> dict:
        """Settings without secrets, for startup logging."""
        data = self.__dict__.copy()
        for key in ("binance_api_key", "binance_secret_key", "bitmart_api_key", "bitmart_secret_key", "bitmart_memo"):
            if data.get(key):
                data[key] = "***"
        return data

    def arbitrage(self) -> ArbitrageConfig:
        return ArbitrageConfig(
            entry_threshold_pct=self.entry_threshold_pct,
            exit_reduction_pct=self.exit_reduction_pct,
            position_notional=self.position_notional,
            leverage=self.leverage,
            slippage_tolerance_pct=self.slippage_tolerance_pct,
            half_spread=self.half_spread,
            depth_stale_after_sec=self.depth_stale_after_sec,
            order_timeout_sec=self.order_timeout_sec,
        )

    @classmethod
    def load(cls) -> "Settings":
        log_file = os.getenv("ARB_LOG_FILE", "trading_log.jsonl")
        cfg = cls(
            symbol=os.getenv("ARB_SYMBOL", "XRPUSDT").upper(),
            venue_a=os.getenv("ARB_VENUE_A", "binance").lower(),
            venue_b=os.getenv("ARB_VENUE_B", "bitmart").lower(),
            entry_threshold_pct=_float_env("ARB_ENTRY_THRESHOLD_PCT", 0.3),
            exit_reduction_pct=_float_env("ARB_EXIT_REDUCTION_PCT", 0.1),
            position_notional=_float_env("ARB_POSITION_NOTIONAL", 100.0),
            leverage=_float_env("ARB_LEVERAGE", 5.0),
            slippage_tolerance_pct=_float_env("ARB_SLIPPAGE_TOLERANCE_PCT", 0.1),
            half_spread=_float_env("ARB_HALF_SPREAD", 0.0005),
            depth_stale_after_sec=_float_env("ARB_DEPTH_STALE_AFTER_SEC", 5.0),
            order_timeout_sec=_float_env("ARB_ORDER_TIMEOUT_SEC", 5.0),
            binance_ws_url=os.getenv("ARB_BINANCE_WS_URL", "wss://fstream.binance.com/ws"),
            bitmart_ws_url=os.getenv("ARB_BITMART_WS_URL", "wss://openapi-ws-v2.bitmart.com/api?protocol=1.1"),
            use_depth_binance=env_bool("ARB_DEPTH_BINANCE", False),
            use_depth_bitmart=env_bool("ARB_DEPTH_BITMART", True),
            dry_run=env_bool("ARB_DRY_RUN", True),
            http_timeout=_float_env("ARB_HTTP_TIMEOUT", 5.0),
            binance_base_url=os.getenv("ARB_BINANCE_BASE_URL", "https://fapi.binance.com"),
            binance_api_key=os.getenv("ARB_BINANCE_API_KEY"),
            binance_secret_key=os.getenv("ARB_BINANCE_SECRET_KEY"),
            binance_qty_decimals=_int_env("ARB_BINANCE_QTY_DECIMALS", 1),
            bitmart_base_url=os.getenv("ARB_BITMART_BASE_URL", "https://api-cloud-v2.bitmart.com"),
            bitmart_api_key=os.getenv("ARB_BITMART_API_KEY"),
            bitmart_secret_key=os.getenv("ARB_BITMART_SECRET_KEY"),
            bitmart_memo=os.getenv("ARB_BITMART_MEMO"),
            bitmart_contract_size=_float_env("ARB_BITMART_CONTRACT_SIZE", 1.0),
            log_level=os.getenv("ARB_LOG_LEVEL", "INFO").upper(),
            log_file=log_file or None,
            metrics_port=_int_env("ARB_METRICS_PORT", 0),
            dashboard=env_bool("ARB_DASHBOARD", False),
            alert_webhook_url=os.getenv("ARB_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("ARB_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("ARB_ALERT_ENABLED", True),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        # Raises ValueError on any out-of-range strategy parameter.
        self.arbitrage()
        if self.venue_a == self.venue_b:
            raise ValueError("ARB_VENUE_A and ARB_VENUE_B must differ")
        if self.http_timeout <= 0:
            raise ValueError("ARB_HTTP_TIMEOUT must be > 0")
        if self.bitmart_contract_size <= 0:
            raise ValueError("ARB_BITMART_CONTRACT_SIZE must be > 0")
        if self.alert_webhook_type not in {"generic", "slack", "discord"}:
            raise ValueError("ARB_ALERT_WEBHOOK_TYPE must be generic, slack or discord")
        if self.metrics_port < 0:
            raise ValueError("ARB_METRICS_PORT must be >= 0")

        if not self.dry_run:
            missing = [
                name for name, val in (
                    ("ARB_BINANCE_API_KEY", self.binance_api_key),
                    ("ARB_BINANCE_SECRET_KEY", self.binance_secret_key),
                    ("ARB_BITMART_API_KEY", self.bitmart_api_key),
                    ("ARB_BITMART_SECRET_KEY", self.bitmart_secret_key),
                    ("ARB_BITMART_MEMO", self.bitmart_memo),
                ) if not val
            ]
            if missing:
                raise ValueError(f"Live trading requires: {', '.join(missing)}")

        if self.leverage > 20:
            log.warning(
                f"WARNING: ARB_LEVERAGE is {self.leverage}x. "
                "A one-legged fill at this leverage can liquidate quickly."
            )
        if self.exit_reduction_pct > self.entry_threshold_pct:
            log.warning(
                "WARNING: ARB_EXIT_REDUCTION_PCT exceeds ARB_ENTRY_THRESHOLD_PCT; "
                "positions may only close once the gap inverts."
            )
        if self.half_spread == 0:
            log.warning("WARNING: ARB_HALF_SPREAD is 0; spread-mode quotes equal the last trade price.")


def _sanity_check(cfg: Settings) -> None:
    """Log the effective strategy settings once at startup so overrides are obvious."""
    payload = {
        "event": "config_loaded",
        "symbol": cfg.symbol,
        "venues": [cfg.venue_a, cfg.venue_b],
        "entry_threshold_pct": cfg.entry_threshold_pct,
        "exit_reduction_pct": cfg.exit_reduction_pct,
        "position_notional": cfg.position_notional,
        "dry_run": cfg.dry_run,
    }
    log.info(json.dumps(payload))
