#!/usr/bin/env python3
"""
Typed bot configuration.

bot.yaml (``config:`` root) is loaded with yaml.safe_load, overlaid with the
whitelisted environment variables from config_env, and turned into frozen
dataclasses. Every value is validated here so an invalid setup stops the
process before any exchange or Telegram call is made.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from config_env import apply_env_overrides
from env_utils import NADOBOT_CONFIG_PATH
from errors import ConfigError
from trading_window import parse_hhmm

_PRIVATE_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

DEFAULT_ALLOWED_SYMBOLS = ("BTCUSDT", "ETHUSDT", "ADAUSDT")


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    channel_id: str
    notify_chat_id: str
    poll_timeout_seconds: int = 30


@dataclass(frozen=True)
class NadoConfig:
    rest_api: str = "https://api.nado.xyz"
    ws_url: str = "wss://api.nado.xyz/ws"
    trigger_api: str = "https://trigger.nado.xyz"
    archive_api: str = ""
    subaccount: str = "default"


@dataclass(frozen=True)
class RiskConfig:
    risk_percent: Decimal = Decimal("2.5")
    leverage: Decimal = Decimal("20")
    take_profit_percent: Decimal = Decimal("0.8")
    stop_loss_percent: Decimal = Decimal("0.3")
    max_daily_trades: int = 5
    max_open_positions: int = 1
    min_balance: Decimal = Decimal("5")
    slippage_percent: Decimal = Decimal("0.2")


@dataclass(frozen=True)
class WindowConfig:
    enabled: bool = True
    start_utc: str = "05:00"
    end_utc: str = "14:00"


@dataclass(frozen=True)
class ExecutionConfig:
    request_timeout_seconds: float = 10.0
    entry_timeout_seconds: float = 10.0
    entry_fill_timeout_seconds: float = 60.0
    entry_fill_poll_interval_seconds: float = 2.0
    protection_delay_seconds: float = 1.0
    protective_retries: int = 2
    protective_retry_base_delay_seconds: float = 1.0
    protective_retry_max_delay_seconds: float = 10.0
    balance_retries: int = 3
    balance_retry_delay_seconds: float = 1.0
    shutdown_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class BotConfig:
    private_key: str
    telegram: TelegramConfig
    nado: NadoConfig = field(default_factory=NadoConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    window: WindowConfig = field(default_factory=WindowConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    allowed_symbols: Tuple[str, ...] = DEFAULT_ALLOWED_SYMBOLS
    dry_run: bool = False
    log_level: str = "info"
    log_file: Optional[str] = None

    def redacted(self) -> Dict[str, Any]:
        """Loggable view without secrets."""
        return {
            "nado": self.nado.__dict__,
            "risk": {k: str(v) for k, v in self.risk.__dict__.items()},
            "window": self.window.__dict__,
            "execution": self.execution.__dict__,
            "allowed_symbols": list(self.allowed_symbols),
            "dry_run": self.dry_run,
        }


# ---------------------------------------------------------------- loading
def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML config from path (missing file -> empty config)."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def get_nested(config: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Get nested config value with fallback."""
    current = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def _decimal(section: Dict[str, Any], key: str, default: Decimal) -> Decimal:
    raw = section.get(key, default)
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError) as e:
        raise ConfigError(f"{key}: not a number ({raw!r})") from e
    if not value.is_finite():
        raise ConfigError(f"{key}: not a finite number ({raw!r})")
    return value


def _int(section: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key}: not an integer ({raw!r})") from e
    if value < minimum:
        raise ConfigError(f"{key}: must be >= {minimum} (got {value})")
    return value


def _float(section: Dict[str, Any], key: str, default: float, minimum: float = 0.0) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key}: not a number ({raw!r})") from e
    if value < minimum:
        raise ConfigError(f"{key}: must be >= {minimum} (got {value})")
    return value


def _required(section: Dict[str, Any], key: str, env_name: str) -> str:
    value = str(section.get(key) or "").strip()
    if not value:
        raise ConfigError(f"Missing required setting: {env_name}")
    return value


def validate_private_key(raw: str) -> str:
    key = str(raw or "").strip()
    if not key:
        raise ConfigError("PRIVATE_KEY is required")
    bare = key[2:] if key.lower().startswith("0x") else key
    if len(bare) != 64:
        raise ConfigError(f"PRIVATE_KEY invalid: expected 64 hex chars, got {len(bare)}")
    if not _PRIVATE_KEY_RE.match(bare):
        raise ConfigError("PRIVATE_KEY must contain only hex characters (0-9, a-f, A-F)")
    return "0x" + bare


def build_risk_config(section: Dict[str, Any]) -> RiskConfig:
    d = RiskConfig()
    risk = RiskConfig(
        risk_percent=_decimal(section, "risk_percent", d.risk_percent),
        leverage=_decimal(section, "leverage", d.leverage),
        take_profit_percent=_decimal(section, "take_profit_percent", d.take_profit_percent),
        stop_loss_percent=_decimal(section, "stop_loss_percent", d.stop_loss_percent),
        max_daily_trades=_int(section, "max_daily_trades", d.max_daily_trades, minimum=1),
        max_open_positions=_int(section, "max_open_positions", d.max_open_positions, minimum=1),
        min_balance=_decimal(section, "min_balance", d.min_balance),
        slippage_percent=_decimal(section, "slippage_percent", d.slippage_percent),
    )
    if risk.risk_percent <= 0 or risk.risk_percent > 100:
        raise ConfigError("RISK_PERCENT must be between 0 and 100")
    if risk.leverage < 1 or risk.leverage > 100:
        raise ConfigError("LEVERAGE must be between 1 and 100")
    if risk.take_profit_percent <= 0:
        raise ConfigError("TAKE_PROFIT_PERCENT must be > 0")
    if risk.stop_loss_percent <= 0:
        raise ConfigError("STOP_LOSS_PERCENT must be > 0")
    if risk.min_balance < 0:
        raise ConfigError("MIN_BALANCE must be >= 0")
    if risk.slippage_percent < 0 or risk.slippage_percent >= 100:
        raise ConfigError("SLIPPAGE_PERCENT must be in [0, 100)")
    return risk


def build_window_config(section: Dict[str, Any]) -> WindowConfig:
    window = WindowConfig(
        enabled=bool(section.get("enabled", True)),
        start_utc=str(section.get("start_utc", "05:00")).strip(),
        end_utc=str(section.get("end_utc", "14:00")).strip(),
    )
    parse_hhmm(window.start_utc)
    parse_hhmm(window.end_utc)
    return window


def build_execution_config(section: Dict[str, Any]) -> ExecutionConfig:
    d = ExecutionConfig()
    return ExecutionConfig(
        request_timeout_seconds=_float(section, "request_timeout_seconds", d.request_timeout_seconds, 0.1),
        entry_timeout_seconds=_float(section, "entry_timeout_seconds", d.entry_timeout_seconds, 0.1),
        entry_fill_timeout_seconds=_float(section, "entry_fill_timeout_seconds", d.entry_fill_timeout_seconds, 0.1),
        entry_fill_poll_interval_seconds=_float(
            section, "entry_fill_poll_interval_seconds", d.entry_fill_poll_interval_seconds, 0.05
        ),
        protection_delay_seconds=_float(section, "protection_delay_seconds", d.protection_delay_seconds),
        protective_retries=_int(section, "protective_retries", d.protective_retries, minimum=1),
        protective_retry_base_delay_seconds=_float(
            section, "protective_retry_base_delay_seconds", d.protective_retry_base_delay_seconds
        ),
        protective_retry_max_delay_seconds=_float(
            section, "protective_retry_max_delay_seconds", d.protective_retry_max_delay_seconds
        ),
        balance_retries=_int(section, "balance_retries", d.balance_retries, minimum=1),
        balance_retry_delay_seconds=_float(section, "balance_retry_delay_seconds", d.balance_retry_delay_seconds),
        shutdown_timeout_seconds=_float(section, "shutdown_timeout_seconds", d.shutdown_timeout_seconds, 1.0),
    )


def build_config(raw: Dict[str, Any]) -> BotConfig:
    """Validate a raw (already env-overlaid) config mapping."""
    cfg = raw.get("config", {}) if isinstance(raw, dict) else {}
    if not isinstance(cfg, dict):
        raise ConfigError("config: must be a mapping")

    telegram_raw = get_nested(cfg, "telegram", default={}) or {}
    telegram = TelegramConfig(
        bot_token=_required(telegram_raw, "bot_token", "TELEGRAM_BOT_TOKEN"),
        channel_id=_required(telegram_raw, "channel_id", "TELEGRAM_CHANNEL_ID"),
        notify_chat_id=_required(telegram_raw, "notify_chat_id", "TELEGRAM_NOTIFY_CHAT_ID"),
        poll_timeout_seconds=_int(telegram_raw, "poll_timeout_seconds", 30, minimum=1),
    )

    nado_raw = get_nested(cfg, "nado", default={}) or {}
    d = NadoConfig()
    nado = NadoConfig(
        rest_api=str(nado_raw.get("rest_api") or d.rest_api).strip(),
        ws_url=str(nado_raw.get("ws_url") or d.ws_url).strip(),
        trigger_api=str(nado_raw.get("trigger_api") or d.trigger_api).strip(),
        archive_api=str(nado_raw.get("archive_api") or "").strip(),
        subaccount=str(nado_raw.get("subaccount") or d.subaccount).strip(),
    )
    if len(nado.subaccount.encode("utf-8")) > 12:
        raise ConfigError("SUBACCOUNT name must be at most 12 bytes")

    symbols_raw = cfg.get("allowed_symbols") or list(DEFAULT_ALLOWED_SYMBOLS)
    if isinstance(symbols_raw, str):
        symbols_raw = symbols_raw.split(",")
    symbols = tuple(s.strip().upper() for s in symbols_raw if str(s).strip())
    if not symbols:
        raise ConfigError("ALLOWED_SYMBOLS must list at least one symbol")

    return BotConfig(
        private_key=validate_private_key(get_nested(cfg, "wallet", "private_key", default="")),
        telegram=telegram,
        nado=nado,
        risk=build_risk_config(get_nested(cfg, "risk", default={}) or {}),
        window=build_window_config(get_nested(cfg, "trading_hours", default={}) or {}),
        execution=build_execution_config(get_nested(cfg, "execution", default={}) or {}),
        allowed_symbols=symbols,
        dry_run=bool(cfg.get("dry_run", False)),
        log_level=str(cfg.get("log_level") or "info").strip().lower(),
        log_file=(str(cfg.get("log_file")).strip() or None) if cfg.get("log_file") else None,
    )


def load_config(path: Optional[Path] = None) -> BotConfig:
    """Load bot.yaml + env overrides and validate."""
    raw = load_yaml(Path(path or NADOBOT_CONFIG_PATH))
    return build_config(apply_env_overrides(raw))
