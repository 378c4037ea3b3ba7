"""Apply env overrides to bot.yaml config."""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, Tuple

from env_utils import (
    env_present,
    env_str,
    env_int,
    env_float,
    env_bool,
    env_decimal,
    env_list,
)


PathKey = Tuple[str, ...]

# Secrets and connectivity always come from the environment; risk and timing
# may be overridden for quick operator changes without editing bot.yaml.
ALLOWED_ENV_OVERRIDES = {
    "PRIVATE_KEY",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHANNEL_ID",
    "TELEGRAM_NOTIFY_CHAT_ID",
    "NADO_REST_API",
    "NADO_WS_URL",
    "NADO_TRIGGER_API",
    "NADO_ARCHIVE_API",
    "SUBACCOUNT",
    "RISK_PERCENT",
    "LEVERAGE",
    "TAKE_PROFIT_PERCENT",
    "STOP_LOSS_PERCENT",
    "MAX_DAILY_TRADES",
    "MAX_OPEN_POSITIONS",
    "MIN_BALANCE",
    "SLIPPAGE_PERCENT",
    "TRADING_HOURS_ENABLED",
    "TRADING_START_UTC",
    "TRADING_END_UTC",
    "ALLOWED_SYMBOLS",
    "ENTRY_FILL_TIMEOUT_SECONDS",
    "PROTECTION_DELAY_SECONDS",
    "LOG_LEVEL",
    "DRY_RUN",
}


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}

    def override(path: PathKey, env_name: str, kind: str = "str") -> None:
        if env_name not in ALLOWED_ENV_OVERRIDES or not env_present(env_name):
            return
        default = _get_path(cfg, path)
        if kind == "int":
            value = env_int(env_name, default if isinstance(default, int) else 0)
        elif kind == "float":
            value = env_float(env_name, float(default) if default is not None else 0.0)
        elif kind == "decimal":
            value = env_decimal(env_name, default)
        elif kind == "bool":
            value = env_bool(env_name, bool(default) if default is not None else False)
        elif kind == "list":
            value = env_list(env_name, default if isinstance(default, list) else [])
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    # Wallet + Telegram
    override(("config", "wallet", "private_key"), "PRIVATE_KEY")
    override(("config", "telegram", "bot_token"), "TELEGRAM_BOT_TOKEN")
    override(("config", "telegram", "channel_id"), "TELEGRAM_CHANNEL_ID")
    override(("config", "telegram", "notify_chat_id"), "TELEGRAM_NOTIFY_CHAT_ID")

    # Nado endpoints
    override(("config", "nado", "rest_api"), "NADO_REST_API")
    override(("config", "nado", "ws_url"), "NADO_WS_URL")
    override(("config", "nado", "trigger_api"), "NADO_TRIGGER_API")
    override(("config", "nado", "archive_api"), "NADO_ARCHIVE_API")
    override(("config", "nado", "subaccount"), "SUBACCOUNT")

    # Risk
    override(("config", "risk", "risk_percent"), "RISK_PERCENT", kind="decimal")
    override(("config", "risk", "leverage"), "LEVERAGE", kind="decimal")
    override(("config", "risk", "take_profit_percent"), "TAKE_PROFIT_PERCENT", kind="decimal")
    override(("config", "risk", "stop_loss_percent"), "STOP_LOSS_PERCENT", kind="decimal")
    override(("config", "risk", "max_daily_trades"), "MAX_DAILY_TRADES", kind="int")
    override(("config", "risk", "max_open_positions"), "MAX_OPEN_POSITIONS", kind="int")
    override(("config", "risk", "min_balance"), "MIN_BALANCE", kind="decimal")
    override(("config", "risk", "slippage_percent"), "SLIPPAGE_PERCENT", kind="decimal")

    # Trading hours + symbols
    override(("config", "trading_hours", "enabled"), "TRADING_HOURS_ENABLED", kind="bool")
    override(("config", "trading_hours", "start_utc"), "TRADING_START_UTC")
    override(("config", "trading_hours", "end_utc"), "TRADING_END_UTC")
    override(("config", "allowed_symbols"), "ALLOWED_SYMBOLS", kind="list")

    # Execution timing
    override(("config", "execution", "entry_fill_timeout_seconds"), "ENTRY_FILL_TIMEOUT_SECONDS", kind="float")
    override(("config", "execution", "protection_delay_seconds"), "PROTECTION_DELAY_SECONDS", kind="float")

    # Runtime
    override(("config", "log_level"), "LOG_LEVEL")
    override(("config", "dry_run"), "DRY_RUN", kind="bool")

    return cfg
