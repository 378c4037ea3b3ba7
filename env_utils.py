"""Environment access for the bot: .env loading and strict typed readers.

Values that are present but malformed raise ConfigError naming the variable,
so a typo in RISK_PERCENT stops startup instead of trading on a default.
"""

from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterable, List, Optional

from dotenv import load_dotenv

from errors import ConfigError

PROJECT_ROOT = Path(__file__).resolve().parent

# Process env wins over .env.
load_dotenv(PROJECT_ROOT / ".env", override=False)

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _raw(name: str) -> str:
    return str(os.environ.get(name) or "").strip()


def env_present(name: str) -> bool:
    return _raw(name) != ""


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    return _raw(name) or default


def env_int(name: str, default: int) -> int:
    raw = _raw(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name}: expected an integer, got {raw!r}") from e


def env_float(name: str, default: float) -> float:
    raw = _raw(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name}: expected a number, got {raw!r}") from e


def env_decimal(name: str, default: Optional[Decimal]) -> Optional[Decimal]:
    """Exact decimal read; risk percents must not pick up binary float noise."""
    raw = _raw(name)
    if not raw:
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise ConfigError(f"{name}: expected a decimal, got {raw!r}") from e
    if not value.is_finite():
        raise ConfigError(f"{name}: expected a finite decimal, got {raw!r}")
    return value


def env_bool(name: str, default: bool) -> bool:
    raw = _raw(name).lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigError(f"{name}: expected true/false, got {raw!r}")


def env_list(name: str, default: Iterable[str] = ()) -> List[str]:
    """Comma separated list, e.g. ALLOWED_SYMBOLS=BTCUSDT,ETHUSDT."""
    raw = _raw(name)
    if not raw:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


NADOBOT_CONFIG_PATH = env_str("NADOBOT_CONFIG", str(PROJECT_ROOT / "bot.yaml"))
