#!/usr/bin/env python3
"""bot_config validation and YAML + env loading."""

import sys
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot_config import build_config, load_config, validate_private_key
from config_env import ALLOWED_ENV_OVERRIDES
from errors import ConfigError

KEY = "ab" * 32


def _raw(**sections) -> dict:
    cfg = {
        "wallet": {"private_key": KEY},
        "telegram": {"bot_token": "123:abc", "channel_id": "-100", "notify_chat_id": "42"},
    }
    cfg.update(sections)
    return {"config": cfg}


def test_defaults_apply() -> None:
    cfg = build_config(_raw())
    assert cfg.private_key == "0x" + KEY
    assert cfg.risk.risk_percent == Decimal("2.5")
    assert cfg.risk.leverage == Decimal("20")
    assert cfg.risk.max_daily_trades == 5
    assert cfg.risk.max_open_positions == 1
    assert cfg.window.start_utc == "05:00" and cfg.window.end_utc == "14:00"
    assert cfg.allowed_symbols == ("BTCUSDT", "ETHUSDT", "ADAUSDT")
    assert cfg.nado.subaccount == "default"
    assert cfg.dry_run is False


def test_sections_are_read() -> None:
    cfg = build_config(
        _raw(
            risk={"risk_percent": 1, "leverage": 5, "take_profit_percent": "1.2", "max_daily_trades": 2},
            trading_hours={"enabled": False, "start_utc": "22:00", "end_utc": "02:00"},
            execution={"entry_fill_timeout_seconds": 30, "protective_retries": 4},
            allowed_symbols=["btcusdt", " solusdt "],
            dry_run=True,
        )
    )
    assert cfg.risk.risk_percent == Decimal("1")
    assert cfg.risk.take_profit_percent == Decimal("1.2")
    assert cfg.risk.max_daily_trades == 2
    assert cfg.window.enabled is False
    assert cfg.execution.entry_fill_timeout_seconds == 30.0
    assert cfg.execution.protective_retries == 4
    assert cfg.allowed_symbols == ("BTCUSDT", "SOLUSDT")
    assert cfg.dry_run is True


@pytest.mark.parametrize(
    "key, expected",
    [
        (KEY, "0x" + KEY),
        ("0x" + KEY.upper(), "0x" + KEY.upper()),
    ],
)
def test_private_key_accepts_optional_prefix(key, expected) -> None:
    assert validate_private_key(key) == expected


@pytest.mark.parametrize("key", ["", "0x1234", "zz" * 32, KEY + "00"])
def test_private_key_rejects_bad_values(key) -> None:
    with pytest.raises(ConfigError):
        validate_private_key(key)


@pytest.mark.parametrize(
    "risk",
    [
        {"risk_percent": 0},
        {"risk_percent": 101},
        {"leverage": 0.5},
        {"leverage": 125},
        {"stop_loss_percent": 0},
        {"max_daily_trades": 0},
        {"risk_percent": "lots"},
    ],
)
def test_invalid_risk_rejected(risk) -> None:
    with pytest.raises(ConfigError):
        build_config(_raw(risk=risk))


def test_missing_telegram_setting_rejected() -> None:
    raw = _raw()
    raw["config"]["telegram"]["channel_id"] = ""
    with pytest.raises(ConfigError, match="TELEGRAM_CHANNEL_ID"):
        build_config(raw)


def test_bad_window_time_rejected() -> None:
    with pytest.raises(ConfigError):
        build_config(_raw(trading_hours={"start_utc": "25:00"}))


def test_long_subaccount_name_rejected() -> None:
    with pytest.raises(ConfigError):
        build_config(_raw(nado={"subaccount": "a-very-long-subaccount"}))


def test_load_config_overlays_env(tmp_path, monkeypatch) -> None:
    for name in ALLOWED_ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "bot.yaml"
    raw = _raw(risk={"leverage": 10})
    raw["config"]["wallet"]["private_key"] = ""
    path.write_text(yaml.safe_dump(raw))
    monkeypatch.setenv("PRIVATE_KEY", "0x" + KEY)
    monkeypatch.setenv("LEVERAGE", "15")

    cfg = load_config(path)

    assert cfg.private_key == "0x" + KEY
    assert cfg.risk.leverage == Decimal("15")


def test_load_config_missing_file_needs_env(tmp_path, monkeypatch) -> None:
    for name in ALLOWED_ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(ConfigError, match="PRIVATE_KEY|TELEGRAM"):
        load_config(tmp_path / "missing.yaml")


def test_redacted_view_has_no_secrets() -> None:
    view = build_config(_raw()).redacted()
    assert KEY not in str(view)
    assert "123:abc" not in str(view)
