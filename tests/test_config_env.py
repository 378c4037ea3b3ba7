#!/usr/bin/env python3
"""config_env: whitelisted env vars overlay bot.yaml values."""

import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_env import ALLOWED_ENV_OVERRIDES, apply_env_overrides
from errors import ConfigError


def _set_env(updates: dict[str, str | None]) -> dict[str, str | None]:
    prev: dict[str, str | None] = {}
    for key, value in updates.items():
        prev[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return prev


def _restore_env(prev: dict[str, str | None]) -> None:
    for key, value in prev.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _clear_all() -> dict[str, str | None]:
    return _set_env({name: None for name in ALLOWED_ENV_OVERRIDES})


def test_secrets_come_from_env() -> None:
    cfg = {"config": {"wallet": {"private_key": ""}, "telegram": {"bot_token": ""}}}
    prev = _clear_all()
    prev.update(_set_env({"PRIVATE_KEY": "0x" + "1" * 64, "TELEGRAM_BOT_TOKEN": "123:abc"}))
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["config"]["wallet"]["private_key"] == "0x" + "1" * 64
    assert out["config"]["telegram"]["bot_token"] == "123:abc"
    # Input is not mutated.
    assert cfg["config"]["wallet"]["private_key"] == ""


def test_typed_overrides() -> None:
    cfg = {"config": {"risk": {"risk_percent": 2.5, "max_daily_trades": 5}, "trading_hours": {"enabled": True}}}
    prev = _clear_all()
    prev.update(
        _set_env(
            {
                "RISK_PERCENT": "1.5",
                "MAX_DAILY_TRADES": "3",
                "TRADING_HOURS_ENABLED": "false",
                "ALLOWED_SYMBOLS": "BTCUSDT, SOLUSDT",
                "DRY_RUN": "1",
            }
        )
    )
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    c = out["config"]
    assert c["risk"]["risk_percent"] == 1.5
    assert c["risk"]["max_daily_trades"] == 3
    assert c["trading_hours"]["enabled"] is False
    assert c["allowed_symbols"] == ["BTCUSDT", "SOLUSDT"]
    assert c["dry_run"] is True


def test_unset_env_keeps_yaml_values() -> None:
    cfg = {"config": {"nado": {"rest_api": "https://gateway.test"}, "log_level": "debug"}}
    prev = _clear_all()
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out == cfg


def test_unknown_env_names_are_ignored() -> None:
    cfg = {"config": {"risk": {"leverage": 20}}}
    prev = _clear_all()
    prev.update(_set_env({"NADO_LEVERAGE": "50", "NADOBOT_SYMBOLS": "SOL"}))
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["config"]["risk"]["leverage"] == 20
    assert "symbols" not in out["config"]


def test_empty_config_gets_nested_sections() -> None:
    prev = _clear_all()
    prev.update(_set_env({"NADO_ARCHIVE_API": "https://archive.test/v1"}))
    try:
        out = apply_env_overrides({})
    finally:
        _restore_env(prev)

    assert out == {"config": {"nado": {"archive_api": "https://archive.test/v1"}}}


def test_malformed_numeric_env_is_rejected() -> None:
    cfg = {"config": {"risk": {"leverage": 20}}}
    prev = _clear_all()
    prev.update(_set_env({"LEVERAGE": "twenty"}))
    try:
        with pytest.raises(ConfigError, match="LEVERAGE"):
            apply_env_overrides(cfg)
    finally:
        _restore_env(prev)


def test_decimal_overrides_are_exact() -> None:
    prev = _clear_all()
    prev.update(_set_env({"STOP_LOSS_PERCENT": "0.3"}))
    try:
        out = apply_env_overrides({})
    finally:
        _restore_env(prev)

    assert out["config"]["risk"]["stop_loss_percent"] == Decimal("0.3")
