#!/usr/bin/env python3
"""Signal channel post parsing."""

import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_parser import (
    extract_reference_price,
    is_signal_message,
    normalize_signal_type,
    normalize_symbol,
    parse_signal_text,
)

JSON_POST = """🚨 SIGNAL DETECTED 🚨

```json
{
  "symbol": "BTCUSDT",
  "signalType": "SHORT_SQUEEZE",
  "direction": "LONG",
  "stats": {"lastPrice": 50123.5, "oiChange": 4.2}
}
```
"""

PLAIN_POST = """SIGNAL DETECTED
Symbol: eth/usdt
Type: long flush
Confidence: high
"""


def test_json_block_signal() -> None:
    signal = parse_signal_text(JSON_POST)
    assert signal is not None
    assert signal.symbol == "BTCUSDT"
    assert signal.signal_type == "SHORT_SQUEEZE"
    assert signal.reference_price == Decimal("50123.5")


def test_plain_line_signal() -> None:
    signal = parse_signal_text(PLAIN_POST)
    assert signal is not None
    assert signal.symbol == "ETHUSDT"
    assert signal.signal_type == "LONG_FLUSH"
    assert signal.reference_price is None


def test_message_without_marker_is_ignored() -> None:
    assert not is_signal_message("Symbol: BTCUSDT\nType: SHORT_SQUEEZE")
    assert parse_signal_text("Symbol: BTCUSDT\nType: SHORT_SQUEEZE") is None
    assert parse_signal_text(None) is None


def test_unsupported_signal_type_is_dropped() -> None:
    assert parse_signal_text("SIGNAL DETECTED\nSymbol: BTCUSDT\nType: BREAKOUT") is None


def test_marker_without_fields_is_dropped() -> None:
    assert parse_signal_text("SIGNAL DETECTED but nothing else") is None


def test_broken_json_falls_back_to_lines() -> None:
    text = "SIGNAL DETECTED\n```json\n{not json}\n```\nSymbol: ADAUSDT\nType: SHORT_SQUEEZE"
    signal = parse_signal_text(text)
    assert signal is not None
    assert signal.symbol == "ADAUSDT"


@pytest.mark.parametrize(
    "raw, expected",
    [("btc/usdt", "BTCUSDT"), ("#BTCUSDT", "BTCUSDT"), ("BTC-USDT", "BTCUSDT"), (None, "")],
)
def test_normalize_symbol(raw, expected) -> None:
    assert normalize_symbol(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("SHORT_SQUEEZE", "SHORT_SQUEEZE"),
        ("short squeeze", "SHORT_SQUEEZE"),
        ("Long-Flush", "LONG_FLUSH"),
        ("LONGFLUSH", "LONG_FLUSH"),
        ("pump", None),
    ],
)
def test_normalize_signal_type(raw, expected) -> None:
    assert normalize_signal_type(raw) == expected


def test_reference_price_precedence() -> None:
    assert extract_reference_price({"referencePrice": "1,234.5", "stats": {"lastPrice": 1}}) == Decimal("1234.5")
    assert extract_reference_price({"price": 0, "stats": {"last_price": "2.5"}}) == Decimal("2.5")
    assert extract_reference_price({"stats": {"lastPrice": -3}}) is None
    assert extract_reference_price({}) is None
