#!/usr/bin/env python3
"""
Signal parser for the Telegram signal channel.

A signal post contains the marker ``SIGNAL DETECTED`` and either a fenced
JSON block:

    ```json
    {"symbol": "BTCUSDT", "signalType": "SHORT_SQUEEZE", "stats": {"lastPrice": 50000}}
    ```

or plain ``Symbol:`` / ``Type:`` lines. Any direction field on the message is
ignored; the strategy derives the side from the signal type.
"""

from __future__ import annotations

import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from events import VALID_SIGNAL_TYPES, Signal
from logging_utils import get_logger

SIGNAL_MARKER = "SIGNAL DETECTED"

_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_LINE_RE = re.compile(r"\b(symbol|type)\s*:\s*(.+?)\s*$", re.IGNORECASE)

# Aliases seen in channel posts.
SIGNAL_TYPE_ALIASES = {
    "SHORT_SQUEEZE": "SHORT_SQUEEZE",
    "SHORTSQUEEZE": "SHORT_SQUEEZE",
    "SQUEEZE": "SHORT_SQUEEZE",
    "LONG_FLUSH": "LONG_FLUSH",
    "LONGFLUSH": "LONG_FLUSH",
    "FLUSH": "LONG_FLUSH",
}

log = get_logger("signal_parser")


def is_signal_message(text: Optional[str]) -> bool:
    return bool(text) and SIGNAL_MARKER in text


def normalize_symbol(raw: Any) -> str:
    """'btc/usdt', '#BTCUSDT', 'BTC-USDT' -> 'BTCUSDT'."""
    s = str(raw or "").strip().upper()
    s = s.lstrip("#$")
    return re.sub(r"[^A-Z0-9]", "", s)


def normalize_signal_type(raw: Any) -> Optional[str]:
    key = re.sub(r"[\s\-]+", "_", str(raw or "").strip().upper())
    mapped = SIGNAL_TYPE_ALIASES.get(key) or SIGNAL_TYPE_ALIASES.get(key.replace("_", ""))
    return mapped if mapped in VALID_SIGNAL_TYPES else None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        dec = Decimal(str(value).replace(",", "").strip())
    except (InvalidOperation, ValueError):
        return None
    if not dec.is_finite() or dec <= 0:
        return None
    return dec


def extract_reference_price(data: Dict[str, Any]) -> Optional[Decimal]:
    """referencePrice / price, then stats.lastPrice."""
    for key in ("referencePrice", "reference_price", "price"):
        price = _to_decimal(data.get(key))
        if price is not None:
            return price
    stats = data.get("stats")
    if isinstance(stats, dict):
        for key in ("lastPrice", "last_price"):
            price = _to_decimal(stats.get(key))
            if price is not None:
                return price
    return None


def parse_json_block(text: str) -> Optional[Dict[str, Any]]:
    m = _JSON_BLOCK_RE.search(text)
    if not m:
        return None
    try:
        data = json.loads(m.group(1))
    except (TypeError, ValueError) as e:
        log.warning(f"Signal JSON block unreadable: {e}")
        return None
    return data if isinstance(data, dict) else None


def parse_plain_lines(text: str) -> Optional[Dict[str, Any]]:
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        m = _LINE_RE.search(line)
        if m:
            fields.setdefault(m.group(1).lower(), m.group(2))
    if "symbol" not in fields or "type" not in fields:
        return None
    return {"symbol": fields["symbol"], "signalType": fields["type"], "stats": {}}


def signal_from_dict(data: Dict[str, Any]) -> Optional[Signal]:
    symbol = normalize_symbol(data.get("symbol"))
    raw_type = data.get("signalType") or data.get("signal_type") or data.get("type")
    signal_type = normalize_signal_type(raw_type)
    if not symbol:
        log.debug("Signal without symbol ignored")
        return None
    if signal_type is None:
        log.debug(f"Signal {symbol} with unsupported type {raw_type!r} ignored")
        return None
    return Signal(symbol=symbol, signal_type=signal_type, reference_price=extract_reference_price(data))


def parse_signal_text(text: Optional[str]) -> Optional[Signal]:
    """Parse a channel post. Returns None when it is not a usable signal."""
    if not is_signal_message(text):
        return None
    data = parse_json_block(text) or parse_plain_lines(text)
    if data is None:
        log.warning("SIGNAL DETECTED message without symbol/type")
        return None
    return signal_from_dict(data)
