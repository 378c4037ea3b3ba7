#!/usr/bin/env python3
"""Nado adapter: X18 math, order signing, dry-run paths."""

import asyncio
import logging
import sys
from decimal import Decimal
from pathlib import Path

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from errors import ExchangeError
from exchanges.base import (
    ORDER_KIND_LIMIT,
    ORDER_KIND_TRIGGER,
    STATUS_FILLED,
    STATUS_UNKNOWN,
    Instrument,
    OrderAccepted,
)
from exchanges.nado_adapter import (
    REDUCE_ONLY_BIT,
    NadoAdapter,
    exchange_symbol,
    from_x18,
    make_expiration,
    make_nonce,
    subaccount_bytes32,
    to_x18,
)

PRIVATE_KEY = "0x" + "11" * 32
INSTRUMENT = Instrument(
    id=2,
    symbol="BTC-PERP",
    mark_price=Decimal("50000"),
    size_increment=Decimal("0.001"),
    price_increment=Decimal("1"),
    min_size=Decimal("0.001"),
)


def _adapter(dry_run: bool = True) -> NadoAdapter:
    return NadoAdapter(
        log=logging.getLogger("test.nado"),
        private_key=PRIVATE_KEY,
        rest_url="https://gateway.test/v1/",
        trigger_url="https://trigger.test/v1",
        dry_run=dry_run,
    )


def test_x18_conversions() -> None:
    assert to_x18(Decimal("1.5")) == 1_500_000_000_000_000_000
    assert to_x18("0.000000000000000001") == 1
    assert to_x18(Decimal("-0.25")) == -250_000_000_000_000_000
    assert from_x18("-2500000000000000000") == Decimal("-2.5")
    assert from_x18(None) == 0
    assert from_x18("") == 0


def test_exchange_symbol_mapping() -> None:
    assert exchange_symbol("BTCUSDT") == "BTC-PERP"
    assert exchange_symbol("eth-usdt") == "ETH-PERP"
    assert exchange_symbol("SOL") == "SOL-PERP"
    assert exchange_symbol("BTC-PERP") == "BTC-PERP"


def test_subaccount_is_address_plus_padded_name() -> None:
    raw = subaccount_bytes32("0x" + "ab" * 20, "default")
    assert len(raw) == 32
    assert raw[:20] == bytes.fromhex("ab" * 20)
    assert raw[20:] == b"default" + b"\x00" * 5
    with pytest.raises(ValueError):
        subaccount_bytes32("0x1234")


def test_expiration_and_nonce_bits() -> None:
    value = make_expiration(seconds=100, order_type=1, reduce_only=True, now=1000)
    assert value & ((1 << 61) - 1) == 1100
    assert value & REDUCE_ONLY_BIT
    assert value >> 62 == 1
    assert make_expiration(seconds=0, now=5) == 5
    assert make_nonce(now_ms=1000) >> 20 == 91_000


def test_prepare_order_signs_recoverable_digest() -> None:
    adapter = _adapter()
    request = adapter.prepare_order(INSTRUMENT, is_buy=False, quantity=Decimal("0.0109"), price=Decimal("49900.4"))

    assert request.kind == ORDER_KIND_LIMIT
    assert request.price == Decimal("49900")
    assert request.quantity == Decimal("0.010")
    assert request.order_id.startswith("0x") and len(request.order_id) == 66

    place = request.payload["place_order"]
    order = place["order"]
    assert place["product_id"] == 2
    assert int(order["amount"]) == -10_000_000_000_000_000
    assert int(order["priceX18"]) == 49_900 * 10 ** 18
    assert order["sender"] == adapter.sender_hex
    assert "trigger" not in place
    assert not int(order["expiration"]) & REDUCE_ONLY_BIT

    message = adapter._order_message(
        2, int(order["priceX18"]), int(order["amount"]), int(order["expiration"]), int(order["nonce"])
    )
    recovered = Account.recover_message(encode_typed_data(full_message=message), signature=place["signature"])
    assert recovered == Account.from_key(PRIVATE_KEY).address


def test_prepare_stop_order_carries_trigger() -> None:
    adapter = _adapter()
    request = adapter.prepare_order(
        INSTRUMENT,
        is_buy=True,
        quantity=Decimal("0.01"),
        price=Decimal("50250"),
        reduce_only=True,
        kind=ORDER_KIND_TRIGGER,
        trigger_price=Decimal("50150"),
    )
    place = request.payload["place_order"]
    assert place["trigger"] == {"price_above": str(50_150 * 10 ** 18)}
    assert place["digest"] == request.order_id
    assert int(place["order"]["expiration"]) & REDUCE_ONLY_BIT

    with pytest.raises(ValueError):
        adapter.prepare_order(INSTRUMENT, True, Decimal("0.01"), Decimal("1"), reduce_only=True, kind=ORDER_KIND_TRIGGER)


def test_dry_run_never_touches_the_network() -> None:
    adapter = _adapter(dry_run=True)
    entry = adapter.prepare_order(INSTRUMENT, is_buy=True, quantity=Decimal("0.01"), price=Decimal("50000"))
    tp = adapter.prepare_order(INSTRUMENT, is_buy=False, quantity=Decimal("0.01"), price=Decimal("50400"), reduce_only=True)

    async def run():
        return (
            await adapter.submit_order(entry),
            await adapter.submit_order(tp),
            await adapter.cancel_order(2, tp.order_id),
            await adapter.get_order_status(2, entry.order_id),
        )

    entry_result, tp_result, cancelled, status = asyncio.run(run())
    assert isinstance(entry_result, OrderAccepted) and entry_result.filled is True
    assert entry_result.fill_price == Decimal("50000")
    assert tp_result.filled is False
    assert cancelled is True
    assert status.status == STATUS_FILLED


def test_wallet_address_from_key() -> None:
    adapter = _adapter()
    assert adapter.wallet_address == Account.from_key(PRIVATE_KEY).address
    assert adapter.sender_hex.lower().startswith(adapter.wallet_address.lower())
    assert adapter.rest_url == "https://gateway.test/v1"


def _scripted_post(adapter, responses):
    calls = []

    async def fake_post(url, payload, operation):
        calls.append((url, operation))
        return responses.pop(0)

    adapter._post = fake_post
    return calls


def test_off_book_order_without_archive_is_unknown() -> None:
    adapter = _adapter(dry_run=False)
    _scripted_post(adapter, [{"status": "failure", "error": "Order not found"}])
    status = asyncio.run(adapter.get_order_status(2, "0x" + "ab" * 32))
    assert status.status == STATUS_UNKNOWN


def test_archive_decides_filled_or_cancelled() -> None:
    adapter = _adapter(dry_run=False)
    adapter.archive_url = "https://archive.test/v1"
    _scripted_post(
        adapter,
        [
            {"status": "failure"},
            {"orders": [{"amount": str(10 ** 16), "base_filled": str(10 ** 16), "quote_filled": str(500 * 10 ** 18)}]},
        ],
    )
    status = asyncio.run(adapter.get_order_status(2, "0x" + "cd" * 32))
    assert status.status == STATUS_FILLED
    assert status.avg_price == Decimal("50000")


def test_timed_out_stop_is_tracked_as_trigger_order() -> None:
    adapter = _adapter(dry_run=False)
    stop = adapter.prepare_order(
        INSTRUMENT, is_buy=True, quantity=Decimal("0.01"), price=Decimal("50250"),
        reduce_only=True, kind=ORDER_KIND_TRIGGER, trigger_price=Decimal("50150"),
    )

    async def hanging_post(url, payload, operation):
        raise ExchangeError(operation, "timed out")

    adapter._post = hanging_post
    with pytest.raises(ExchangeError):
        asyncio.run(adapter.submit_order(stop))

    calls = _scripted_post(adapter, [])
    status = asyncio.run(adapter.get_order_status(2, stop.order_id))
    assert status.status == STATUS_UNKNOWN
    assert calls == []
