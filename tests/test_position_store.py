#!/usr/bin/env python3
"""PositionStore registry + child order index."""

import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from errors import StoreInvariantViolation
from position_store import (
    LEG_SL,
    LEG_TP,
    DailyCounters,
    Position,
    PositionStatus,
    PositionStore,
    Side,
)


def _position(entry_id: str = "0xentry", status: PositionStatus = PositionStatus.PENDING_ENTRY) -> Position:
    return Position(
        entry_order_id=entry_id,
        symbol="BTCUSDT",
        side=Side.SHORT,
        instrument_id=2,
        entry_price=Decimal("50000"),
        size=Decimal("500"),
        quantity=Decimal("0.01"),
        tp_price=Decimal("49600"),
        sl_price=Decimal("50150"),
        status=status,
    )


def test_insert_and_lookup() -> None:
    store = PositionStore()
    store.insert(_position())
    assert "0xentry" in store
    assert store.count() == 1
    assert store.get("0xentry").symbol == "BTCUSDT"
    assert store.get("0xmissing") is None


def test_duplicate_insert_rejected() -> None:
    store = PositionStore()
    store.insert(_position())
    with pytest.raises(StoreInvariantViolation):
        store.insert(_position())


def test_child_orders_index_back_to_position() -> None:
    store = PositionStore()
    store.insert(_position())
    store.attach_child_order("0xentry", LEG_TP, "0xtp")
    store.attach_child_order("0xentry", LEG_SL, "0xsl")

    pos = store.find_by_child_order_id("0xsl")
    assert pos.entry_order_id == "0xentry"
    assert pos.leg_for("0xtp") == LEG_TP
    assert pos.sibling_order_id(LEG_TP) == "0xsl"
    assert store.find_by_child_order_id("0xentry") is None


def test_child_order_cannot_belong_to_two_positions() -> None:
    store = PositionStore()
    store.insert(_position("0xa"))
    store.insert(_position("0xb"))
    store.attach_child_order("0xa", LEG_TP, "0xtp")
    with pytest.raises(StoreInvariantViolation):
        store.attach_child_order("0xb", LEG_TP, "0xtp")


def test_attach_rejects_unknown_leg_and_position() -> None:
    store = PositionStore()
    store.insert(_position())
    with pytest.raises(StoreInvariantViolation):
        store.attach_child_order("0xentry", "trailing", "0x1")
    with pytest.raises(StoreInvariantViolation):
        store.attach_child_order("0xother", LEG_TP, "0x1")


def test_detach_clears_leg() -> None:
    store = PositionStore()
    store.insert(_position())
    store.attach_child_order("0xentry", LEG_SL, "0xsl")
    pos = store.detach_child_order("0xsl")
    assert pos.sl_order_id is None
    assert store.find_by_child_order_id("0xsl") is None
    assert store.detach_child_order("0xsl") is None


def test_remove_refuses_live_positions() -> None:
    store = PositionStore()
    store.insert(_position(status=PositionStatus.OPEN))
    with pytest.raises(StoreInvariantViolation):
        store.remove("0xentry")
    store.get("0xentry").status = PositionStatus.CLOSING
    with pytest.raises(StoreInvariantViolation):
        store.remove("0xentry")


def test_remove_closed_position_drops_index() -> None:
    store = PositionStore()
    store.insert(_position(status=PositionStatus.OPEN))
    store.attach_child_order("0xentry", LEG_TP, "0xtp")
    store.get("0xentry").status = PositionStatus.CLOSED
    removed = store.remove("0xentry")
    assert removed.tp_order_id == "0xtp"
    assert store.count() == 0
    assert store.find_by_child_order_id("0xtp") is None
    with pytest.raises(StoreInvariantViolation):
        store.remove("0xentry")


def test_all_open_returns_copies() -> None:
    store = PositionStore()
    store.insert(_position())
    snapshot = store.all_open()[0]
    snapshot.status = PositionStatus.CLOSED
    assert store.get("0xentry").status == PositionStatus.PENDING_ENTRY


def test_daily_counters_roll_on_utc_date() -> None:
    counters = DailyCounters.for_now(datetime(2025, 3, 10, 23, 59, tzinfo=timezone.utc))
    counters.trade_count = 4
    counters.realized_pnl_usd = Decimal("12")
    assert counters.roll(datetime(2025, 3, 10, 23, 59, 59, tzinfo=timezone.utc)) is False
    assert counters.trade_count == 4
    assert counters.roll(datetime(2025, 3, 11, 0, 0, tzinfo=timezone.utc)) is True
    assert counters.trade_count == 0
    assert counters.realized_pnl_usd == 0


def test_side_helpers() -> None:
    assert Side.LONG.is_buy and not Side.SHORT.is_buy
    assert Side.LONG.opposite() is Side.SHORT
    assert _position().to_dict()["side"] == "SHORT"
