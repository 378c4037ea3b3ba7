#!/usr/bin/env python3
"""
In-memory registry of live positions.

Positions are keyed by the entry order id (the exchange order digest). A
secondary index maps TP/SL order ids back to their entry id so fill events
are matched in O(1).

Only the lifecycle manager's consumer loop mutates the store; everyone else
reads snapshots via ``all_open()``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from errors import StoreInvariantViolation


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def is_buy(self) -> bool:
        return self is Side.LONG

    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


class PositionStatus(str, Enum):
    PENDING_ENTRY = "PENDING_ENTRY"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


def utc_date(now: datetime) -> date:
    """UTC calendar date; naive datetimes are taken as UTC."""
    if now.tzinfo is None:
        return now.date()
    return now.astimezone(timezone.utc).date()


LEG_TP = "tp"
LEG_SL = "sl"
VALID_LEGS = (LEG_TP, LEG_SL)


@dataclass
class Position:
    """A live position from entry acceptance until close."""
    entry_order_id: str
    symbol: str
    side: Side
    instrument_id: int
    entry_price: Decimal
    size: Decimal  # notional, quote currency
    quantity: Decimal  # base amount sent to the exchange
    tp_price: Decimal
    sl_price: Decimal
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: PositionStatus = PositionStatus.PENDING_ENTRY
    tp_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None
    close_reason: Optional[str] = None
    exit_price: Optional[Decimal] = None
    price_source: str = "mark"  # mark | signal

    def leg_order_id(self, leg: str) -> Optional[str]:
        return self.tp_order_id if leg == LEG_TP else self.sl_order_id

    def leg_for(self, order_id: str) -> Optional[str]:
        if order_id and order_id == self.tp_order_id:
            return LEG_TP
        if order_id and order_id == self.sl_order_id:
            return LEG_SL
        return None

    def sibling_order_id(self, leg: str) -> Optional[str]:
        return self.sl_order_id if leg == LEG_TP else self.tp_order_id

    def to_dict(self) -> Dict[str, object]:
        return {
            "entry_order_id": self.entry_order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "instrument_id": self.instrument_id,
            "entry_price": str(self.entry_price),
            "size": str(self.size),
            "quantity": str(self.quantity),
            "tp_price": str(self.tp_price),
            "sl_price": str(self.sl_price),
            "opened_at": self.opened_at.isoformat(),
            "status": self.status.value,
            "tp_order_id": self.tp_order_id,
            "sl_order_id": self.sl_order_id,
            "close_reason": self.close_reason,
            "exit_price": str(self.exit_price) if self.exit_price is not None else None,
        }


@dataclass
class DailyCounters:
    """Per-UTC-day trade counter, reset lazily on first access after rollover."""
    day: date
    trade_count: int = 0
    realized_pnl_usd: Decimal = Decimal("0")

    @classmethod
    def for_now(cls, now_utc: Optional[datetime] = None) -> "DailyCounters":
        now = now_utc or datetime.now(timezone.utc)
        return cls(day=utc_date(now))

    def roll(self, now_utc: Optional[datetime] = None) -> bool:
        """Reset when the UTC date changed. Returns True on reset."""
        now = now_utc or datetime.now(timezone.utc)
        today = utc_date(now)
        if today == self.day:
            return False
        self.day = today
        self.trade_count = 0
        self.realized_pnl_usd = Decimal("0")
        return True


class PositionStore:
    """Registry of positions plus the child order index."""

    def __init__(self):
        self._positions: Dict[str, Position] = {}
        self._child_index: Dict[str, str] = {}

    def insert(self, position: Position) -> None:
        key = position.entry_order_id
        if not key:
            raise StoreInvariantViolation("position without entry order id")
        if key in self._positions:
            raise StoreInvariantViolation(f"duplicate entry order id {key}")
        self._positions[key] = position
        for leg in VALID_LEGS:
            oid = position.leg_order_id(leg)
            if oid:
                self._child_index[oid] = key

    def get(self, entry_order_id: str) -> Optional[Position]:
        return self._positions.get(entry_order_id)

    def attach_child_order(self, entry_order_id: str, leg: str, order_id: str) -> Position:
        if leg not in VALID_LEGS:
            raise StoreInvariantViolation(f"unknown leg {leg!r}")
        position = self._positions.get(entry_order_id)
        if position is None:
            raise StoreInvariantViolation(f"attach to unknown position {entry_order_id}")
        owner = self._child_index.get(order_id)
        if owner is not None and owner != entry_order_id:
            raise StoreInvariantViolation(
                f"order {order_id} already attached to {owner}"
            )
        previous = position.leg_order_id(leg)
        if previous and previous != order_id:
            self._child_index.pop(previous, None)
        if leg == LEG_TP:
            position.tp_order_id = order_id
        else:
            position.sl_order_id = order_id
        self._child_index[order_id] = entry_order_id
        return position

    def detach_child_order(self, order_id: str) -> Optional[Position]:
        entry_id = self._child_index.pop(order_id, None)
        if entry_id is None:
            return None
        position = self._positions.get(entry_id)
        if position is None:
            return None
        if position.tp_order_id == order_id:
            position.tp_order_id = None
        elif position.sl_order_id == order_id:
            position.sl_order_id = None
        return position

    def find_by_child_order_id(self, order_id: str) -> Optional[Position]:
        entry_id = self._child_index.get(order_id)
        if entry_id is None:
            return None
        return self._positions.get(entry_id)

    def remove(self, entry_order_id: str) -> Position:
        """Remove a CLOSED (or abandoned PENDING_ENTRY) position."""
        position = self._positions.get(entry_order_id)
        if position is None:
            raise StoreInvariantViolation(f"remove of unknown position {entry_order_id}")
        if position.status in (PositionStatus.OPEN, PositionStatus.CLOSING):
            raise StoreInvariantViolation(
                f"remove of {position.status.value} position {entry_order_id}"
            )
        del self._positions[entry_order_id]
        for leg in VALID_LEGS:
            oid = position.leg_order_id(leg)
            if oid and self._child_index.get(oid) == entry_order_id:
                del self._child_index[oid]
        return position

    def count(self) -> int:
        return len(self._positions)

    def all_open(self) -> List[Position]:
        return [copy.copy(p) for p in self._positions.values()]

    def __contains__(self, entry_order_id: str) -> bool:
        return entry_order_id in self._positions
