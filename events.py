"""Events posted to the lifecycle manager mailbox."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

SIGNAL_SHORT_SQUEEZE = "SHORT_SQUEEZE"
SIGNAL_LONG_FLUSH = "LONG_FLUSH"
VALID_SIGNAL_TYPES = (SIGNAL_SHORT_SQUEEZE, SIGNAL_LONG_FLUSH)


@dataclass(frozen=True)
class Signal:
    """Trade trigger from the signal channel."""
    symbol: str
    signal_type: str
    reference_price: Optional[Decimal] = None


@dataclass(frozen=True)
class OrderFilled:
    """An order was completely filled."""
    order_id: str
    price: Decimal
    quantity: Optional[Decimal] = None


@dataclass(frozen=True)
class OrderCancelled:
    """An order left the book without filling."""
    order_id: str
    reason: str = ""
