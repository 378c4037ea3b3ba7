#!/usr/bin/env python3
"""
Shared exchange adapter interface and dataclasses.

Provides the abstract base class for exchange adapters with support for:
- Account balance and instrument (product) metadata queries
- Client-side order preparation (signed request + digest used as order id)
- Limit, reduce-only limit and reduce-only trigger orders
- Cancellation and order status checks
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional


ORDER_KIND_LIMIT = "limit"
ORDER_KIND_TRIGGER = "trigger"

STATUS_OPEN = "open"
STATUS_FILLED = "filled"
STATUS_CANCELLED = "cancelled"
STATUS_NOT_FOUND = "not_found"
STATUS_UNKNOWN = "unknown"


@dataclass
class Balance:
    """Account balance in quote currency."""
    available: Decimal
    total: Optional[Decimal] = None


@dataclass
class Instrument:
    """Tradable perp product."""
    id: int
    symbol: str
    mark_price: Optional[Decimal] = None
    size_increment: Decimal = Decimal("0")
    price_increment: Decimal = Decimal("0")
    min_size: Decimal = Decimal("0")

    def round_quantity(self, quantity: Decimal) -> Decimal:
        """Round a base amount down to the size increment."""
        if self.size_increment <= 0:
            return quantity
        steps = (quantity / self.size_increment).to_integral_value(rounding=ROUND_DOWN)
        return steps * self.size_increment

    def round_price(self, price: Decimal) -> Decimal:
        if self.price_increment <= 0:
            return price
        steps = (price / self.price_increment).to_integral_value()
        return steps * self.price_increment


@dataclass
class OrderRequest:
    """A signed order ready for submission.

    ``order_id`` is the client-side digest; it is known before the order is
    sent so a timed-out submission can be resolved by a status query.
    """
    order_id: str
    instrument_id: int
    symbol: str
    is_buy: bool
    price: Decimal
    quantity: Decimal
    reduce_only: bool = False
    kind: str = ORDER_KIND_LIMIT
    trigger_price: Optional[Decimal] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderAccepted:
    order_id: str
    filled: bool = False
    fill_price: Optional[Decimal] = None
    confirmed: bool = True


@dataclass
class OrderRejected:
    order_id: Optional[str]
    reason: str = ""


@dataclass
class OrderStatus:
    order_id: str
    status: str = STATUS_UNKNOWN
    filled_quantity: Decimal = Decimal("0")
    avg_price: Optional[Decimal] = None

    @property
    def is_filled(self) -> bool:
        return self.status == STATUS_FILLED

    @property
    def is_live(self) -> bool:
        return self.status == STATUS_OPEN


class ExchangeAdapter(abc.ABC):
    """Base class for exchange adapters."""

    def __init__(self, log):
        self.log = log
        self._initialized = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abc.abstractmethod
    async def initialize(self) -> bool:
        """Initialize the exchange connection."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release sessions. Default is a no-op."""
        return None

    @property
    def wallet_address(self) -> str:
        return ""

    @abc.abstractmethod
    async def get_balance(self) -> Balance:
        """Return the account balance. Raises ExchangeError on failure."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_instrument(self, symbol: str) -> Optional[Instrument]:
        """Return instrument metadata with a fresh mark price, or None if unknown."""
        raise NotImplementedError

    @abc.abstractmethod
    async def list_instruments(self) -> List[Instrument]:
        """Return all tradable instruments."""
        raise NotImplementedError

    @abc.abstractmethod
    def prepare_order(
        self,
        instrument: Instrument,
        is_buy: bool,
        quantity: Decimal,
        price: Decimal,
        reduce_only: bool = False,
        kind: str = ORDER_KIND_LIMIT,
        trigger_price: Optional[Decimal] = None,
    ) -> OrderRequest:
        """Build and sign an order; no network I/O."""
        raise NotImplementedError

    @abc.abstractmethod
    async def submit_order(self, request: OrderRequest) -> Any:
        """Send a prepared order. Returns OrderAccepted or OrderRejected."""
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel_order(self, instrument_id: int, order_id: str) -> bool:
        """Cancel an order. Returns success."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_order_status(self, instrument_id: int, order_id: str) -> OrderStatus:
        """Check the status of an order."""
        raise NotImplementedError
