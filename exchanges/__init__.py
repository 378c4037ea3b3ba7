"""Exchange adapters."""

from .base import (
    Balance,
    ExchangeAdapter,
    Instrument,
    OrderAccepted,
    OrderRejected,
    OrderRequest,
    OrderStatus,
)
from .nado_adapter import NadoAdapter

__all__ = [
    "Balance",
    "ExchangeAdapter",
    "Instrument",
    "OrderAccepted",
    "OrderRejected",
    "OrderRequest",
    "OrderStatus",
    "NadoAdapter",
]
