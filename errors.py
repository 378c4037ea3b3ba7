"""Error taxonomy for the trade lifecycle.

Exchange transport failures are translated into these types at the gateway /
manager boundary; nothing raw escapes the lifecycle manager.
"""

from __future__ import annotations

from typing import Optional


class TradingError(RuntimeError):
    """Base class for trading errors."""


class ConfigError(TradingError):
    """Invalid configuration detected at load / construction time."""


class AdmissionRejected(TradingError):
    """Signal dropped by an admission gate (whitelist, window, caps)."""

    def __init__(self, gate: str, detail: str = ""):
        super().__init__(f"{gate}: {detail}" if detail else gate)
        self.gate = gate
        self.detail = detail


class InvalidPrice(TradingError):
    """Non-positive or missing price used for sizing / TP-SL pricing."""


class ExchangeError(TradingError):
    """Exchange call failed (transport, HTTP status or error payload)."""

    def __init__(self, operation: str, message: str = "", original: Optional[BaseException] = None):
        super().__init__(f"{operation} failed: {message}" if message else f"{operation} failed")
        self.operation = operation
        self.original = original


class BalanceUnavailable(TradingError):
    """Account balance could not be fetched; callers must fail closed."""


class InsufficientBalance(TradingError):
    """Available balance below the configured trading minimum."""


class OrderPlacementFailed(TradingError):
    """Entry order was not accepted by the exchange."""


class ProtectiveOrderFailed(TradingError):
    """TP or SL order could not be placed after retries."""


class CancellationFailed(TradingError):
    """Sibling order cancellation failed during close."""


class StoreInvariantViolation(TradingError):
    """PositionStore contract breach (duplicate insert, unknown / open removal)."""
