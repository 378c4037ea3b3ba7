#!/usr/bin/env python3
"""
Order gateway: the only path from the lifecycle manager to the exchange.

Wraps an ExchangeAdapter with:
- per-call timeouts (asyncio.wait_for)
- a token bucket rate limiter for write calls
- status polling by the pre-computed order digest when a submit times out
- bounded exponential-backoff retries for protective (TP/SL) orders

Every failure is translated into the errors.py taxonomy; raw transport
exceptions never reach the caller.
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from errors import (
    BalanceUnavailable,
    CancellationFailed,
    ExchangeError,
    OrderPlacementFailed,
    ProtectiveOrderFailed,
)
from exchanges.base import (
    ORDER_KIND_LIMIT,
    ORDER_KIND_TRIGGER,
    STATUS_CANCELLED,
    STATUS_FILLED,
    STATUS_NOT_FOUND,
    STATUS_OPEN,
    ExchangeAdapter,
    Instrument,
    OrderAccepted,
    OrderRejected,
    OrderRequest,
    OrderStatus,
)
from logging_utils import get_logger
from position_store import LEG_SL

DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_ENTRY_TIMEOUT_SECONDS = 10.0
DEFAULT_RATE_LIMIT_TOKENS = 30
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 10

# TP/SL placement reliability
PROTECTIVE_MAX_RETRIES = 2
PROTECTIVE_RETRY_BASE_DELAY_SECONDS = 1.0
PROTECTIVE_RETRY_MAX_DELAY_SECONDS = 10.0


# ============================================================================
# Rate Limiter
# ============================================================================

class TokenBucket:
    """Token bucket rate limiter.

    Implements a refilling token bucket for exchange write calls.
    Default: 30 tokens per 10 seconds.
    """

    def __init__(
        self,
        tokens: int = DEFAULT_RATE_LIMIT_TOKENS,
        refill_seconds: float = DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
    ):
        self.tokens = float(tokens)
        self.max_tokens = float(tokens)
        self.refill_rate = tokens / refill_seconds  # tokens per second
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()
        self.log = get_logger("rate_limiter")

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, timeout: float = 30.0) -> bool:
        """Acquire a token, waiting up to timeout seconds.

        Returns True if token acquired, False if timeout.
        """
        start = time.monotonic()

        while True:
            async with self._lock:
                self._refill()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return True
                wait_time = (1.0 - self.tokens) / self.refill_rate
                if time.monotonic() - start + wait_time > timeout:
                    self.log.warning(f"Rate limit timeout ({timeout}s)")
                    return False

            # Wait outside the lock to avoid convoying other waiters.
            await asyncio.sleep(min(wait_time, 0.5))


class OrderGateway:
    """Timeouts, retries and typed results over an ExchangeAdapter."""

    def __init__(
        self,
        adapter: ExchangeAdapter,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        entry_timeout: float = DEFAULT_ENTRY_TIMEOUT_SECONDS,
        protective_retries: int = PROTECTIVE_MAX_RETRIES,
        retry_base_delay: float = PROTECTIVE_RETRY_BASE_DELAY_SECONDS,
        retry_max_delay: float = PROTECTIVE_RETRY_MAX_DELAY_SECONDS,
        rate_limiter: Optional[TokenBucket] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapter = adapter
        self.request_timeout = float(request_timeout)
        self.entry_timeout = float(entry_timeout)
        self.protective_retries = max(1, int(protective_retries))
        self.retry_base_delay = float(retry_base_delay)
        self.retry_max_delay = float(retry_max_delay)
        self.rate_limiter = rate_limiter or TokenBucket()
        self._sleep = sleep
        self.log = get_logger("order_gateway")

    @classmethod
    def from_config(cls, adapter: ExchangeAdapter, execution_cfg) -> "OrderGateway":
        return cls(
            adapter,
            request_timeout=execution_cfg.request_timeout_seconds,
            entry_timeout=execution_cfg.entry_timeout_seconds,
            protective_retries=execution_cfg.protective_retries,
            retry_base_delay=execution_cfg.protective_retry_base_delay_seconds,
            retry_max_delay=execution_cfg.protective_retry_max_delay_seconds,
        )

    async def _call(self, coro, operation: str, timeout: Optional[float] = None):
        try:
            return await asyncio.wait_for(coro, timeout=timeout or self.request_timeout)
        except asyncio.TimeoutError as e:
            raise ExchangeError(operation, f"timed out after {timeout or self.request_timeout:.1f}s", original=e) from e

    # ------------------------------------------------------------------ reads
    async def get_balance(self) -> Decimal:
        """Available balance; BalanceUnavailable when it cannot be fetched."""
        try:
            balance = await self._call(self.adapter.get_balance(), "get_balance")
        except ExchangeError as e:
            raise BalanceUnavailable(str(e)) from e
        if balance is None or balance.available is None:
            raise BalanceUnavailable("exchange returned no balance")
        return Decimal(str(balance.available))

    async def get_balance_with_retry(self, attempts: int = 3, delay: float = 1.0) -> Optional[Decimal]:
        """Best-effort balance for notifications. Returns None when unavailable."""
        last_err = ""
        for attempt in range(1, max(1, int(attempts)) + 1):
            try:
                return await self.get_balance()
            except BalanceUnavailable as e:
                last_err = str(e)
                if attempt < attempts:
                    self.log.warning(f"Balance fetch retry {attempt}/{attempts} failed: {last_err}")
                    await self._sleep(delay)
        self.log.error(f"Balance unavailable after {attempts} attempts: {last_err}")
        return None

    async def get_instrument(self, symbol: str) -> Optional[Instrument]:
        return await self._call(self.adapter.get_instrument(symbol), "get_instrument")

    async def order_status(self, instrument_id: int, order_id: str) -> Optional[OrderStatus]:
        """Order status or None when the exchange cannot be reached."""
        try:
            return await self._call(
                self.adapter.get_order_status(instrument_id, order_id), "get_order_status"
            )
        except ExchangeError as e:
            self.log.warning(f"Order status for {order_id[:18]}... unavailable: {e}")
            return None

    # ------------------------------------------------------------------ writes
    async def _submit(self, request: OrderRequest, timeout: float) -> OrderAccepted:
        """Submit once; ambiguous outcomes are resolved by polling the digest.

        Raises OrderPlacementFailed when the order is definitely not live.
        """
        if not await self.rate_limiter.acquire():
            raise OrderPlacementFailed(f"rate limited ({request.symbol})")
        try:
            result = await self._call(self.adapter.submit_order(request), "submit_order", timeout=timeout)
        except ExchangeError as e:
            self.log.warning(
                f"Submit of {request.symbol} {request.order_id[:18]}... ambiguous ({e}); polling status"
            )
            return await self._resolve_ambiguous(request, str(e))

        if isinstance(result, OrderRejected):
            raise OrderPlacementFailed(result.reason or "rejected by exchange")
        if not isinstance(result, OrderAccepted):
            raise OrderPlacementFailed(f"unexpected submit result {result!r}")
        return result

    async def _resolve_ambiguous(self, request: OrderRequest, reason: str) -> OrderAccepted:
        status = await self.order_status(request.instrument_id, request.order_id)
        if status is None:
            self.log.warning(f"Order {request.order_id[:18]}... unconfirmed; keeping it as accepted")
            return OrderAccepted(order_id=request.order_id, confirmed=False)
        if status.status == STATUS_FILLED:
            return OrderAccepted(order_id=request.order_id, filled=True, fill_price=status.avg_price)
        if status.status == STATUS_OPEN:
            return OrderAccepted(order_id=request.order_id)
        if status.status == STATUS_CANCELLED:
            raise OrderPlacementFailed(f"{reason}; order {status.status}")
        if status.status == STATUS_NOT_FOUND and request.kind != ORDER_KIND_TRIGGER:
            raise OrderPlacementFailed(f"{reason}; order {status.status}")
        # Trigger orders rest on the trigger service, outside the engine's book.
        # Retrying would stack a second stop, so the first digest is kept.
        self.log.warning(
            f"Order {request.order_id[:18]}... status {status.status} after {reason}; keeping it as unconfirmed"
        )
        return OrderAccepted(order_id=request.order_id, confirmed=False)

    async def submit_entry(
        self,
        instrument: Instrument,
        is_buy: bool,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderAccepted:
        try:
            request = self.adapter.prepare_order(
                instrument, is_buy=is_buy, quantity=quantity, price=price, kind=ORDER_KIND_LIMIT,
            )
        except (ValueError, TypeError) as e:
            raise OrderPlacementFailed(f"cannot build entry order: {e}") from e
        if request.quantity <= 0:
            raise OrderPlacementFailed(f"quantity {quantity} rounds to zero for {instrument.symbol}")
        return await self._submit(request, self.entry_timeout)

    async def place_protective(
        self,
        instrument: Instrument,
        leg: str,
        is_buy: bool,
        quantity: Decimal,
        price: Decimal,
        trigger_price: Optional[Decimal] = None,
    ) -> str:
        """Place TP (reduce-only limit) or SL (reduce-only trigger) with retries.

        Returns the order id; raises ProtectiveOrderFailed after the last attempt.
        """
        kind = ORDER_KIND_TRIGGER if leg == LEG_SL else ORDER_KIND_LIMIT
        if leg == LEG_SL and trigger_price is None:
            trigger_price = price
        last_err = ""

        for attempt in range(1, self.protective_retries + 1):
            try:
                request = self.adapter.prepare_order(
                    instrument,
                    is_buy=is_buy,
                    quantity=quantity,
                    price=price,
                    reduce_only=True,
                    kind=kind,
                    trigger_price=trigger_price,
                )
                accepted = await self._submit(request, self.request_timeout)
                return accepted.order_id
            except (OrderPlacementFailed, ValueError, TypeError) as e:
                last_err = str(e)

            if attempt >= self.protective_retries:
                break
            delay = min(
                self.retry_base_delay * (2 ** (attempt - 1)),
                self.retry_max_delay,
            )
            self.log.warning(
                f"{leg.upper()} placement retry {attempt}/{self.protective_retries} failed for "
                f"{instrument.symbol} (price=${price}): {last_err}. Sleeping {delay:.1f}s"
            )
            await self._sleep(delay)

        self.log.error(
            f"{leg.upper()} placement failed after {self.protective_retries} attempts for "
            f"{instrument.symbol}: {last_err}"
        )
        raise ProtectiveOrderFailed(f"{leg.upper()} for {instrument.symbol}: {last_err}")

    async def cancel(self, instrument_id: int, order_id: str) -> None:
        if not await self.rate_limiter.acquire():
            raise CancellationFailed(f"rate limited cancelling {order_id}")
        try:
            ok = await self._call(self.adapter.cancel_order(instrument_id, order_id), "cancel_order")
        except ExchangeError as e:
            raise CancellationFailed(str(e)) from e
        if not ok:
            raise CancellationFailed(f"exchange refused cancel of {order_id}")
