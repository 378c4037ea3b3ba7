#!/usr/bin/env python3
"""
Position lifecycle manager.

Owns the PositionStore and the daily counters. Every input (signals, fill and
cancel events from the stream, completion events from its own background
tasks) is posted to one bounded mailbox and handled by a single consumer.
Handlers are synchronous, so a check-and-set on position status can never
interleave with another handler. Exchange and notifier I/O always runs in
tracked background tasks which post their outcome back to the mailbox; the
consumer re-checks state before acting on it.

State machine:

    PENDING_ENTRY -> OPEN -> CLOSING -> CLOSED
          \\-> abandoned (removed, never reported as closed)
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from errors import (
    AdmissionRejected,
    BalanceUnavailable,
    CancellationFailed,
    ExchangeError,
    InsufficientBalance,
    InvalidPrice,
    OrderPlacementFailed,
    ProtectiveOrderFailed,
    StoreInvariantViolation,
    TradingError,
)
from events import (
    SIGNAL_LONG_FLUSH,
    SIGNAL_SHORT_SQUEEZE,
    VALID_SIGNAL_TYPES,
    OrderCancelled,
    OrderFilled,
    Signal,
)
from exchanges.base import STATUS_CANCELLED, STATUS_FILLED, STATUS_UNKNOWN, Instrument
from logging_utils import get_logger
from order_gateway import OrderGateway
from position_store import (
    LEG_SL,
    LEG_TP,
    DailyCounters,
    Position,
    PositionStatus,
    PositionStore,
    Side,
    utc_date,
)
from risk_calculator import RiskCalculator
from trading_window import TradingWindow

DEFAULT_MAILBOX_SIZE = 1000
DEFAULT_ORPHAN_BUFFER = 256
DEFAULT_SEEN_ORDER_IDS = 2048

SIGNAL_SIDES = {
    SIGNAL_SHORT_SQUEEZE: Side.SHORT,
    SIGNAL_LONG_FLUSH: Side.LONG,
}


# ---------------------------------------------------------------- internal events
@dataclass(frozen=True)
class _EntryAccepted:
    position: Position
    instrument: Instrument
    balance: Decimal
    filled: bool
    fill_price: Optional[Decimal]


@dataclass(frozen=True)
class _EntryFailed:
    symbol: str
    reason: str


@dataclass(frozen=True)
class _EntryResolved:
    entry_order_id: str
    filled: bool
    price: Optional[Decimal] = None
    reason: str = ""
    uncertain: bool = False


@dataclass(frozen=True)
class _LegPlaced:
    entry_order_id: str
    instrument_id: int
    leg: str
    order_id: str


@dataclass(frozen=True)
class _CloseFinalize:
    entry_order_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionLifecycleManager:
    """Admission, entry, protection and close of positions."""

    def __init__(
        self,
        gateway: OrderGateway,
        risk: RiskCalculator,
        window: TradingWindow,
        notifier: Any,
        allowed_symbols: Iterable[str],
        max_daily_trades: int = 5,
        max_open_positions: int = 1,
        min_balance=Decimal("5"),
        entry_fill_timeout: float = 60.0,
        entry_fill_poll_interval: float = 2.0,
        protection_delay: float = 0.0,
        balance_retries: int = 3,
        balance_retry_delay: float = 1.0,
        mailbox_size: int = DEFAULT_MAILBOX_SIZE,
        orphan_buffer_size: int = DEFAULT_ORPHAN_BUFFER,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.risk = risk
        self.window = window
        self.notifier = notifier
        self.allowed_symbols = {str(s).strip().upper() for s in allowed_symbols if str(s).strip()}
        self.max_daily_trades = int(max_daily_trades)
        self.max_open_positions = int(max_open_positions)
        self.min_balance = Decimal(str(min_balance))
        self.entry_fill_timeout = float(entry_fill_timeout)
        self.entry_fill_poll_interval = max(0.0, float(entry_fill_poll_interval))
        self.protection_delay = max(0.0, float(protection_delay))
        self.balance_retries = max(1, int(balance_retries))
        self.balance_retry_delay = float(balance_retry_delay)
        self.orphan_buffer_size = int(orphan_buffer_size)
        self._clock = clock
        self.log = get_logger("lifecycle")

        self.store = PositionStore()
        self.counters = DailyCounters.for_now(clock())
        self._mailbox: asyncio.Queue = asyncio.Queue(maxsize=int(mailbox_size))
        self._in_flight = 0
        self._accepting = True
        self._consumer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._instruments: Dict[str, Instrument] = {}
        self._entry_balance: Dict[str, Decimal] = {}
        self._orphans: "OrderedDict[str, Any]" = OrderedDict()
        self._seen_order_ids: "OrderedDict[str, None]" = OrderedDict()
        self._abandoned: "OrderedDict[str, str]" = OrderedDict()

    @classmethod
    def from_config(cls, cfg, gateway: OrderGateway, notifier: Any, **kwargs) -> "PositionLifecycleManager":
        return cls(
            gateway=gateway,
            risk=RiskCalculator.from_config(cfg.risk),
            window=TradingWindow.from_config(cfg.window),
            notifier=notifier,
            allowed_symbols=cfg.allowed_symbols,
            max_daily_trades=cfg.risk.max_daily_trades,
            max_open_positions=cfg.risk.max_open_positions,
            min_balance=cfg.risk.min_balance,
            entry_fill_timeout=cfg.execution.entry_fill_timeout_seconds,
            entry_fill_poll_interval=cfg.execution.entry_fill_poll_interval_seconds,
            protection_delay=cfg.execution.protection_delay_seconds,
            balance_retries=cfg.execution.balance_retries,
            balance_retry_delay=cfg.execution.balance_retry_delay_seconds,
            **kwargs,
        )

    # ================================================================ lifecycle
    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._accepting = True
            self._consumer = asyncio.create_task(self.run(), name="lifecycle-consumer")

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop admitting signals, drain in-flight work (bounded), stop the consumer."""
        self._accepting = False
        try:
            await asyncio.wait_for(self.wait_idle(), timeout=timeout)
        except asyncio.TimeoutError:
            self.log.warning(f"Shutdown: {len(self._tasks)} task(s) still running after {timeout:.0f}s; cancelling")
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None

    async def wait_idle(self) -> None:
        """Wait until the mailbox is drained and no background task is running."""
        while True:
            await self._mailbox.join()
            pending = [t for t in self._tasks if not t.done()]
            if not pending and self._mailbox.empty():
                return
            if pending:
                await asyncio.wait(pending)

    async def run(self) -> None:
        self.log.info("Lifecycle consumer started")
        while True:
            event = await self._mailbox.get()
            try:
                self._dispatch(event)
            except StoreInvariantViolation as e:
                self.log.critical(f"Store invariant violated handling {event!r}: {e}")
                self._spawn(self._alert(f"Internal state error: {e}", critical=True), "alert")
            except TradingError as e:
                self.log.error(f"Failed handling {event!r}: {e}")
            finally:
                self._mailbox.task_done()

    # ================================================================ inputs
    def post_signal(self, signal: Signal) -> bool:
        """Queue a signal. Returns False when the bot is stopping or the mailbox is full."""
        if not self._accepting:
            self.log.info(f"Signal {signal.symbol} {signal.signal_type} ignored: shutting down")
            return False
        try:
            self._mailbox.put_nowait(signal)
        except asyncio.QueueFull:
            self.log.warning(f"Mailbox full; dropping signal {signal.symbol} {signal.signal_type}")
            return False
        return True

    async def post_event(self, event: Any) -> bool:
        """Queue a stream or internal event, waiting for mailbox space."""
        await self._mailbox.put(event)
        return True

    # ================================================================ queries
    def positions(self) -> List[Position]:
        return self.store.all_open()

    def daily_stats(self, now_utc: Optional[datetime] = None) -> Tuple[int, int, Decimal]:
        """(trade_count, open_count, realized_pnl) for the current UTC day."""
        now = now_utc or self._clock()
        if utc_date(now) != self.counters.day:
            return 0, self.store.count(), Decimal("0")
        return self.counters.trade_count, self.store.count(), self.counters.realized_pnl_usd

    @property
    def in_flight(self) -> int:
        return self._in_flight

    # ================================================================ dispatch
    def _dispatch(self, event: Any) -> None:
        if isinstance(event, Signal):
            self._on_signal(event)
        elif isinstance(event, OrderFilled):
            self._on_fill(event)
        elif isinstance(event, OrderCancelled):
            self._on_cancelled(event)
        elif isinstance(event, _EntryAccepted):
            self._on_entry_accepted(event)
        elif isinstance(event, _EntryFailed):
            self._in_flight = max(0, self._in_flight - 1)
            self.log.info(f"Entry attempt for {event.symbol} did not open: {event.reason}")
        elif isinstance(event, _EntryResolved):
            self._on_entry_resolved(event)
        elif isinstance(event, _LegPlaced):
            self._on_leg_placed(event)
        elif isinstance(event, _CloseFinalize):
            self._on_close_finalize(event)
        else:
            self.log.warning(f"Unknown mailbox event {event!r}")

    # ---------------------------------------------------------------- admission
    def _admit(self, signal: Signal) -> None:
        symbol = signal.symbol.upper()
        if symbol not in self.allowed_symbols:
            raise AdmissionRejected("symbol", f"{symbol} not in whitelist")
        if signal.signal_type not in VALID_SIGNAL_TYPES:
            raise AdmissionRejected("signal_type", str(signal.signal_type))
        now = self._clock()
        if not self.window.is_open(now):
            raise AdmissionRejected("window", self.window.status_message(now))
        if self.counters.trade_count + self._in_flight >= self.max_daily_trades:
            raise AdmissionRejected(
                "daily_cap",
                f"{self.counters.trade_count} traded + {self._in_flight} in flight >= {self.max_daily_trades}",
            )
        if self.store.count() + self._in_flight >= self.max_open_positions:
            raise AdmissionRejected(
                "open_cap",
                f"{self.store.count()} open + {self._in_flight} in flight >= {self.max_open_positions}",
            )

    def _on_signal(self, signal: Signal) -> None:
        if self.counters.roll(self._clock()):
            self.log.info(f"New UTC day {self.counters.day}; daily counters reset")
        try:
            self._admit(signal)
        except AdmissionRejected as e:
            self.log.info(f"Signal {signal.symbol} {signal.signal_type} dropped ({e})")
            return
        self._in_flight += 1
        self.log.info(f"Signal {signal.symbol} {signal.signal_type} admitted; starting entry")
        self._spawn(self._run_entry(signal), f"entry-{signal.symbol}")

    # ---------------------------------------------------------------- entry
    async def _run_entry(self, signal: Signal) -> None:
        symbol = signal.symbol.upper()
        try:
            await self._post_internal(await self._build_and_submit_entry(signal, symbol))
        except (BalanceUnavailable, InsufficientBalance, InvalidPrice, OrderPlacementFailed) as e:
            await self._alert(f"{symbol} {signal.signal_type} skipped: {e.__class__.__name__}: {e}")
            await self._post_internal(_EntryFailed(symbol, str(e)))
        except asyncio.CancelledError:
            self._in_flight = max(0, self._in_flight - 1)
            raise
        except Exception as e:
            self.log.exception(f"Unexpected entry failure for {symbol}: {e}")
            await self._alert(f"{symbol} entry failed unexpectedly: {e}", critical=True)
            await self._post_internal(_EntryFailed(symbol, str(e)))

    async def _build_and_submit_entry(self, signal: Signal, symbol: str) -> _EntryAccepted:
        balance = await self.gateway.get_balance()
        if balance < self.min_balance:
            raise InsufficientBalance(f"balance ${balance:.2f} below minimum ${self.min_balance:.2f}")

        try:
            instrument = await self.gateway.get_instrument(symbol)
        except ExchangeError as e:
            raise OrderPlacementFailed(f"instrument lookup failed: {e}") from e
        if instrument is None:
            raise OrderPlacementFailed(f"{symbol} is not listed on the exchange")

        side = SIGNAL_SIDES[signal.signal_type]
        price_source = "mark"
        mark = instrument.mark_price
        if mark is None or mark <= 0:
            ref = signal.reference_price
            if ref is None or ref <= 0:
                raise InvalidPrice(f"no live price and no signal price for {symbol}")
            self.log.warning(f"No live price for {symbol}; using signal price {ref}")
            mark = ref
            price_source = "signal"

        size = self.risk.size_for(balance)
        exec_price = instrument.round_price(self.risk.execution_price(side, mark))
        quantity = instrument.round_quantity(size / exec_price)
        if quantity <= 0 or (instrument.min_size > 0 and quantity < instrument.min_size):
            raise OrderPlacementFailed(
                f"size ${size:.2f} gives quantity {quantity} below exchange minimum for {symbol}"
            )

        self.log.info(
            f"Entry {side.value} {symbol}: balance=${balance:.2f} size=${size:.2f} "
            f"qty={quantity} @ {exec_price} (mark {mark}, {price_source})"
        )
        accepted = await self.gateway.submit_entry(instrument, side.is_buy, quantity, exec_price)

        entry_price = accepted.fill_price if (accepted.filled and accepted.fill_price) else exec_price
        tp_price, sl_price = self.risk.prices_for(side, entry_price)
        position = Position(
            entry_order_id=accepted.order_id,
            symbol=symbol,
            side=side,
            instrument_id=instrument.id,
            entry_price=entry_price,
            size=size,
            quantity=quantity,
            tp_price=instrument.round_price(tp_price),
            sl_price=instrument.round_price(sl_price),
            opened_at=self._clock(),
            price_source=price_source,
        )
        if not accepted.confirmed:
            self.log.warning(f"Entry {accepted.order_id[:18]}... for {symbol} unconfirmed; registering as pending")
        return _EntryAccepted(
            position=position,
            instrument=instrument,
            balance=balance,
            filled=accepted.filled,
            fill_price=accepted.fill_price,
        )

    def _on_entry_accepted(self, event: _EntryAccepted) -> None:
        self._in_flight = max(0, self._in_flight - 1)
        position = event.position
        self.counters.roll(self._clock())
        self.counters.trade_count += 1
        self.store.insert(position)
        self._instruments[position.symbol] = event.instrument
        self._entry_balance[position.entry_order_id] = event.balance
        self.log.info(
            f"Entry accepted {position.side.value} {position.symbol} id={position.entry_order_id[:18]}... "
            f"(trades today: {self.counters.trade_count}/{self.max_daily_trades})"
        )
        if event.filled:
            self._orphans.pop(position.entry_order_id, None)
            self._promote(position, event.fill_price)
            return
        if self._replay_orphan(position.entry_order_id):
            return
        self._spawn(self._confirm_entry(position.entry_order_id, position.instrument_id), "confirm-entry")

    async def _confirm_entry(self, entry_order_id: str, instrument_id: int) -> None:
        """Poll until the entry fills, dies, or the fill timeout expires."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.entry_fill_timeout
        last_status = "unknown"
        while loop.time() < deadline:
            await asyncio.sleep(self.entry_fill_poll_interval)
            if not self._still_pending(entry_order_id):
                return
            status = await self.gateway.order_status(instrument_id, entry_order_id)
            if status is None:
                continue
            last_status = status.status
            if status.status == STATUS_FILLED:
                await self._post_internal(_EntryResolved(entry_order_id, True, status.avg_price))
                return
            if status.status == STATUS_CANCELLED:
                await self._post_internal(_EntryResolved(entry_order_id, False, reason="entry order cancelled"))
                return

        if not self._still_pending(entry_order_id):
            return
        self.log.warning(f"Entry {entry_order_id[:18]}... not filled within {self.entry_fill_timeout:.0f}s; cancelling")
        try:
            await self.gateway.cancel(instrument_id, entry_order_id)
        except CancellationFailed as e:
            self.log.error(f"Cancel of unfilled entry {entry_order_id[:18]}... failed: {e}")
        status = await self.gateway.order_status(instrument_id, entry_order_id)
        if status is not None and status.status == STATUS_FILLED:
            await self._post_internal(_EntryResolved(entry_order_id, True, status.avg_price))
            return
        uncertain = status is None or status.status == STATUS_UNKNOWN
        await self._post_internal(
            _EntryResolved(
                entry_order_id,
                False,
                reason=f"not filled within {self.entry_fill_timeout:.0f}s (last status: {last_status})",
                uncertain=uncertain,
            )
        )

    def _still_pending(self, entry_order_id: str) -> bool:
        position = self.store.get(entry_order_id)
        return position is not None and position.status == PositionStatus.PENDING_ENTRY

    def _on_entry_resolved(self, event: _EntryResolved) -> None:
        position = self.store.get(event.entry_order_id)
        if position is None or position.status != PositionStatus.PENDING_ENTRY:
            return
        if event.filled:
            self._promote(position, event.price)
        else:
            self._abandon(position, event.reason, uncertain=event.uncertain)

    def _abandon(self, position: Position, reason: str, uncertain: bool = False) -> None:
        self.store.remove(position.entry_order_id)
        self._remember(position.entry_order_id)
        self._abandoned[position.entry_order_id] = position.symbol
        while len(self._abandoned) > DEFAULT_ORPHAN_BUFFER:
            self._abandoned.popitem(last=False)
        self._entry_balance.pop(position.entry_order_id, None)
        if uncertain:
            self.log.critical(f"Entry for {position.symbol} abandoned with unknown outcome: {reason}")
            message = (
                f"{position.side.value} {position.symbol} entry outcome unknown ({reason}). "
                f"Check the exchange for an unmanaged position."
            )
        else:
            self.log.warning(f"Entry for {position.symbol} abandoned: {reason}")
            message = f"{position.side.value} {position.symbol} entry abandoned: {reason}"
        self._spawn(self._alert(message, critical=uncertain), "alert")

    def _promote(self, position: Position, fill_price: Optional[Decimal] = None) -> None:
        if fill_price is not None and fill_price > 0 and fill_price != position.entry_price:
            self._reprice(position, fill_price)
        position.status = PositionStatus.OPEN
        balance = self._entry_balance.pop(position.entry_order_id, None)
        self.log.info(
            f"Position OPEN {position.side.value} {position.symbol} entry={position.entry_price} "
            f"TP={position.tp_price} SL={position.sl_price}"
        )
        snapshot = self._snapshot(position)
        self._spawn(self._notify_opened(snapshot, balance), "notify-open")
        self._spawn(self._protect(snapshot), f"protect-{position.symbol}")

    def _reprice(self, position: Position, fill_price: Decimal) -> None:
        """Re-anchor entry, TP and SL on the confirmed fill. Only before OPEN."""
        tp_price, sl_price = self.risk.prices_for(position.side, fill_price)
        instrument = self._instruments.get(position.symbol)
        if instrument is not None:
            tp_price, sl_price = instrument.round_price(tp_price), instrument.round_price(sl_price)
        self.log.info(
            f"{position.symbol} filled @ {fill_price} (limit {position.entry_price}); "
            f"TP {position.tp_price}->{tp_price} SL {position.sl_price}->{sl_price}"
        )
        position.entry_price = fill_price
        position.tp_price = tp_price
        position.sl_price = sl_price

    # ---------------------------------------------------------------- protection
    async def _protect(self, position: Position) -> None:
        if self.protection_delay > 0:
            await asyncio.sleep(self.protection_delay)
        instrument = self._instruments.get(position.symbol)
        if instrument is None:
            instrument = Instrument(id=position.instrument_id, symbol=position.symbol)

        closing_side = position.side.opposite()
        legs = (
            (LEG_TP, position.tp_price, None),
            (LEG_SL, instrument.round_price(self.risk.execution_price(closing_side, position.sl_price)), position.sl_price),
        )
        failed: List[str] = []
        for leg, price, trigger in legs:
            current = self.store.get(position.entry_order_id)
            if current is None or current.status != PositionStatus.OPEN:
                self.log.info(f"{position.symbol} no longer open; skipping {leg.upper()} placement")
                return
            try:
                order_id = await self.gateway.place_protective(
                    instrument,
                    leg,
                    is_buy=closing_side.is_buy,
                    quantity=position.quantity,
                    price=price,
                    trigger_price=trigger,
                )
            except ProtectiveOrderFailed as e:
                self.log.error(f"{leg.upper()} for {position.symbol} not placed: {e}")
                failed.append(leg)
                continue
            await self._post_internal(_LegPlaced(position.entry_order_id, position.instrument_id, leg, order_id))

        if len(failed) == 2:
            self.log.critical(f"{position.symbol} position is UNPROTECTED (TP and SL failed)")
            await self._alert(
                f"UNPROTECTED {position.side.value} {position.symbol}: TP and SL could not be placed. "
                f"Manage the position manually.",
                critical=True,
            )
        elif failed:
            leg = failed[0].upper()
            self.log.critical(f"{position.symbol} position missing {leg}")
            await self._alert(
                f"{leg} order for {position.side.value} {position.symbol} could not be placed; "
                f"position is only partially protected.",
                critical=True,
            )

    def _on_leg_placed(self, event: _LegPlaced) -> None:
        position = self.store.get(event.entry_order_id)
        if position is None or position.status != PositionStatus.OPEN:
            # Position closed while this leg was in flight: it must not stay on the book.
            self.log.warning(f"{event.leg.upper()} {event.order_id[:18]}... placed for a closed position; cancelling")
            self._remember(event.order_id)
            self._spawn(self._cancel_quietly(event.instrument_id, event.order_id), "cancel-stray")
            return
        self.store.attach_child_order(event.entry_order_id, event.leg, event.order_id)
        self.log.info(f"{event.leg.upper()} attached for {position.symbol}: {event.order_id[:18]}...")
        self._replay_orphan(event.order_id)

    # ---------------------------------------------------------------- fills
    def _on_fill(self, event: OrderFilled) -> None:
        order_id = event.order_id
        entry = self.store.get(order_id)
        if entry is not None:
            if entry.status == PositionStatus.PENDING_ENTRY:
                self.log.info(f"Entry fill for {entry.symbol} @ {event.price}")
                self._promote(entry, event.price)
            else:
                self.log.debug(f"Duplicate entry fill {order_id[:18]}... ignored")
            return

        position = self.store.find_by_child_order_id(order_id)
        if position is None:
            symbol = self._abandoned.pop(order_id, None)
            if symbol is not None:
                self.log.critical(f"Fill for abandoned {symbol} entry {order_id[:18]}... @ {event.price}")
                self._spawn(
                    self._alert(
                        f"UNMANAGED {symbol} position: the abandoned entry filled @ {event.price}. "
                        f"It has no TP/SL; close it manually.",
                        critical=True,
                    ),
                    "alert",
                )
            elif order_id in self._seen_order_ids:
                self.log.debug(f"Fill for finished order {order_id[:18]}... ignored")
            else:
                self._buffer_orphan(order_id, event)
            return

        if position.status != PositionStatus.OPEN:
            self.log.debug(f"Duplicate fill {order_id[:18]}... for {position.status.value} {position.symbol} ignored")
            return

        leg = position.leg_for(order_id)
        position.status = PositionStatus.CLOSING
        position.close_reason = "TP" if leg == LEG_TP else "SL"
        position.exit_price = event.price
        self.log.info(f"{position.close_reason} filled for {position.symbol} @ {event.price}; closing")
        sibling = position.sibling_order_id(leg)
        self._spawn(
            self._close(position.entry_order_id, position.instrument_id, sibling),
            f"close-{position.symbol}",
        )

    async def _close(self, entry_order_id: str, instrument_id: int, sibling_order_id: Optional[str]) -> None:
        if sibling_order_id:
            try:
                await self.gateway.cancel(instrument_id, sibling_order_id)
                self.log.info(f"Sibling {sibling_order_id[:18]}... cancelled")
            except CancellationFailed as e:
                self.log.error(f"Sibling cancel failed for {sibling_order_id[:18]}...: {e}")
        await self._post_internal(_CloseFinalize(entry_order_id))

    def _on_close_finalize(self, event: _CloseFinalize) -> None:
        position = self.store.get(event.entry_order_id)
        if position is None or position.status != PositionStatus.CLOSING:
            return
        exit_price = position.exit_price if position.exit_price is not None else position.entry_price
        pnl_usd, pnl_percent = self.risk.pnl(position.side, position.entry_price, exit_price, position.size)
        position.status = PositionStatus.CLOSED
        self.store.remove(position.entry_order_id)
        for oid in (position.entry_order_id, position.tp_order_id, position.sl_order_id):
            if oid:
                self._remember(oid)
        self.counters.roll(self._clock())
        self.counters.realized_pnl_usd += pnl_usd
        self.log.info(
            f"Position CLOSED {position.symbol} via {position.close_reason}: "
            f"PnL ${pnl_usd:.2f} ({pnl_percent:.2f}%)"
        )
        self._spawn(
            self._notify_closed(self._snapshot(position), exit_price, pnl_usd, pnl_percent),
            "notify-close",
        )

    def _on_cancelled(self, event: OrderCancelled) -> None:
        order_id = event.order_id
        entry = self.store.get(order_id)
        if entry is not None:
            if entry.status == PositionStatus.PENDING_ENTRY:
                self._abandon(entry, "entry order cancelled")
            return

        position = self.store.find_by_child_order_id(order_id)
        if position is None:
            self._orphans.pop(order_id, None)
            return
        leg = position.leg_for(order_id) or "?"
        self.store.detach_child_order(order_id)
        self._remember(order_id)
        if position.status != PositionStatus.OPEN:
            self.log.debug(f"{leg.upper()} {order_id[:18]}... cancelled during close")
            return
        self.log.critical(f"{leg.upper()} for {position.symbol} cancelled outside the bot; position exposed")
        self._spawn(
            self._alert(
                f"UNPROTECTED {position.side.value} {position.symbol}: {leg.upper()} order was cancelled "
                f"on the exchange.",
                critical=True,
            ),
            "alert",
        )

    # ---------------------------------------------------------------- orphans
    def _buffer_orphan(self, order_id: str, event: Any) -> None:
        if order_id in self._orphans:
            return
        if len(self._orphans) >= self.orphan_buffer_size:
            dropped, _ = self._orphans.popitem(last=False)
            self.log.warning(f"Orphan fill buffer full; dropping {dropped[:18]}...")
        self._orphans[order_id] = event
        self.log.debug(f"Fill for unknown order {order_id[:18]}... buffered")

    def _replay_orphan(self, order_id: str) -> bool:
        event = self._orphans.pop(order_id, None)
        if event is None:
            return False
        self.log.info(f"Replaying buffered fill for {order_id[:18]}...")
        self._dispatch(event)
        return True

    def _remember(self, order_id: str) -> None:
        self._seen_order_ids[order_id] = None
        self._seen_order_ids.move_to_end(order_id)
        while len(self._seen_order_ids) > DEFAULT_SEEN_ORDER_IDS:
            self._seen_order_ids.popitem(last=False)

    # ---------------------------------------------------------------- helpers
    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error(f"Background task {task.get_name()} failed: {exc!r}")

    async def _post_internal(self, event: Any) -> None:
        await self._mailbox.put(event)

    async def _cancel_quietly(self, instrument_id: int, order_id: str) -> None:
        try:
            await self.gateway.cancel(instrument_id, order_id)
        except CancellationFailed as e:
            self.log.error(f"Cancel of {order_id[:18]}... failed: {e}")
            await self._alert(f"Could not cancel stray order {order_id[:18]}...: {e}", critical=True)

    @staticmethod
    def _snapshot(position: Position) -> Position:
        return Position(**{k: getattr(position, k) for k in position.__dataclass_fields__})

    async def _alert(self, message: str, critical: bool = False) -> None:
        try:
            await self.notifier.on_alert(message, critical=critical)
        except Exception as e:
            self.log.error(f"Alert delivery failed: {e}")

    async def _notify_opened(self, position: Position, balance: Optional[Decimal]) -> None:
        try:
            await self.notifier.on_position_opened(position, balance)
        except Exception as e:
            self.log.error(f"Open notification failed for {position.symbol}: {e}")

    async def _notify_closed(
        self, position: Position, exit_price: Decimal, pnl_usd: Decimal, pnl_percent: Decimal
    ) -> None:
        new_balance = await self.gateway.get_balance_with_retry(self.balance_retries, self.balance_retry_delay)
        try:
            await self.notifier.on_position_closed(
                position, position.close_reason or "", exit_price, pnl_usd, pnl_percent, new_balance
            )
        except Exception as e:
            self.log.error(f"Close notification failed for {position.symbol}: {e}")
