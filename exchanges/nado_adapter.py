#!/usr/bin/env python3
"""Nado exchange adapter: raw EIP-712 signing + direct HTTP POST.

Engine gateway:
- POST {rest}/execute  place_order / cancel_orders
- POST {rest}/query    subaccount_info, symbols, market_price, order, contracts
Trigger service (stop orders):
- POST {trigger}/execute
Archive (optional, resolves orders that left the book):
- POST {archive}       orders by digest

All prices and amounts cross the wire as X18 fixed-point integers. The order
digest (EIP-712 hash) is computed locally and used as the order id, so an
order can be looked up even if the submit response never arrives.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Set

import aiohttp
from eth_account import Account
from eth_account.messages import encode_typed_data

from errors import ExchangeError

from .base import (
    ORDER_KIND_LIMIT,
    ORDER_KIND_TRIGGER,
    STATUS_CANCELLED,
    STATUS_FILLED,
    STATUS_NOT_FOUND,
    STATUS_OPEN,
    STATUS_UNKNOWN,
    Balance,
    ExchangeAdapter,
    Instrument,
    OrderAccepted,
    OrderRejected,
    OrderRequest,
    OrderStatus,
)

X18 = Decimal(10) ** 18

DEFAULT_CHAIN_ID = 57073  # Ink mainnet
DOMAIN_NAME = "Nado"
DOMAIN_VERSION = "0.0.1"
ZERO_ADDRESS = "0x" + "00" * 20

ORDER_EXPIRATION_SECONDS = 86400
# Expiration high bits: order type (62-63) and reduce-only (61).
ORDER_TYPE_DEFAULT = 0
ORDER_TYPE_IOC = 1
REDUCE_ONLY_BIT = 1 << 61
ORDER_TYPE_SHIFT = 62

NONCE_RECV_WINDOW_MS = 90_000

_ORDER_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Order": [
        {"name": "sender", "type": "bytes32"},
        {"name": "priceX18", "type": "int128"},
        {"name": "amount", "type": "int128"},
        {"name": "expiration", "type": "uint64"},
        {"name": "nonce", "type": "uint64"},
    ],
}

_CANCEL_TYPES = {
    "EIP712Domain": _ORDER_TYPES["EIP712Domain"],
    "Cancellation": [
        {"name": "sender", "type": "bytes32"},
        {"name": "productIds", "type": "uint32[]"},
        {"name": "digests", "type": "bytes32[]"},
        {"name": "nonce", "type": "uint64"},
    ],
}


def to_x18(value) -> int:
    """Decimal -> X18 integer (truncated toward zero)."""
    dec = value if isinstance(value, Decimal) else Decimal(str(value))
    return int((dec * X18).to_integral_value(rounding=ROUND_DOWN))


def from_x18(value) -> Decimal:
    """X18 integer (int or decimal string) -> Decimal."""
    if value is None or value == "":
        return Decimal("0")
    return Decimal(int(str(value))) / X18


def subaccount_bytes32(address: str, name: str = "default") -> bytes:
    """20-byte owner address followed by a 12-byte subaccount name."""
    addr = bytes.fromhex(address[2:] if address.startswith("0x") else address)
    if len(addr) != 20:
        raise ValueError(f"invalid address: {address}")
    name_bytes = (name or "default").encode("utf-8")[:12]
    return addr + name_bytes.ljust(12, b"\x00")


def product_verifying_contract(product_id: int) -> str:
    return "0x" + int(product_id).to_bytes(20, "big").hex()


def make_nonce(now_ms: Optional[int] = None) -> int:
    ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return ((ms + NONCE_RECV_WINDOW_MS) << 20) | secrets.randbelow(1 << 20)


def make_expiration(
    seconds: int = ORDER_EXPIRATION_SECONDS,
    order_type: int = ORDER_TYPE_DEFAULT,
    reduce_only: bool = False,
    now: Optional[float] = None,
) -> int:
    base = int(now if now is not None else time.time()) + int(seconds)
    value = base | (int(order_type) << ORDER_TYPE_SHIFT)
    if reduce_only:
        value |= REDUCE_ONLY_BIT
    return value


def exchange_symbol(symbol: str) -> str:
    """BTCUSDT / BTC-USDT / BTC -> BTC-PERP."""
    s = str(symbol or "").upper().replace("/", "").replace("-", "")
    for suffix in ("PERP", "USDT0", "USDT", "USDC", "USD"):
        if s.endswith(suffix) and len(s) > len(suffix):
            s = s[: -len(suffix)]
            break
    return f"{s}-PERP"


class NadoAdapter(ExchangeAdapter):
    """Adapter for the Nado engine using raw signing + direct HTTP."""

    def __init__(
        self,
        log: logging.Logger,
        private_key: str,
        rest_url: str,
        trigger_url: str = "",
        archive_url: str = "",
        subaccount: str = "default",
        dry_run: bool = False,
        request_timeout: float = 10.0,
    ):
        super().__init__(log)
        key = private_key if private_key.startswith("0x") else f"0x{private_key}"
        self.wallet = Account.from_key(key)
        self.subaccount = subaccount or "default"
        self.sender = subaccount_bytes32(self.wallet.address, self.subaccount)
        self.rest_url = rest_url.rstrip("/")
        self.trigger_url = (trigger_url or "").rstrip("/")
        self.archive_url = (archive_url or "").rstrip("/")
        self.dry_run = dry_run
        self.request_timeout = float(request_timeout)

        self._session: Optional[aiohttp.ClientSession] = None
        self._chain_id: int = DEFAULT_CHAIN_ID
        self._endpoint_addr: str = ZERO_ADDRESS
        self._instruments: Dict[str, Instrument] = {}
        self._trigger_orders: Set[str] = set()

    @property
    def name(self) -> str:
        return "Nado"

    @property
    def wallet_address(self) -> str:
        return self.wallet.address

    @property
    def sender_hex(self) -> str:
        return "0x" + self.sender.hex()

    # ------------------------------------------------------------------ init
    async def initialize(self) -> bool:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=20, keepalive_timeout=30)
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"},
                connector=connector,
                timeout=timeout,
            )
        try:
            contracts = await self._query({"type": "contracts"})
            self._chain_id = int(contracts.get("chain_id") or DEFAULT_CHAIN_ID)
            self._endpoint_addr = str(contracts.get("endpoint_addr") or ZERO_ADDRESS)
            await self._refresh_instruments()
        except ExchangeError as e:
            self.log.error(f"Failed to initialize Nado: {e}")
            return False

        self._initialized = True
        self.log.info(
            f"Nado adapter initialized ({len(self._instruments)} perps, chain {self._chain_id}"
            f"{', DRY RUN' if self.dry_run else ''})"
        )
        self.log.info(f"  Wallet: {self.wallet.address[:10]}... subaccount={self.subaccount}")
        return True

    async def close(self) -> None:
        """Close aiohttp session to avoid resource leaks."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ============================================================ HTTP helpers
    async def _post(self, url: str, payload: dict, operation: str) -> Any:
        if not self._session or self._session.closed:
            raise ExchangeError(operation, "HTTP session not available (not initialized or closed)")
        try:
            async with self._session.post(url, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise ExchangeError(operation, f"HTTP {resp.status}: {(text or '')[:200]}")
                return await resp.json(content_type=None)
        except ExchangeError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ExchangeError(operation, str(e) or e.__class__.__name__, original=e) from e

    async def _query(self, payload: dict) -> Dict[str, Any]:
        operation = f"query:{payload.get('type')}"
        body = await self._post(f"{self.rest_url}/query", payload, operation)
        if not isinstance(body, dict):
            raise ExchangeError(operation, f"unexpected response: {str(body)[:200]}")
        if body.get("status") != "success":
            raise ExchangeError(operation, str(body.get("error") or body)[:200])
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    # ============================================================ market data
    async def _refresh_instruments(self) -> None:
        data = await self._query({"type": "symbols", "product_type": "perp"})
        symbols = data.get("symbols") or {}
        instruments: Dict[str, Instrument] = {}
        for key, row in symbols.items():
            if not isinstance(row, dict):
                continue
            try:
                inst = Instrument(
                    id=int(row["product_id"]),
                    symbol=str(row.get("symbol") or key),
                    size_increment=from_x18(row.get("size_increment")),
                    price_increment=from_x18(row.get("price_increment_x18")),
                    min_size=from_x18(row.get("min_size")),
                )
            except (KeyError, TypeError, ValueError):
                self.log.debug(f"Skipping malformed product row {key}: {row}")
                continue
            instruments[inst.symbol.upper()] = inst
        self._instruments = instruments

    async def list_instruments(self) -> List[Instrument]:
        if not self._instruments:
            await self._refresh_instruments()
        return list(self._instruments.values())

    async def get_mark_price(self, product_id: int) -> Optional[Decimal]:
        data = await self._query({"type": "market_price", "product_id": int(product_id)})
        bid = from_x18(data.get("bid_x18"))
        ask = from_x18(data.get("ask_x18"))
        if bid > 0 and ask > 0:
            return (bid + ask) / 2
        if bid > 0 or ask > 0:
            return bid or ask
        return None

    async def get_instrument(self, symbol: str) -> Optional[Instrument]:
        if not self._instruments:
            await self._refresh_instruments()
        base = self._instruments.get(exchange_symbol(symbol))
        if base is None:
            return None
        mark = await self.get_mark_price(base.id)
        return Instrument(
            id=base.id,
            symbol=base.symbol,
            mark_price=mark,
            size_increment=base.size_increment,
            price_increment=base.price_increment,
            min_size=base.min_size,
        )

    # ============================================================ account
    async def get_balance(self) -> Balance:
        data = await self._query({"type": "subaccount_info", "subaccount": self.sender_hex})
        healths = data.get("healths") or []
        try:
            available = from_x18((healths[0] or {}).get("health"))
        except (IndexError, TypeError, ValueError) as e:
            raise ExchangeError("query:subaccount_info", f"missing health: {e}") from e
        total = None
        for row in data.get("spot_balances") or []:
            if int(row.get("product_id", -1)) == 0:
                total = from_x18(((row.get("balance") or {}).get("amount")))
                break
        return Balance(available=available, total=total)

    # ============================================================ signing
    def _order_message(self, product_id: int, price_x18: int, amount_x18: int, expiration: int, nonce: int) -> dict:
        return {
            "types": _ORDER_TYPES,
            "primaryType": "Order",
            "domain": {
                "name": DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": self._chain_id,
                "verifyingContract": product_verifying_contract(product_id),
            },
            "message": {
                "sender": self.sender,
                "priceX18": price_x18,
                "amount": amount_x18,
                "expiration": expiration,
                "nonce": nonce,
            },
        }

    def _sign(self, full_message: dict):
        signable = encode_typed_data(full_message=full_message)
        signed = Account.sign_message(signable, private_key=self.wallet.key)
        return "0x" + signed.message_hash.hex().removeprefix("0x"), "0x" + signed.signature.hex().removeprefix("0x")

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
        price = instrument.round_price(price)
        quantity = instrument.round_quantity(quantity)
        price_x18 = to_x18(price)
        amount_x18 = to_x18(quantity) * (1 if is_buy else -1)
        expiration = make_expiration(reduce_only=reduce_only)
        nonce = make_nonce()
        digest, signature = self._sign(
            self._order_message(instrument.id, price_x18, amount_x18, expiration, nonce)
        )
        order = {
            "sender": self.sender_hex,
            "priceX18": str(price_x18),
            "amount": str(amount_x18),
            "expiration": str(expiration),
            "nonce": str(nonce),
        }
        payload: Dict[str, Any] = {
            "place_order": {
                "product_id": instrument.id,
                "order": order,
                "signature": signature,
            }
        }
        if kind == ORDER_KIND_TRIGGER:
            if trigger_price is None:
                raise ValueError("trigger order without trigger price")
            # Stop for a long position sells below, for a short buys above.
            direction = "price_above" if is_buy else "price_below"
            payload["place_order"]["trigger"] = {direction: str(to_x18(trigger_price))}
            payload["place_order"]["digest"] = digest
        return OrderRequest(
            order_id=digest,
            instrument_id=instrument.id,
            symbol=instrument.symbol,
            is_buy=is_buy,
            price=price,
            quantity=quantity,
            reduce_only=reduce_only,
            kind=kind,
            trigger_price=trigger_price,
            payload=payload,
        )

    # ============================================================ orders
    async def submit_order(self, request: OrderRequest):
        side = "BUY" if request.is_buy else "SELL"
        desc = (
            f"{request.kind} {side} {request.quantity} {request.symbol} @ {request.price}"
            f"{' reduce-only' if request.reduce_only else ''}"
        )
        if self.dry_run:
            self.log.info(f"[DRY RUN] {desc} digest={request.order_id[:18]}...")
            if request.kind == ORDER_KIND_TRIGGER:
                self._trigger_orders.add(request.order_id)
                return OrderAccepted(order_id=request.order_id)
            return OrderAccepted(order_id=request.order_id, filled=not request.reduce_only, fill_price=request.price)

        if request.kind == ORDER_KIND_TRIGGER:
            if not self.trigger_url:
                return OrderRejected(order_id=request.order_id, reason="trigger service URL not configured")
            url = f"{self.trigger_url}/execute"
            # Registered before sending so a cancel after a timed-out submit
            # still goes to the trigger service.
            self._trigger_orders.add(request.order_id)
        else:
            url = f"{self.rest_url}/execute"

        body = await self._post(url, request.payload, "place_order")
        if not isinstance(body, dict) or body.get("status") != "success":
            reason = str((body or {}).get("error") or body) if isinstance(body, dict) else str(body)
            self.log.warning(f"Nado rejected {desc}: {reason[:200]}")
            self._trigger_orders.discard(request.order_id)
            return OrderRejected(order_id=request.order_id, reason=reason[:200])

        data = body.get("data") or {}
        digest = str(data.get("digest") or request.order_id)
        if digest.lower() != request.order_id.lower():
            self.log.warning(f"Digest mismatch: local={request.order_id} remote={digest}")
        if request.kind == ORDER_KIND_TRIGGER:
            self._trigger_orders.add(digest)
        self.log.info(f"Nado accepted {desc} digest={digest[:18]}...")
        return OrderAccepted(order_id=digest)

    async def cancel_order(self, instrument_id: int, order_id: str) -> bool:
        is_trigger = order_id in self._trigger_orders
        if self.dry_run:
            self.log.info(f"[DRY RUN] cancel {order_id[:18]}... product={instrument_id}")
            self._trigger_orders.discard(order_id)
            return True

        nonce = make_nonce()
        message = {
            "types": _CANCEL_TYPES,
            "primaryType": "Cancellation",
            "domain": {
                "name": DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": self._chain_id,
                "verifyingContract": self._endpoint_addr,
            },
            "message": {
                "sender": self.sender,
                "productIds": [int(instrument_id)],
                "digests": [bytes.fromhex(order_id.removeprefix("0x"))],
                "nonce": nonce,
            },
        }
        _, signature = self._sign(message)
        payload = {
            "cancel_orders": {
                "tx": {
                    "sender": self.sender_hex,
                    "productIds": [int(instrument_id)],
                    "digests": [order_id],
                    "nonce": str(nonce),
                },
                "signature": signature,
            }
        }
        url = f"{self.trigger_url}/execute" if is_trigger and self.trigger_url else f"{self.rest_url}/execute"
        body = await self._post(url, payload, "cancel_orders")
        ok = isinstance(body, dict) and body.get("status") == "success"
        if ok:
            self._trigger_orders.discard(order_id)
        else:
            self.log.warning(f"Nado cancel {order_id[:18]}... failed: {str(body)[:200]}")
        return ok

    async def get_order_status(self, instrument_id: int, order_id: str) -> OrderStatus:
        if self.dry_run:
            return OrderStatus(order_id=order_id, status=STATUS_FILLED)
        if order_id in self._trigger_orders:
            # Resting stops live on the trigger service; the engine never lists them.
            return OrderStatus(order_id=order_id, status=STATUS_UNKNOWN)

        body = await self._post(
            f"{self.rest_url}/query",
            {"type": "order", "product_id": int(instrument_id), "digest": order_id},
            "query:order",
        )
        if isinstance(body, dict) and body.get("status") == "success":
            data = body.get("data") or {}
            amount = abs(from_x18(data.get("amount")))
            unfilled = abs(from_x18(data.get("unfilled_amount")))
            return OrderStatus(
                order_id=order_id,
                status=STATUS_OPEN,
                filled_quantity=amount - unfilled,
                avg_price=from_x18(data.get("price_x18")) or None,
            )
        # Off the book: filled or cancelled. Only the archive can tell which.
        return await self._archived_order_status(order_id)

    async def _archived_order_status(self, order_id: str) -> OrderStatus:
        if not self.archive_url:
            # Filled, cancelled or never placed all look the same from here.
            return OrderStatus(order_id=order_id, status=STATUS_UNKNOWN)
        body = await self._post(self.archive_url, {"orders": {"digests": [order_id]}}, "archive:orders")
        orders = (body or {}).get("orders") if isinstance(body, dict) else None
        if not orders:
            return OrderStatus(order_id=order_id, status=STATUS_NOT_FOUND)
        row = orders[0] or {}
        amount = abs(from_x18(row.get("amount")))
        filled = abs(from_x18(row.get("base_filled")))
        quote = abs(from_x18(row.get("quote_filled")))
        avg = (quote / filled) if filled > 0 else None
        if amount > 0 and filled >= amount:
            return OrderStatus(order_id=order_id, status=STATUS_FILLED, filled_quantity=filled, avg_price=avg)
        return OrderStatus(order_id=order_id, status=STATUS_CANCELLED, filled_quantity=filled, avg_price=avg)
