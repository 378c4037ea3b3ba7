#!/usr/bin/env python3
"""WebSocket fill streaming for Nado."""

from __future__ import annotations

import asyncio
import json
import random
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp

from events import OrderCancelled, OrderFilled
from exchanges.nado_adapter import from_x18
from logging_utils import get_logger

NADO_WS_URL = "wss://api.nado.xyz/ws"

EventSink = Callable[[Any], Awaitable[bool]]


class BaseFillStreamer:
    """Base WebSocket fill streamer with reconnect + sink backpressure."""

    RECONNECT_MIN_DELAY = 2.0
    RECONNECT_MAX_DELAY = 60.0
    HEARTBEAT_INTERVAL = 15.0
    # Fill channels can be quiet for hours; rely mostly on ws heartbeat.
    WATCHDOG_TIMEOUT = 3600.0
    SINK_PUT_TIMEOUT = 2.0

    def __init__(self, venue: str, sink: EventSink, ws_url: str):
        self.venue = venue
        self.sink = sink
        self.ws_url = ws_url
        self.log = get_logger(f"fill_streamer.{venue}")

        self._running = False
        self._reconnect_delay = self.RECONNECT_MIN_DELAY
        self._last_message = 0.0
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start websocket streaming loop."""
        self._running = True

        while self._running:
            try:
                await self._connect_once()
                self._reconnect_delay = self.RECONNECT_MIN_DELAY
            except asyncio.CancelledError:
                break
            except (aiohttp.ClientError, ConnectionError, RuntimeError, asyncio.TimeoutError) as exc:
                self.log.error(f"WS connection error: {exc}")

            if not self._running:
                break

            delay = min(self._reconnect_delay, self.RECONNECT_MAX_DELAY)
            delay *= random.uniform(0.5, 1.0)
            self.log.info(f"Reconnecting in {delay:.1f}s...")
            await asyncio.sleep(delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, self.RECONNECT_MAX_DELAY)

    async def stop(self) -> None:
        """Signal streamer to stop and close the socket."""
        self._running = False
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    async def _connect_once(self) -> None:
        timeout = aiohttp.ClientTimeout(total=None)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            self.log.info(f"Connecting to {self.ws_url}")
            async with session.ws_connect(self.ws_url, heartbeat=self.HEARTBEAT_INTERVAL) as ws:
                self._ws = ws
                self._last_message = time.time()
                await self._subscribe(ws)
                await self._consume_ws(ws)
        self._ws = None

    async def _consume_ws(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        watchdog_task = asyncio.create_task(self._watchdog_loop(ws))
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._last_message = time.time()
                    await self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise ConnectionError(f"WS error: {ws.exception()}")
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSING):
                    self.log.info(f"WS closed (type={msg.type})")
                    break
        finally:
            watchdog_task.cancel()
            await asyncio.gather(watchdog_task, return_exceptions=True)

    async def _watchdog_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while self._running and not ws.closed:
            await asyncio.sleep(self.WATCHDOG_TIMEOUT / 2)
            if time.time() - self._last_message > self.WATCHDOG_TIMEOUT:
                self.log.warning("WS watchdog timeout; reconnecting")
                await ws.close()
                break

    async def _handle_text(self, payload: str) -> None:
        try:
            message = json.loads(payload)
        except (TypeError, ValueError):
            self.log.debug("Skipping non-JSON WS message")
            return
        if not isinstance(message, dict):
            return

        for event in self._parse_message(message):
            await self._forward(event)

    async def _forward(self, event: Any) -> None:
        try:
            accepted = await asyncio.wait_for(self.sink(event), timeout=self.SINK_PUT_TIMEOUT)
        except asyncio.TimeoutError:
            accepted = False
        if not accepted:
            self.log.warning(f"Event sink backpressure; dropping {event!r}")

    # ------------------------------------------------------------------
    # Implemented by subclasses
    # ------------------------------------------------------------------

    async def _subscribe(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        raise NotImplementedError

    def _parse_message(self, message: Dict[str, Any]) -> List[Any]:
        raise NotImplementedError


class NadoFillStreamer(BaseFillStreamer):
    """Nado subaccount fill + order_update streamer.

    Partial fills are accumulated per order digest; OrderFilled is emitted
    once, when the remaining quantity reaches zero, at the volume-weighted
    average price.
    """

    MAX_TRACKED_PARTIALS = 500

    def __init__(
        self,
        sink: EventSink,
        subaccount_hex: str,
        product_ids: Iterable[int] = (),
        ws_url: str = NADO_WS_URL,
    ):
        super().__init__("nado", sink, ws_url)
        self.subaccount_hex = subaccount_hex
        self.product_ids = sorted({int(p) for p in product_ids})
        self._partials: Dict[str, List[Decimal]] = {}
        self._next_id = 0

    def _subscription(self, stream_type: str, product_id: Optional[int]) -> Dict[str, Any]:
        self._next_id += 1
        return {
            "method": "subscribe",
            "stream": {
                "type": stream_type,
                "product_id": product_id,
                "subaccount": self.subaccount_hex,
            },
            "id": self._next_id,
        }

    async def _subscribe(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        targets: List[Optional[int]] = list(self.product_ids) or [None]
        for product_id in targets:
            for stream_type in ("fill", "order_update"):
                await ws.send_str(json.dumps(self._subscription(stream_type, product_id)))
        self.log.info(f"Subscribed to fill/order_update for products {targets}")

    def _parse_message(self, message: Dict[str, Any]) -> List[Any]:
        kind = message.get("type")
        if kind == "fill":
            event = self._convert_fill(message)
            return [event] if event else []
        if kind == "order_update":
            event = self._convert_order_update(message)
            return [event] if event else []
        return []

    def _convert_fill(self, message: Dict[str, Any]) -> Optional[OrderFilled]:
        digest = str(message.get("order_digest") or "")
        if not digest:
            return None
        try:
            qty = abs(from_x18(message.get("filled_qty")))
            remaining = abs(from_x18(message.get("remaining_qty")))
            price = from_x18(message.get("price"))
        except (TypeError, ValueError):
            self.log.debug(f"Malformed fill message: {message}")
            return None

        acc = self._partials.get(digest)
        if acc is None:
            if len(self._partials) >= self.MAX_TRACKED_PARTIALS:
                self._partials.pop(next(iter(self._partials)))
            acc = [Decimal("0"), Decimal("0")]
            self._partials[digest] = acc
        acc[0] += qty
        acc[1] += qty * price

        if remaining > 0:
            self.log.info(f"Partial fill {digest[:18]}... qty={qty} @ {price} remaining={remaining}")
            return None

        self._partials.pop(digest, None)
        total_qty, notional = acc
        avg = (notional / total_qty) if total_qty > 0 else price
        return OrderFilled(order_id=digest, price=avg, quantity=total_qty)

    def _convert_order_update(self, message: Dict[str, Any]) -> Optional[OrderCancelled]:
        if str(message.get("reason") or "").lower() != "cancelled":
            return None
        digest = str(message.get("digest") or "")
        if not digest:
            return None
        self._partials.pop(digest, None)
        return OrderCancelled(order_id=digest, reason="cancelled")
