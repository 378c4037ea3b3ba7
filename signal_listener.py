#!/usr/bin/env python3
"""Telegram channel listener: long-polls getUpdates and forwards parsed signals."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Dict, Optional

from events import Signal
from logging_utils import get_logger
from signal_parser import is_signal_message, parse_signal_text
from telegram_api import TelegramBotAPI, TelegramError


class TelegramSignalListener:
    """Reads posts from one channel and hands signals to ``on_signal``."""

    RECONNECT_MIN_DELAY = 1.0
    RECONNECT_MAX_DELAY = 60.0

    def __init__(
        self,
        api: TelegramBotAPI,
        channel_id: str,
        on_signal: Callable[[Signal], bool],
        poll_timeout: int = 30,
    ):
        self.api = api
        self.channel_id = str(channel_id).strip()
        self.on_signal = on_signal
        self.poll_timeout = int(poll_timeout)
        self.log = get_logger("signal_listener")
        self._offset: Optional[int] = None
        self._running = False
        self._retry_delay = self.RECONNECT_MIN_DELAY

    async def start(self) -> None:
        self._running = True
        self.log.info(f"Telegram listener started (channel {self.channel_id})")
        while self._running:
            try:
                updates = await self.api.get_updates(
                    offset=self._offset,
                    timeout=self.poll_timeout,
                    allowed_updates=["message", "channel_post"],
                )
                self._retry_delay = self.RECONNECT_MIN_DELAY
            except asyncio.CancelledError:
                break
            except TelegramError as e:
                delay = self._retry_delay * random.uniform(0.5, 1.0)
                self.log.error(f"Telegram polling error: {e}; retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                self._retry_delay = min(self._retry_delay * 2, self.RECONNECT_MAX_DELAY)
                continue

            for update in updates:
                self.handle_update(update)
        self.log.info("Telegram listener stopped")

    def stop(self) -> None:
        self._running = False

    def handle_update(self, update: Dict[str, Any]) -> Optional[Signal]:
        update_id = update.get("update_id")
        if isinstance(update_id, int):
            self._offset = max(self._offset or 0, update_id + 1)

        msg = update.get("channel_post") or update.get("message") or {}
        chat_id = str((msg.get("chat") or {}).get("id", ""))
        if chat_id != self.channel_id:
            return None

        text = msg.get("text") or msg.get("caption") or ""
        if not is_signal_message(text):
            return None

        self.log.debug("Signal message received")
        signal = parse_signal_text(text)
        if signal is None:
            self.log.error("Failed to parse signal")
            return None

        self.log.info(f"Signal {signal.symbol} {signal.signal_type} (ref price {signal.reference_price})")
        self.on_signal(signal)
        return signal
