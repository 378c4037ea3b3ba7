#!/usr/bin/env python3
"""Telegram listener: update filtering, offsets, polling error backoff."""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_listener import TelegramSignalListener
from telegram_api import TelegramError

CHANNEL = "-1001234567890"
POST = "SIGNAL DETECTED\nSymbol: BTCUSDT\nType: SHORT_SQUEEZE"


def _update(update_id: int, text: str, chat_id: str = CHANNEL, kind: str = "channel_post") -> dict:
    return {"update_id": update_id, kind: {"chat": {"id": int(chat_id)}, "text": text}}


class DummyAPI:
    def __init__(self, batches):
        self.batches = list(batches)
        self.offsets = []

    async def get_updates(self, offset=None, timeout=30, allowed_updates=None):
        self.offsets.append(offset)
        if not self.batches:
            await asyncio.sleep(3600)
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


def test_handle_update_forwards_channel_signal() -> None:
    received = []
    listener = TelegramSignalListener(DummyAPI([]), CHANNEL, received.append)

    signal = listener.handle_update(_update(10, POST))

    assert signal is not None
    assert received == [signal]
    assert signal.symbol == "BTCUSDT"
    assert listener._offset == 11


def test_other_chats_and_plain_posts_are_ignored() -> None:
    received = []
    listener = TelegramSignalListener(DummyAPI([]), CHANNEL, received.append)

    assert listener.handle_update(_update(1, POST, chat_id="-100999")) is None
    assert listener.handle_update(_update(2, "gm")) is None
    assert listener.handle_update(_update(3, "SIGNAL DETECTED\nType: PUMP\nSymbol: BTCUSDT")) is None
    assert received == []
    assert listener._offset == 4


def test_message_updates_are_accepted() -> None:
    received = []
    listener = TelegramSignalListener(DummyAPI([]), CHANNEL, received.append)
    listener.handle_update(_update(5, POST, kind="message"))
    assert len(received) == 1


def test_polling_recovers_from_api_errors() -> None:
    received = []
    api = DummyAPI([TelegramError("getUpdates: Bad Gateway"), [_update(7, POST)]])
    listener = TelegramSignalListener(api, CHANNEL, received.append, poll_timeout=1)
    listener._retry_delay = 0.01

    async def run() -> None:
        task = asyncio.create_task(listener.start())
        for _ in range(200):
            if received:
                break
            await asyncio.sleep(0.01)
        listener.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(run())

    assert len(received) == 1
    assert api.offsets[:2] == [None, None]
    assert api.offsets[2] == 8
