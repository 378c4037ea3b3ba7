#!/usr/bin/env python3
"""Minimal Telegram Bot API client over aiohttp (sendMessage + getUpdates long polling)."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from logging_utils import get_logger

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MESSAGE_LIMIT = 4096


class TelegramError(RuntimeError):
    """Bot API call failed."""


class TelegramBotAPI:
    def __init__(
        self,
        token: str,
        api_base: str = TELEGRAM_API_BASE,
        request_timeout: float = 15.0,
    ):
        self._base = f"{api_base.rstrip('/')}/bot{token}"
        self.request_timeout = float(request_timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self.log = get_logger("telegram")

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def call(self, method: str, http_timeout: Optional[float] = None, **params: Any) -> Any:
        session = await self._ensure_session()
        payload = {k: v for k, v in params.items() if v is not None}
        client_timeout = aiohttp.ClientTimeout(total=http_timeout or self.request_timeout)
        try:
            async with session.post(f"{self._base}/{method}", json=payload, timeout=client_timeout) as resp:
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TelegramError(f"{method}: {e.__class__.__name__}: {e}") from e
        if not isinstance(body, dict) or not body.get("ok"):
            desc = body.get("description") if isinstance(body, dict) else body
            raise TelegramError(f"{method}: {desc}")
        return body.get("result")

    async def send_message(self, chat_id: str, text: str, parse_mode: Optional[str] = "HTML") -> None:
        if len(text) > TELEGRAM_MESSAGE_LIMIT:
            text = text[: TELEGRAM_MESSAGE_LIMIT - 3] + "..."
        await self.call(
            "sendMessage",
            chat_id=chat_id,
            text=text,
            parse_mode=parse_mode,
            disable_web_page_preview=True,
        )

    async def get_updates(
        self,
        offset: Optional[int] = None,
        timeout: int = 30,
        allowed_updates: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        result = await self.call(
            "getUpdates",
            http_timeout=timeout + 10,
            offset=offset,
            timeout=timeout,
            limit=100,
            allowed_updates=allowed_updates,
        )
        return result if isinstance(result, list) else []
