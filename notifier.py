#!/usr/bin/env python3
"""
Operator notifications (Telegram, HTML parse mode).

Message builders are plain functions so they can be checked without a
network; TelegramNotifier only adds delivery. Delivery failures are logged
and never raised into the trading path.
"""

from __future__ import annotations

import html
from decimal import Decimal
from typing import Iterable, Optional

from logging_utils import get_logger
from telegram_api import TelegramBotAPI, TelegramError


def _money(value: Optional[Decimal], places: int = 2) -> str:
    if value is None:
        return "n/a"
    return f"{Decimal(value):.{places}f}"


def _signed(value: Decimal, places: int = 2) -> str:
    value = Decimal(value)
    return f"{'+' if value >= 0 else ''}{value:.{places}f}"


def format_startup(
    wallet_address: str,
    balance: Decimal,
    risk_cfg,
    window_status: str,
    symbols: Iterable[str],
    dry_run: bool = False,
) -> str:
    mode = "\n🧪 <b>DRY RUN</b>: orders are signed but not sent\n" if dry_run else ""
    return (
        "🤖 <b>NADO BOT STARTED</b>\n"
        f"{mode}\n"
        f"👛 Wallet: <code>{html.escape(wallet_address)}</code>\n"
        f"💰 Balance: ${_money(balance)} USDT0\n\n"
        "📊 <b>Configuration</b>\n"
        f"• Risk per trade: {risk_cfg.risk_percent}%\n"
        f"• Leverage: {risk_cfg.leverage}x\n"
        f"• Take Profit: {risk_cfg.take_profit_percent}%\n"
        f"• Stop Loss: {risk_cfg.stop_loss_percent}%\n"
        f"• Max daily trades: {risk_cfg.max_daily_trades}\n"
        f"• Max open positions: {risk_cfg.max_open_positions}\n\n"
        "⏰ <b>Trading Hours</b>\n"
        f"{html.escape(window_status)}\n\n"
        "📡 <b>Allowed Symbols</b>\n"
        f"{html.escape(', '.join(symbols))}\n\n"
        "✅ Bot is ready to trade"
    )


def format_position_opened(position, balance: Optional[Decimal], leverage=None) -> str:
    lev = f" ({leverage}x)" if leverage is not None else ""
    tp_pct = abs(position.tp_price - position.entry_price) / position.entry_price * 100
    sl_pct = abs(position.sl_price - position.entry_price) / position.entry_price * 100
    lines = [
        "🚀 <b>POSITION OPENED</b>",
        "",
        f"📈 {html.escape(position.symbol)} {position.side.value}",
        f"💵 Entry: ${_money(position.entry_price, 4)}",
        f"📦 Size: ${_money(position.size)}{lev} = {position.quantity}",
        f"💰 Balance: ${_money(balance)}" if balance is not None else "💰 Balance: unavailable",
        "",
        f"🎯 Take Profit: ${_money(position.tp_price, 4)} (+{tp_pct:.2f}%)",
        f"🛡️ Stop Loss: ${_money(position.sl_price, 4)} (-{sl_pct:.2f}%)",
    ]
    if getattr(position, "price_source", "mark") == "signal":
        lines += ["", "⚠️ Priced from the signal (no live price available)"]
    return "\n".join(lines)


def format_position_closed(
    position,
    reason: str,
    exit_price: Decimal,
    pnl_usd: Decimal,
    pnl_percent: Decimal,
    new_balance: Optional[Decimal],
) -> str:
    emoji = "✅" if pnl_usd >= 0 else "❌"
    reason_text = {"TP": "Take Profit Hit", "SL": "Stop Loss Hit"}.get(reason, html.escape(reason or "Closed"))
    balance_line = (
        f"💵 New Balance: ${_money(new_balance)}" if new_balance is not None
        else "💵 New Balance: balance unavailable"
    )
    return "\n".join([
        f"{emoji} <b>POSITION CLOSED</b>",
        "",
        f"📉 {html.escape(position.symbol)} {position.side.value}",
        f"🔚 {reason_text}",
        "",
        f"💵 Entry: ${_money(position.entry_price, 4)}",
        f"💵 Exit: ${_money(exit_price, 4)}",
        "",
        f"💰 PnL: ${_money(pnl_usd)} ({_signed(pnl_percent)}%)",
        balance_line,
    ])


def format_alert(message: str, critical: bool = False) -> str:
    header = "🚨 <b>CRITICAL</b>" if critical else "⚠️ <b>ALERT</b>"
    return f"{header}\n\n{html.escape(message)}"


def format_daily_summary(trade_count: int, open_count: int, realized_pnl: Decimal) -> str:
    return "\n".join([
        "📊 <b>DAILY SUMMARY</b>",
        "",
        f"📈 Total Trades: {trade_count}",
        f"💰 Daily PnL: ${_signed(realized_pnl)}",
        f"📂 Open Positions: {open_count}",
        "",
        "🔄 Counter will reset at 00:00 UTC",
    ])


class TelegramNotifier:
    """Sends operator messages to the notify chat."""

    def __init__(self, api: TelegramBotAPI, chat_id: str, leverage=None):
        self.api = api
        self.chat_id = str(chat_id)
        self.leverage = leverage
        self.log = get_logger("notifier")

    async def send(self, text: str) -> bool:
        try:
            await self.api.send_message(self.chat_id, text, parse_mode="HTML")
            return True
        except TelegramError as e:
            self.log.error(f"Telegram send error: {e}")
            return False

    async def on_startup(self, wallet_address, balance, risk_cfg, window_status, symbols, dry_run=False) -> bool:
        return await self.send(format_startup(wallet_address, balance, risk_cfg, window_status, symbols, dry_run))

    async def on_position_opened(self, position, balance) -> bool:
        return await self.send(format_position_opened(position, balance, self.leverage))

    async def on_position_closed(self, position, reason, exit_price, pnl_usd, pnl_percent, new_balance) -> bool:
        return await self.send(
            format_position_closed(position, reason, exit_price, pnl_usd, pnl_percent, new_balance)
        )

    async def on_alert(self, message: str, critical: bool = False) -> bool:
        if critical:
            self.log.critical(message)
        else:
            self.log.warning(message)
        return await self.send(format_alert(message, critical))

    async def on_daily_summary(self, trade_count: int, open_count: int, realized_pnl) -> bool:
        return await self.send(format_daily_summary(trade_count, open_count, realized_pnl))

    async def on_message(self, text: str) -> bool:
        return await self.send(html.escape(text))
