#!/usr/bin/env python3
"""
Nado signal trader entrypoint.

Wires the exchange adapter, order gateway, lifecycle manager, fill streamer,
Telegram listener and notifier together, verifies the account, and runs until
SIGINT/SIGTERM. Shutdown stops signal intake first, lets in-flight entries
and protective placements finish (bounded), then closes the streams.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from bot_config import BotConfig, load_config
from env_utils import NADOBOT_CONFIG_PATH
from errors import BalanceUnavailable, ConfigError
from exchanges import NadoAdapter
from exchanges.nado_adapter import exchange_symbol
from fill_streamer import NadoFillStreamer
from lifecycle_manager import PositionLifecycleManager
from logging_utils import get_logger, setup_logging
from notifier import TelegramNotifier
from order_gateway import OrderGateway
from signal_listener import TelegramSignalListener
from telegram_api import TelegramBotAPI

DAILY_SUMMARY_UTC = (23, 55)


@dataclass
class BotContext:
    config: BotConfig
    adapter: NadoAdapter
    telegram: TelegramBotAPI
    gateway: OrderGateway
    notifier: TelegramNotifier
    manager: PositionLifecycleManager
    streamer: NadoFillStreamer
    listener: TelegramSignalListener


def seconds_until(hour: int, minute: int, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until the next HH:MM UTC."""
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def build_context(cfg: BotConfig) -> BotContext:
    adapter = NadoAdapter(
        log=get_logger("nado"),
        private_key=cfg.private_key,
        rest_url=cfg.nado.rest_api,
        trigger_url=cfg.nado.trigger_api,
        archive_url=cfg.nado.archive_api,
        subaccount=cfg.nado.subaccount,
        dry_run=cfg.dry_run,
        request_timeout=cfg.execution.request_timeout_seconds,
    )
    telegram = TelegramBotAPI(cfg.telegram.bot_token)
    gateway = OrderGateway.from_config(adapter, cfg.execution)
    notifier = TelegramNotifier(telegram, cfg.telegram.notify_chat_id, leverage=cfg.risk.leverage)
    manager = PositionLifecycleManager.from_config(cfg, gateway, notifier)
    # Product ids are filled in after the adapter has loaded instruments.
    streamer = NadoFillStreamer(manager.post_event, adapter.sender_hex, ws_url=cfg.nado.ws_url)
    listener = TelegramSignalListener(
        telegram,
        cfg.telegram.channel_id,
        manager.post_signal,
        poll_timeout=cfg.telegram.poll_timeout_seconds,
    )
    return BotContext(cfg, adapter, telegram, gateway, notifier, manager, streamer, listener)


async def verify_account(ctx: BotContext) -> bool:
    """Startup checks: exchange reachable, instruments loaded, balance above minimum."""
    log = get_logger("main")
    if not await ctx.adapter.initialize():
        log.error("Exchange initialization failed")
        return False

    instruments = await ctx.adapter.list_instruments()
    if not instruments:
        log.error("No instruments available on Nado")
        return False
    wanted = {exchange_symbol(s): s for s in ctx.config.allowed_symbols}
    tradable = [i for i in instruments if i.symbol.upper() in wanted]
    listed = {i.symbol.upper() for i in tradable}
    missing = [s for key, s in wanted.items() if key not in listed]
    if missing:
        log.warning(f"Allowed symbols not listed on Nado: {', '.join(sorted(missing))}")
    ctx.streamer.product_ids = sorted(i.id for i in tradable)

    try:
        balance = await ctx.gateway.get_balance()
    except BalanceUnavailable as e:
        log.error(f"Balance check failed: {e}")
        return False
    if balance < ctx.config.risk.min_balance:
        log.error(f"Balance {balance:.2f} below minimum {ctx.config.risk.min_balance}")
        await ctx.notifier.on_alert(
            f"Bot not started: balance ${balance:.2f} below minimum ${ctx.config.risk.min_balance}",
            critical=True,
        )
        return False

    await ctx.notifier.on_startup(
        ctx.adapter.wallet_address,
        balance,
        ctx.config.risk,
        ctx.manager.window.status_message(),
        ctx.config.allowed_symbols,
        dry_run=ctx.config.dry_run,
    )
    log.info(f"Account verified: balance ${balance:.2f}, {len(tradable)} tradable symbol(s)")
    return True


async def daily_summary_loop(ctx: BotContext) -> None:
    log = get_logger("main")
    while True:
        await asyncio.sleep(seconds_until(*DAILY_SUMMARY_UTC))
        trades, open_count, pnl = ctx.manager.daily_stats()
        log.info(f"Daily summary: trades={trades} open={open_count} pnl={pnl:.2f}")
        await ctx.notifier.on_daily_summary(trades, open_count, pnl)
        # Step past the minute so the next wait targets tomorrow.
        await asyncio.sleep(61)


async def shutdown(ctx: BotContext, background) -> None:
    log = get_logger("main")
    log.info("Shutting down...")
    ctx.listener.stop()
    await ctx.manager.stop(timeout=ctx.config.execution.shutdown_timeout_seconds)
    await ctx.streamer.stop()
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    trades, open_count, pnl = ctx.manager.daily_stats()
    await ctx.notifier.send(
        f"🛑 <b>Bot stopped</b>\nTrades today: {trades}\nOpen positions: {open_count}\nPnL: ${pnl:.2f}"
    )
    await ctx.adapter.close()
    await ctx.telegram.close()
    log.info("Shutdown complete")


async def run_bot(cfg: BotConfig) -> int:
    log = get_logger("main")
    ctx = build_context(cfg)

    if not await verify_account(ctx):
        await ctx.adapter.close()
        await ctx.telegram.close()
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows; rely on KeyboardInterrupt.
            pass

    ctx.manager.start()
    background = [
        asyncio.create_task(ctx.streamer.start(), name="fill-streamer"),
        asyncio.create_task(ctx.listener.start(), name="signal-listener"),
        asyncio.create_task(daily_summary_loop(ctx), name="daily-summary"),
    ]
    log.info(f"Bot running ({ctx.manager.window.status_message()})")

    try:
        await stop_event.wait()
    finally:
        await shutdown(ctx, background)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Nado signal trader")
    parser.add_argument("--config", default=str(NADOBOT_CONFIG_PATH), help="Path to bot.yaml")
    parser.add_argument("--dry-run", action="store_true", help="Sign orders but never send them")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    try:
        cfg = load_config(Path(args.config))
    except ConfigError as e:
        get_logger("main").error(f"Configuration error: {e}")
        return 2
    if args.dry_run and not cfg.dry_run:
        cfg = replace(cfg, dry_run=True)

    setup_logging(log_file=cfg.log_file, verbose=args.verbose or cfg.log_level == "debug")
    log = get_logger("main")
    log.info(f"Config: {cfg.redacted()}")

    try:
        return asyncio.run(run_bot(cfg))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
