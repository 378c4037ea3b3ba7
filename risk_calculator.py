"""
Position sizing and TP/SL pricing for the mean-reversion strategy.

Pure functions over Decimal; no I/O. Configuration is validated once at
construction so a bad risk percent or leverage stops the bot at startup
instead of failing trade by trade.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Tuple

from errors import ConfigError, InvalidPrice
from position_store import Side

_HUNDRED = Decimal("100")
_ZERO = Decimal("0")
_ONE = Decimal("1")


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class RiskCalculator:
    """Sizing: notional = balance * risk% * leverage. Pricing: fixed-percent TP/SL."""

    def __init__(
        self,
        risk_percent,
        leverage,
        take_profit_percent,
        stop_loss_percent,
        slippage_percent=Decimal("0.2"),
    ):
        self.risk_percent = _dec(risk_percent)
        self.leverage = _dec(leverage)
        self.take_profit_percent = _dec(take_profit_percent)
        self.stop_loss_percent = _dec(stop_loss_percent)
        self.slippage_percent = _dec(slippage_percent)
        self.validate_risk(self.risk_percent, self.leverage)
        if self.take_profit_percent <= _ZERO:
            raise ConfigError(f"take profit percent must be > 0 (got {self.take_profit_percent})")
        if self.stop_loss_percent <= _ZERO:
            raise ConfigError(f"stop loss percent must be > 0 (got {self.stop_loss_percent})")
        if self.slippage_percent < _ZERO or self.slippage_percent >= _HUNDRED:
            raise ConfigError(f"slippage percent must be in [0, 100) (got {self.slippage_percent})")

    @classmethod
    def from_config(cls, risk_cfg) -> "RiskCalculator":
        return cls(
            risk_percent=risk_cfg.risk_percent,
            leverage=risk_cfg.leverage,
            take_profit_percent=risk_cfg.take_profit_percent,
            stop_loss_percent=risk_cfg.stop_loss_percent,
            slippage_percent=risk_cfg.slippage_percent,
        )

    @staticmethod
    def validate_risk(risk_percent: Decimal, leverage: Decimal) -> None:
        if risk_percent <= _ZERO or risk_percent > _HUNDRED:
            raise ConfigError(f"risk percent must be in (0, 100] (got {risk_percent})")
        if leverage < _ONE:
            raise ConfigError(f"leverage must be >= 1 (got {leverage})")

    def size_for(self, balance, risk_percent=None, leverage=None) -> Decimal:
        """Notional position size in quote currency; zero when balance <= 0."""
        balance = _dec(balance)
        risk = self.risk_percent if risk_percent is None else _dec(risk_percent)
        lev = self.leverage if leverage is None else _dec(leverage)
        if balance <= _ZERO:
            return _ZERO
        return balance * risk / _HUNDRED * lev

    def prices_for(
        self,
        side: Side,
        entry_price,
        tp_percent: Optional[Decimal] = None,
        sl_percent: Optional[Decimal] = None,
    ) -> Tuple[Decimal, Decimal]:
        """Return (tp_price, sl_price) for an entry.

        LONG: tp above, sl below. SHORT: tp below, sl above.
        """
        entry = _dec(entry_price)
        if entry <= _ZERO:
            raise InvalidPrice(f"entry price must be > 0 (got {entry})")
        tp_frac = (self.take_profit_percent if tp_percent is None else _dec(tp_percent)) / _HUNDRED
        sl_frac = (self.stop_loss_percent if sl_percent is None else _dec(sl_percent)) / _HUNDRED

        if side == Side.LONG:
            return entry * (_ONE + tp_frac), entry * (_ONE - sl_frac)
        return entry * (_ONE - tp_frac), entry * (_ONE + sl_frac)

    def execution_price(self, side: Side, mark_price) -> Decimal:
        """Crossing limit price: mark offset by the slippage tolerance."""
        mark = _dec(mark_price)
        if mark <= _ZERO:
            raise InvalidPrice(f"mark price must be > 0 (got {mark})")
        offset = self.slippage_percent / _HUNDRED
        if side == Side.LONG:
            return mark * (_ONE + offset)
        return mark * (_ONE - offset)

    @staticmethod
    def pnl(side: Side, entry_price, exit_price, size) -> Tuple[Decimal, Decimal]:
        """Realized (pnl_usd, pnl_percent) for a closed position."""
        entry = _dec(entry_price)
        exit_ = _dec(exit_price)
        if entry <= _ZERO:
            raise InvalidPrice(f"entry price must be > 0 (got {entry})")
        if side == Side.LONG:
            pnl_percent = (exit_ - entry) / entry * _HUNDRED
        else:
            pnl_percent = (entry - exit_) / entry * _HUNDRED
        pnl_usd = _dec(size) * pnl_percent / _HUNDRED
        return pnl_usd, pnl_percent
