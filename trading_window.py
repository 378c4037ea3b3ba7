"""UTC trading-hours gate."""

from __future__ import annotations

import re
from datetime import datetime, time, timezone
from typing import Optional

from errors import ConfigError

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_hhmm(value: str) -> time:
    m = _HHMM_RE.match(str(value or "").strip())
    if not m:
        raise ConfigError(f"invalid HH:MM time: {value!r}")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ConfigError(f"invalid HH:MM time: {value!r}")
    return time(hour, minute)


class TradingWindow:
    """Half-open ``[start, end)`` UTC window.

    ``start > end`` wraps past midnight (22:00-02:00); ``start == end`` covers
    the whole day. A disabled window is always open.
    """

    def __init__(self, enabled: bool = True, start_utc: str = "05:00", end_utc: str = "14:00"):
        self.enabled = bool(enabled)
        self.start_label = str(start_utc).strip()
        self.end_label = str(end_utc).strip()
        self.start = parse_hhmm(self.start_label)
        self.end = parse_hhmm(self.end_label)

    @classmethod
    def from_config(cls, window_cfg) -> "TradingWindow":
        return cls(
            enabled=window_cfg.enabled,
            start_utc=window_cfg.start_utc,
            end_utc=window_cfg.end_utc,
        )

    def is_open(self, now_utc: Optional[datetime] = None) -> bool:
        if not self.enabled:
            return True
        now = now_utc or datetime.now(timezone.utc)
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        minutes = now.hour * 60 + now.minute
        start = self.start.hour * 60 + self.start.minute
        end = self.end.hour * 60 + self.end.minute
        if start == end:
            return True
        if start < end:
            return start <= minutes < end
        return minutes >= start or minutes < end

    def status_message(self, now_utc: Optional[datetime] = None) -> str:
        if not self.enabled:
            return "24/7 Trading Mode"
        state = "ACTIVE" if self.is_open(now_utc) else "PAUSED"
        return f"{state} ({self.start_label} - {self.end_label} UTC)"
