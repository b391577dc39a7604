"""
Trading session templates and session-window filtering.

A session is a named set of wall-clock windows in a fixed timezone (regular
equity hours, extended futures hours, always-open crypto). Windows whose start
is later than their end wrap past midnight.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, time

from marketpipe.core.entities import Bar, ensure_aware
from marketpipe.core.timeframe import get_zone

__all__ = [
    "SessionWindow",
    "TradingSession",
    "SESSIONS",
    "filter_by_session",
    "get_session",
    "is_active",
    "resolve_session",
]

_END_OF_DAY = time(23, 59, 59, 999999)


def _parse_clock(value: str) -> time:
    hour_str, minute_str = value.split(":")
    hour, minute = int(hour_str), int(minute_str)
    if hour == 24 and minute == 0:
        return _END_OF_DAY
    return time(hour, minute)


@dataclass(frozen=True, slots=True)
class SessionWindow:
    """One wall-clock window; ``"24:00"`` as end means end of day."""

    start: time
    end: time

    @classmethod
    def parse(cls, start: str, end: str) -> SessionWindow:
        return cls(_parse_clock(start), _parse_clock(end))

    @property
    def wraps_midnight(self) -> bool:
        return self.start > self.end

    def contains(self, current_time: time) -> bool:
        """Check if the local time falls within this window."""
        if not self.wraps_midnight:
            # Same day (e.g., 09:30 to 16:00)
            return self.start <= current_time <= self.end
        # Crosses midnight (e.g., 18:00 to 17:00 next day)
        return current_time >= self.start or current_time <= self.end


@dataclass(frozen=True, slots=True)
class TradingSession:
    """Named trading-hours template evaluated in its own timezone."""

    name: str
    tz: str
    windows: tuple[SessionWindow, ...]

    def is_active(self, timestamp: datetime) -> bool:
        """True if the instant falls inside any of the session windows."""
        local = ensure_aware(timestamp).astimezone(get_zone(self.tz))
        current = local.time().replace(tzinfo=None)
        return any(window.contains(current) for window in self.windows)

    def get_session_info(self) -> dict[str, str | list[dict[str, str]]]:
        """Describe the template for display or logging."""
        return {
            "name": self.name,
            "tz": self.tz,
            "windows": [
                {
                    "start": window.start.strftime("%H:%M"),
                    "end": window.end.strftime("%H:%M"),
                }
                for window in self.windows
            ],
        }


def _session(name: str, tz: str, *windows: tuple[str, str]) -> TradingSession:
    return TradingSession(
        name=name,
        tz=tz,
        windows=tuple(SessionWindow.parse(start, end) for start, end in windows),
    )


SESSIONS: dict[str, TradingSession] = {
    "EQUITY_RTH": _session("EQUITY_RTH", "America/New_York", ("09:30", "16:00")),
    "FUTURES_EXT": _session("FUTURES_EXT", "America/Chicago", ("18:00", "17:00")),
    "CRYPTO_247": _session("CRYPTO_247", "UTC", ("00:00", "24:00")),
}

_CRYPTO_MARKERS = ("BTC", "ETH")
_FUTURES_ROOTS = ("ES", "NQ", "CL", "GC", "ZB", "ZN")


def get_session(session: str | TradingSession) -> TradingSession:
    """Look up a session template by name.

    Raises:
        KeyError: If the name is not a registered template.
    """
    if isinstance(session, TradingSession):
        return session
    try:
        return SESSIONS[session]
    except KeyError:
        raise KeyError(
            f"Unknown session {session!r}; valid: {sorted(SESSIONS)}"
        ) from None


def is_active(timestamp: datetime, session: str | TradingSession) -> bool:
    """Whether ``timestamp`` lies inside an active window of ``session``."""
    return get_session(session).is_active(timestamp)


def filter_by_session(bars: Iterable[Bar], session: str | TradingSession) -> list[Bar]:
    """Keep the bars whose timestamp is inside the session, preserving order."""
    template = get_session(session)
    return [bar for bar in bars if template.is_active(bar.ts)]


def resolve_session(symbol: str) -> str:
    """Guess the session template for a ticker.

    Examples:
        >>> resolve_session("BTCUSD")
        'CRYPTO_247'
        >>> resolve_session("ESZ4")
        'FUTURES_EXT'
        >>> resolve_session("AAPL")
        'EQUITY_RTH'
    """
    upper = symbol.upper()
    if upper.endswith("USD") or any(marker in upper for marker in _CRYPTO_MARKERS):
        return "CRYPTO_247"
    if any(upper.startswith(root) for root in _FUTURES_ROOTS):
        return "FUTURES_EXT"
    return "EQUITY_RTH"
