from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

__all__ = ["Bar", "TradeEvent", "AggregatedBar", "bars_from_records", "ensure_aware"]


def ensure_aware(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts


@dataclass(frozen=True, slots=True)
class Bar:
    ts: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True, slots=True)
class TradeEvent:
    """One normalized trade print from a streaming feed."""

    symbol: str
    price: float
    volume: float
    ts: datetime | None

    @classmethod
    def from_epoch_ms(
        cls, symbol: str, price: float, volume: float, timestamp_ms: float
    ) -> TradeEvent:
        """Build an event from a millisecond epoch timestamp.

        Non-finite timestamps produce an event with ``ts=None`` which the
        aggregator rejects.
        """
        if timestamp_ms is None or not math.isfinite(timestamp_ms):
            return cls(symbol=symbol, price=price, volume=volume, ts=None)
        ts = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
        return cls(symbol=symbol, price=price, volume=volume, ts=ts)


@dataclass(frozen=True, slots=True)
class AggregatedBar:
    """Completed bucket emitted by the streaming trade aggregator."""

    symbol: str
    ts: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    trade_count: int

    def to_bar(self) -> Bar:
        return Bar(
            ts=self.ts,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )


_TS_KEYS = ("ts", "date", "datetime", "timestamp", "t")
_FIELD_KEYS = {
    "open": ("open", "o"),
    "high": ("high", "h"),
    "low": ("low", "l"),
    "close": ("close", "c"),
    "volume": ("volume", "v"),
}


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return ensure_aware(raw)
    if isinstance(raw, int | float):
        # Vendor payloads use milliseconds; anything below 1e11 is seconds.
        seconds = raw / 1000 if abs(raw) >= 1e11 else raw
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(raw, str):
        return ensure_aware(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp value: {raw!r}")


def _pick(record: Mapping[str, Any], keys: tuple[str, ...], default: Any = None) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


def bars_from_records(records: Iterable[Mapping[str, Any]]) -> list[Bar]:
    """Convert vendor/JSON style OHLCV mappings into ``Bar`` objects.

    Accepts either long (``open``) or short (``o``) field names and any of
    ``ts``/``date``/``datetime``/``timestamp``/``t`` for the time field.
    Missing prices become NaN so downstream sanitisation can repair them.

    Raises:
        ValueError: If a record has no usable timestamp.
    """
    bars: list[Bar] = []
    for record in records:
        raw_ts = _pick(record, _TS_KEYS)
        if raw_ts is None:
            raise ValueError(f"Record has no timestamp field: {record!r}")
        values = {
            name: float(_pick(record, keys, math.nan))
            for name, keys in _FIELD_KEYS.items()
        }
        if not math.isfinite(values["volume"]):
            values["volume"] = 0.0
        bars.append(Bar(ts=_parse_ts(raw_ts), **values))
    return bars
