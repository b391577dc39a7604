"""Trade and bar aggregation into fixed-width, session-aware OHLCV buckets."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo
from enum import Enum

from marketpipe.core.entities import AggregatedBar, Bar, TradeEvent
from marketpipe.core.timeframe import (
    Interval,
    IntervalConfig,
    bucket_id,
    epoch_to_datetime,
    floor_to_bucket,
)
from marketpipe.core.utils import is_finite

logger = logging.getLogger(__name__)

__all__ = [
    "LateEventPolicy",
    "LateEventError",
    "TradeBarAggregator",
    "aggregate_bars",
    "sanitize_bar",
]


class LateEventPolicy(Enum):
    """Policy for trades whose bucket has already been flushed."""

    FOLD = "fold"  # Fold into the symbol's currently open bucket
    DROP = "drop"  # Silently ignore
    RAISE = "raise"  # Raise LateEventError


class LateEventError(Exception):
    """Raised when a trade arrives for an already-flushed bucket."""

    pass


@dataclass
class _Bucket:
    symbol: str
    start: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    trade_count: int = 1

    def update(self, price: float, volume: float, *, keep_close: bool = False) -> None:
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        if not keep_close:
            self.close = price
        self.volume += volume
        self.trade_count += 1


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    # symbol -> bucket start (epoch seconds) -> bucket
    buckets: dict[str, dict[int, _Bucket]] = field(default_factory=dict)
    # symbol -> newest bucket start ever flushed for it
    flushed_through: dict[str, int] = field(default_factory=dict)


@dataclass
class TradeBarAggregator:
    """Streaming trade aggregator producing per-symbol OHLCV bars.

    Buckets close when a trade for a newer bucket of the same symbol arrives,
    so completion is event-driven rather than timer-driven. Symbols that stop
    trading are closed by the periodic ``flush(now)`` call.

    State is sharded by symbol hash; each shard has its own lock so ingests
    for different symbols rarely contend.

    Args:
        interval: Bucket width (one minute by default).
        tz: Timezone used for bucket boundaries.
        shards: Number of independently locked state shards.
        late_event_policy: Handling of trades for already-flushed buckets.

    Example:
        >>> aggregator = TradeBarAggregator()
        >>> for trade in trades:
        ...     for bar in aggregator.ingest(trade):
        ...         print(f"Completed {bar.symbol} {bar.ts}: {bar.close}")
        >>> leftovers = aggregator.flush_all()
    """

    interval: Interval = IntervalConfig.M1
    tz: str | tzinfo = "UTC"
    shards: int = 16
    late_event_policy: LateEventPolicy = LateEventPolicy.FOLD

    _shards: list[_Shard] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.shards <= 0:
            raise ValueError("shards must be positive")
        self._shards = [_Shard() for _ in range(self.shards)]

    def _shard_for(self, symbol: str) -> _Shard:
        return self._shards[hash(symbol) % self.shards]

    def ingest(self, event: TradeEvent) -> list[AggregatedBar]:
        """Fold one trade into its bucket.

        Args:
            event: Normalized trade print.

        Returns:
            Buckets of the same symbol strictly older than the event's bucket,
            now complete, sorted ascending. Invalid events return an empty
            list and leave state untouched.

        Raises:
            LateEventError: With ``LateEventPolicy.RAISE`` when the event
                belongs to an already-flushed bucket.
        """
        if not event.symbol or event.ts is None:
            return []
        if event.price is None or not math.isfinite(event.price):
            return []
        volume = event.volume if event.volume is not None else 0.0
        safe_volume = max(volume, 0.0) if math.isfinite(volume) else 0.0

        start = bucket_id(event.ts, self.interval, self.tz)
        shard = self._shard_for(event.symbol)

        with shard.lock:
            symbol_buckets = shard.buckets.setdefault(event.symbol, {})
            flushed_through = shard.flushed_through.get(event.symbol)

            if flushed_through is not None and start <= flushed_through:
                self._handle_late_event(event, symbol_buckets, safe_volume)
                if not symbol_buckets:
                    del shard.buckets[event.symbol]
                return []

            bucket = symbol_buckets.get(start)
            if bucket is None:
                symbol_buckets[start] = _Bucket(
                    symbol=event.symbol,
                    start=start,
                    open=event.price,
                    high=event.price,
                    low=event.price,
                    close=event.price,
                    volume=safe_volume,
                )
            else:
                bucket.update(event.price, safe_volume)

            return self._pop_older_than(shard, event.symbol, start)

    def _handle_late_event(
        self,
        event: TradeEvent,
        symbol_buckets: dict[int, _Bucket],
        volume: float,
    ) -> None:
        if self.late_event_policy == LateEventPolicy.RAISE:
            raise LateEventError(
                f"Trade for {event.symbol} at {event.ts} belongs to a flushed bucket"
            )
        if self.late_event_policy == LateEventPolicy.DROP or not symbol_buckets:
            logger.debug(f"Dropping late trade for {event.symbol} at {event.ts}")
            return
        current = symbol_buckets[max(symbol_buckets)]
        current.update(event.price, volume, keep_close=True)

    def _pop_older_than(self, shard: _Shard, symbol: str, start: int) -> list[AggregatedBar]:
        symbol_buckets = shard.buckets.get(symbol)
        if not symbol_buckets:
            return []
        ready = sorted(key for key in symbol_buckets if key < start)
        completed = [self._finish(symbol_buckets.pop(key)) for key in ready]
        if ready:
            shard.flushed_through[symbol] = max(
                ready[-1], shard.flushed_through.get(symbol, ready[-1])
            )
        if not symbol_buckets:
            del shard.buckets[symbol]
        return completed

    def flush(self, now: datetime) -> list[AggregatedBar]:
        """Close buckets whose start is at or before ``floor(now) - interval``.

        Intended for a periodic timer so idle symbols still emit their last
        bar.

        Returns:
            Completed bars across all symbols, sorted by bucket start.
        """
        # Daily buckets are 23 or 25 hours long across DST, so step back one
        # real minute from the current bucket start rather than one interval.
        current = floor_to_bucket(now, self.interval, self.tz).astimezone(UTC)
        previous = floor_to_bucket(current - timedelta(minutes=1), self.interval, self.tz)
        cutoff = int(previous.timestamp())
        return self._flush_where(lambda start: start <= cutoff)

    def flush_all(self) -> list[AggregatedBar]:
        """Close every open bucket (stream end)."""
        return self._flush_where(lambda start: True)

    def _flush_where(self, predicate) -> list[AggregatedBar]:
        completed: list[AggregatedBar] = []
        for shard in self._shards:
            with shard.lock:
                for symbol in list(shard.buckets):
                    symbol_buckets = shard.buckets[symbol]
                    ready = [start for start in symbol_buckets if predicate(start)]
                    for start in ready:
                        completed.append(self._finish(symbol_buckets.pop(start)))
                    if ready:
                        shard.flushed_through[symbol] = max(
                            max(ready), shard.flushed_through.get(symbol, max(ready))
                        )
                    if not symbol_buckets:
                        del shard.buckets[symbol]
        completed.sort(key=lambda bar: (bar.ts, bar.symbol))
        return completed

    def open_buckets(self, symbol: str) -> list[datetime]:
        """Start times of the buckets currently open for ``symbol``."""
        shard = self._shard_for(symbol)
        with shard.lock:
            starts = sorted(shard.buckets.get(symbol, {}))
        return [epoch_to_datetime(start, self.tz) for start in starts]

    def reset(self) -> None:
        """Drop all state, including flushed high-water marks."""
        for shard in self._shards:
            with shard.lock:
                shard.buckets.clear()
                shard.flushed_through.clear()

    def _finish(self, bucket: _Bucket) -> AggregatedBar:
        return AggregatedBar(
            symbol=bucket.symbol,
            ts=epoch_to_datetime(bucket.start, self.tz),
            open=bucket.open,
            high=bucket.high,
            low=bucket.low,
            close=bucket.close,
            volume=bucket.volume,
            trade_count=bucket.trade_count,
        )


def sanitize_bar(bar: Bar) -> Bar | None:
    """Repair non-finite OHLCV fields from the bar's finite ones.

    Returns:
        The original bar when it is clean, a repaired copy otherwise, or
        None when no price field is finite.
    """
    prices = (bar.open, bar.high, bar.low, bar.close)
    finite = [value for value in prices if is_finite(value)]
    volume_ok = is_finite(bar.volume) and bar.volume >= 0
    if len(finite) == 4 and volume_ok:
        return bar
    if not finite:
        return None

    def pick(value: float | None, fallback: float) -> float:
        return value if is_finite(value) else fallback

    close = pick(bar.close, pick(bar.open, finite[-1]))
    open_ = pick(bar.open, close)
    return Bar(
        ts=bar.ts,
        open=open_,
        high=pick(bar.high, max(finite)),
        low=pick(bar.low, min(finite)),
        close=close,
        volume=bar.volume if volume_ok else 0.0,
    )


def aggregate_bars(
    bars: Iterable[Bar], target: Interval, tz: str | tzinfo = "UTC"
) -> list[Bar]:
    """Batch-aggregate finer bars into ``target`` buckets.

    Pure function: groups by bucket start, reduces each group to open=first,
    high=max, low=min, close=last, volume=sum, and returns groups sorted by
    bucket start. Aggregating a series that is already bucketed at ``target``
    returns equal bars.

    Args:
        bars: Source bars in chronological order.
        target: Target interval.
        tz: Timezone for bucket boundaries.

    Returns:
        Aggregated bars, one per non-empty bucket.
    """
    groups: dict[int, list[float]] = {}
    starts: dict[int, datetime] = {}
    dropped = 0

    for raw in bars:
        bar = sanitize_bar(raw)
        if bar is None:
            dropped += 1
            continue
        start = floor_to_bucket(bar.ts, target, tz)
        key = int(start.timestamp())
        acc = groups.get(key)
        if acc is None:
            groups[key] = [bar.open, bar.high, bar.low, bar.close, bar.volume]
            starts[key] = start
        else:
            acc[1] = max(acc[1], bar.high)
            acc[2] = min(acc[2], bar.low)
            acc[3] = bar.close
            acc[4] += bar.volume

    if dropped:
        logger.debug(f"Dropped {dropped} bars with no finite price while aggregating")

    return [
        Bar(
            ts=starts[key],
            open=acc[0],
            high=acc[1],
            low=acc[2],
            close=acc[3],
            volume=acc[4],
        )
        for key, acc in sorted(groups.items())
    ]
