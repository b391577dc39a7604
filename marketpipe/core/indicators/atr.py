from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from marketpipe.core.entities import Bar
from marketpipe.core.indicators.ema import ema_alpha, ema_series

__all__ = ["ATR", "true_range", "atr_series"]


def true_range(high: float, low: float, prev_close: float) -> float:
    """max(high - low, |high - prev_close|, |low - prev_close|); 0.0 if undefined."""
    value = max(high - low, abs(high - prev_close), abs(low - prev_close))
    return value if math.isfinite(value) else 0.0


@dataclass
class ATR:
    """Average True Range (ATR) indicator for volatility measurement.

    True Range is defined as:
        max(high - low, abs(high - prev_close), abs(low - prev_close))

    The ATR here is the exponential moving average of the true range with
    span ``period`` (alpha = 2 / (period + 1)), seeded at the first true
    range rather than zero so the early values are not biased toward zero
    volatility.

    Args:
        period: EMA span used for smoothing. Typically 10 or 14.

    Example:
        >>> atr = ATR(period=10)
        >>> atr.update(bar)
        >>> volatility = atr.value
    """

    period: int

    def __post_init__(self) -> None:
        if self.period < 1:
            raise ValueError(f"period must be positive, got {self.period}")
        self._alpha = ema_alpha(self.period)
        self._prev_close: float | None = None
        self._atr_value: float | None = None
        self._count = 0

    def update(self, bar: Bar) -> None:
        """Update ATR with new bar data.

        Args:
            bar: The new bar containing OHLC information.

        Note:
            For the first bar, True Range is simply high - low since no
            previous close is available.
        """
        close = bar.close if math.isfinite(bar.close) else self._prev_close
        if close is None:
            return
        high = bar.high if math.isfinite(bar.high) else close
        low = bar.low if math.isfinite(bar.low) else close
        prev_close = self._prev_close if self._prev_close is not None else close

        tr = true_range(high, low, prev_close)
        if self._atr_value is None:
            self._atr_value = tr
        else:
            self._atr_value = self._alpha * tr + (1 - self._alpha) * self._atr_value

        self._prev_close = close
        self._count += 1

    @property
    def value(self) -> float | None:
        """Current ATR value, or None before the first bar."""
        return self._atr_value

    @property
    def is_ready(self) -> bool:
        """True once ``period`` bars have been processed."""
        return self._count >= self.period


def atr_series(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    span: int,
) -> list[float]:
    """ATR for every bar of an already-sanitised price series.

    Args:
        high: Bar highs.
        low: Bar lows.
        close: Bar closes.
        span: EMA span.

    Returns:
        ATR values aligned 1:1 with the input.
    """
    if len(close) == 0:
        return []
    trs = [
        true_range(high[i], low[i], close[i - 1] if i > 0 else close[i])
        for i in range(len(close))
    ]
    return ema_series(trs, span)
