"""
ATR-scaled SuperTrend bands swept across a range of volatility factors.

For each factor the engine builds the ratcheted upper/lower bands, the trend
state and a causal performance score that rewards factors whose band side
anticipated the next bar's move. Every factor is independent of the others;
only the per-bar recurrences inside one factor are sequential.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

import numpy as np

from marketpipe.core.entities import Bar
from marketpipe.core.indicators.atr import atr_series
from marketpipe.core.utils import clamp

logger = logging.getLogger(__name__)

__all__ = [
    "PriceSeries",
    "PerFactorSeries",
    "BandSweep",
    "VolatilityBandEngine",
    "generate_factors",
    "sanitize_prices",
    "supertrend_for_factor",
    "performance_alpha",
    "performance_score",
]


def _frozen(values: Sequence[float], dtype: type = float) -> np.ndarray:
    array = np.asarray(values, dtype=dtype)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, slots=True)
class PriceSeries:
    """Sanitised, read-only OHLC arrays aligned with the source bars."""

    dates: tuple[datetime, ...]
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray

    def __len__(self) -> int:
        return len(self.close)


@dataclass(frozen=True, slots=True)
class PerFactorSeries:
    """Band/trend output for one ATR factor, aligned 1:1 with the prices."""

    factor: float
    supertrend: np.ndarray
    trend: np.ndarray
    upper_band: np.ndarray
    lower_band: np.ndarray
    performance: float


@dataclass(frozen=True, slots=True)
class BandSweep:
    """Result of sweeping every factor over one price series."""

    atr: np.ndarray
    factors: tuple[float, ...]
    series: tuple[PerFactorSeries, ...]

    @property
    def performances(self) -> list[float]:
        return [item.performance for item in self.series]


def generate_factors(min_multiplier: float, max_multiplier: float, step: float) -> list[float]:
    """Inclusive factor sweep, tolerant of floating point step accumulation.

    Examples:
        >>> generate_factors(1.0, 2.0, 0.5)
        [1.0, 1.5, 2.0]
    """
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    factors: list[float] = []
    epsilon = step / 1000
    count = int(math.floor((max_multiplier - min_multiplier + epsilon) / step))
    for i in range(count + 1):
        factors.append(round(min_multiplier + i * step, 6))
    return factors


def sanitize_prices(bars: Sequence[Bar]) -> PriceSeries | None:
    """Substitute non-finite prices so no NaN enters the recurrences.

    Closes fall back to the previous valid close (leading gaps take the first
    valid close); highs and lows fall back to the bar's sanitised close.

    Returns:
        The cleaned series, or None when no bar has a finite close.
    """
    first_valid = next((bar.close for bar in bars if math.isfinite(bar.close)), None)
    if first_valid is None:
        return None

    high: list[float] = []
    low: list[float] = []
    close: list[float] = []
    previous = first_valid
    for bar in bars:
        c = bar.close if math.isfinite(bar.close) else previous
        h = bar.high if math.isfinite(bar.high) else c
        lo = bar.low if math.isfinite(bar.low) else c
        high.append(h)
        low.append(lo)
        close.append(c)
        previous = c

    return PriceSeries(
        dates=tuple(bar.ts for bar in bars),
        high=_frozen(high),
        low=_frozen(low),
        close=_frozen(close),
    )


def supertrend_for_factor(
    prices: PriceSeries, atr: Sequence[float], factor: float
) -> tuple[list[float], list[int], list[float], list[float]]:
    """SuperTrend bands for one factor.

    The final upper band only tightens (moves down) unless the previous close
    broke above it; the final lower band only tightens (moves up) unless the
    previous close broke below it. Trend flips to +1 on a close above the
    final upper band and to -1 on a close below the final lower band, and
    starts neutral at 0.

    Returns:
        ``(supertrend, trend, final_upper, final_lower)`` lists.
    """
    length = len(prices)
    if length == 0:
        return [], [], [], []

    high = prices.high.tolist()
    low = prices.low.tolist()
    close = prices.close.tolist()

    final_upper = [0.0] * length
    final_lower = [0.0] * length
    trend = [0] * length
    supertrend = [0.0] * length

    def bands(i: int) -> tuple[float, float]:
        basis = (high[i] + low[i]) / 2
        width = atr[i] * factor if math.isfinite(atr[i]) else 0.0
        return basis + width, basis - width

    final_upper[0], final_lower[0] = bands(0)
    supertrend[0] = final_upper[0]

    for i in range(1, length):
        upper, lower = bands(i)
        close_prev = close[i - 1]

        if upper < final_upper[i - 1] or close_prev > final_upper[i - 1]:
            final_upper[i] = upper
        else:
            final_upper[i] = final_upper[i - 1]

        if lower > final_lower[i - 1] or close_prev < final_lower[i - 1]:
            final_lower[i] = lower
        else:
            final_lower[i] = final_lower[i - 1]

        if close[i] > final_upper[i]:
            trend[i] = 1
        elif close[i] < final_lower[i]:
            trend[i] = -1
        else:
            trend[i] = trend[i - 1]

        supertrend[i] = final_lower[i] if trend[i] == 1 else final_upper[i]

    return supertrend, trend, final_upper, final_lower


def performance_alpha(perf_alpha: float) -> float:
    """Spans above 1 become EMA alphas; smaller values are used as raw alphas."""
    if perf_alpha > 1:
        return min(2 / (perf_alpha + 1), 0.99)
    return clamp(perf_alpha, 0.01, 0.99)


def performance_score(
    close: Sequence[float], supertrend: Sequence[float], perf_alpha: float
) -> float:
    """Online score of how well the band side anticipated the next move.

    ``perf += alpha * (delta_close * sign(prev_close - prev_supertrend) - perf)``
    using only prior-bar state, so it carries no look-ahead.
    """
    if len(close) == 0:
        return 0.0
    alpha = performance_alpha(perf_alpha)
    perf = 0.0
    for i in range(1, len(close)):
        price_change = close[i] - close[i - 1]
        direction = math.copysign(1.0, close[i - 1] - supertrend[i - 1])
        if close[i - 1] == supertrend[i - 1]:
            direction = 0.0
        perf += alpha * (price_change * direction - perf)
    return perf


@dataclass
class VolatilityBandEngine:
    """Computes ATR and the SuperTrend band set for a sweep of factors.

    Args:
        atr_length: EMA span of the ATR.
        perf_alpha: Performance smoothing (EMA span if > 1, else raw alpha).

    Example:
        >>> engine = VolatilityBandEngine(atr_length=10)
        >>> sweep = engine.compute(prices, generate_factors(1.0, 5.0, 0.5))
        >>> best = max(sweep.series, key=lambda s: s.performance)
    """

    atr_length: int = 10
    perf_alpha: float = 10.0

    def __post_init__(self) -> None:
        if self.atr_length < 1:
            raise ValueError(f"atr_length must be positive, got {self.atr_length}")

    def atr(self, prices: PriceSeries) -> list[float]:
        return atr_series(
            prices.high.tolist(), prices.low.tolist(), prices.close.tolist(), self.atr_length
        )

    def compute_bands(
        self, prices: PriceSeries, factors: Sequence[float], atr: Sequence[float] | None = None
    ) -> list[PerFactorSeries]:
        """Band, trend and performance series for every factor."""
        atr_values = list(atr) if atr is not None else self.atr(prices)
        close = prices.close.tolist()
        results: list[PerFactorSeries] = []
        for factor in factors:
            supertrend, trend, upper, lower = supertrend_for_factor(prices, atr_values, factor)
            results.append(
                PerFactorSeries(
                    factor=factor,
                    supertrend=_frozen(supertrend),
                    trend=_frozen(trend, dtype=np.int8),
                    upper_band=_frozen(upper),
                    lower_band=_frozen(lower),
                    performance=performance_score(close, supertrend, self.perf_alpha),
                )
            )
        return results

    def compute(self, prices: PriceSeries, factors: Sequence[float]) -> BandSweep:
        atr_values = self.atr(prices)
        series = self.compute_bands(prices, factors, atr_values)
        logger.debug(
            f"Computed {len(series)} factor bands over {len(prices)} bars "
            f"(atr_length={self.atr_length})"
        )
        return BandSweep(
            atr=_frozen(atr_values),
            factors=tuple(factors),
            series=tuple(series),
        )
