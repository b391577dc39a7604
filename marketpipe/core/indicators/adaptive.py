"""
Adaptive SuperTrend: factor sweep, performance clustering and signal scan.

One ``compute`` call sweeps ATR factors over the whole (windowed) price
history, clusters the factors by performance, trades the mean factor of the
requested cluster and derives the per-bar series, the adaptive moving average
and the flip signals. The computation is a full recomputation; appending a bar
means calling ``compute`` again, since the clustering depends on the whole
performance history.
"""

from __future__ import annotations

import logging
import random
import warnings
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from marketpipe.core.entities import Bar
from marketpipe.core.indicators.clustering import (
    ClusterDiagnostics,
    FactorSelection,
    FactorSelector,
)
from marketpipe.core.indicators.ema import ema_series
from marketpipe.core.indicators.supertrend import (
    BandSweep,
    PerFactorSeries,
    PriceSeries,
    VolatilityBandEngine,
    generate_factors,
    sanitize_prices,
)
from marketpipe.core.utils import clamp
from marketpipe.services.models import AdaptiveTrendConfig

logger = logging.getLogger(__name__)

__all__ = [
    "AdaptiveTrendEngine",
    "AdaptiveTrendResult",
    "DegenerateInputWarning",
    "FactorAnalytics",
    "SignalMetric",
    "TrendDiagnostics",
    "TrendPoint",
]

_VOLATILITY_EPSILON = 1e-10


class DegenerateInputWarning(UserWarning):
    """Input too sparse or flat for a meaningful trend; a neutral result is returned."""


@dataclass(frozen=True, slots=True)
class TrendPoint:
    date: datetime
    close: float
    supertrend: float
    trend: int
    upper_band: float
    lower_band: float
    ama: float
    signal: int
    distance: float
    target_factor: float


@dataclass(frozen=True, slots=True)
class SignalMetric:
    """Trade-ready description of one trend flip."""

    timestamp: datetime
    signal_type: Literal["Buy", "Sell"]
    price: float
    supertrend_level: float
    distance: float
    distance_pct: float | None
    atr_factor: float
    performance_index: float
    trend: Literal["Bullish", "Bearish"]
    confidence: float
    stop_level: float
    take_profit: float | None


@dataclass(frozen=True, slots=True)
class FactorAnalytics:
    factor: float
    performance: float
    final_trend: int
    flips: int


@dataclass
class TrendDiagnostics:
    """Everything needed to explain how the traded factor was chosen."""

    target_factor: float
    performance_index: float = 0.0
    raw_performance_index: float = 0.0
    cluster_diagnostics: dict[str, ClusterDiagnostics] = field(default_factory=dict)
    cluster_mapping: dict[int, str] = field(default_factory=dict)
    cluster_dispersions: dict[int, float] = field(default_factory=dict)
    clusters: dict[int, list[float]] = field(default_factory=dict)
    factors_tested: list[float] = field(default_factory=list)
    from_cluster: str = "Best"
    selected_cluster_id: int | None = None
    selected_cluster_label: str | None = None
    data_offset: int = 0
    average_trend_run: float = 0.0
    churn_rate: float = 0.0
    confirm_bars: int = 0
    factor_analytics: list[FactorAnalytics] | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AdaptiveTrendResult:
    series: tuple[TrendPoint, ...]
    signals: tuple[SignalMetric, ...]
    diagnostics: TrendDiagnostics

    @property
    def is_empty(self) -> bool:
        return not self.series


def _count_flips(trend: Sequence[int]) -> int:
    return sum(
        1
        for i in range(1, len(trend))
        if trend[i] != 0 and trend[i - 1] != 0 and trend[i] != trend[i - 1]
    )


def regime_metrics(trend: Sequence[int]) -> tuple[float, float]:
    """Mean length of directional runs and flips per bar transition."""
    runs: list[int] = []
    current = 0
    for i, value in enumerate(trend):
        if value == 0:
            if current:
                runs.append(current)
            current = 0
        elif i > 0 and value == trend[i - 1]:
            current += 1
        else:
            if current:
                runs.append(current)
            current = 1
    if current:
        runs.append(current)

    average_run = sum(runs) / len(runs) if runs else 0.0
    churn = _count_flips(trend) / (len(trend) - 1) if len(trend) > 1 else 0.0
    return average_run, churn


def flip_signals(trend: Sequence[int], confirm_bars: int = 0) -> list[int]:
    """Signal per bar: +1 on a -1 -> +1 flip, -1 on a +1 -> -1 flip.

    With ``confirm_bars = n`` the signal lands ``n`` bars after the flip and
    only if the new trend held on every one of those bars.
    """
    signals = [0] * len(trend)
    for i in range(1, len(trend)):
        previous, current = trend[i - 1], trend[i]
        if previous == 0 or current == 0 or previous == current:
            continue
        emit_at = i + confirm_bars
        if emit_at >= len(trend):
            continue
        if all(trend[j] == current for j in range(i, emit_at + 1)):
            signals[emit_at] = current
    return signals


class AdaptiveTrendEngine:
    """Adaptive SuperTrend over a bar series.

    Args:
        config: Engine parameters (defaults when omitted).
        rng: Random source used by the factor clustering.

    Example:
        >>> engine = AdaptiveTrendEngine(AdaptiveTrendConfig(atr_length=14))
        >>> result = engine.compute(bars)
        >>> for signal in result.signals:
        ...     print(signal.timestamp, signal.signal_type, signal.confidence)
    """

    def __init__(
        self,
        config: AdaptiveTrendConfig | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config or AdaptiveTrendConfig()
        self.band_engine = VolatilityBandEngine(
            atr_length=self.config.atr_length, perf_alpha=self.config.perf_alpha
        )
        self.selector = FactorSelector(max_iter=self.config.max_iter, rng=rng)

    def compute(self, prices: Sequence[Bar]) -> AdaptiveTrendResult:
        """Run the full sweep/cluster/signal pipeline.

        Never raises for degenerate input: empty or all-NaN series, fewer than
        three factors and flat (zero ATR) series emit ``DegenerateInputWarning``
        and yield an empty or neutral result.
        """
        config = self.config
        window = list(prices[-config.max_data :]) if prices else []
        data_offset = len(prices) - len(window)
        diagnostics = TrendDiagnostics(
            target_factor=config.min_multiplier,
            from_cluster=config.from_cluster,
            data_offset=data_offset,
            confirm_bars=config.confirm_bars,
        )

        if not window:
            self._degenerate(diagnostics, "empty price series")
            return AdaptiveTrendResult(series=(), signals=(), diagnostics=diagnostics)

        series_prices = sanitize_prices(window)
        if series_prices is None:
            self._degenerate(diagnostics, "no finite close in price series")
            return AdaptiveTrendResult(series=(), signals=(), diagnostics=diagnostics)

        factors = generate_factors(config.min_multiplier, config.max_multiplier, config.step)
        diagnostics.factors_tested = factors
        if len(factors) < 3:
            self._degenerate(
                diagnostics,
                f"only {len(factors)} factor(s) swept; clustering skipped",
            )

        sweep = self.band_engine.compute(series_prices, factors)
        if not any(value > 0 for value in sweep.atr.tolist()):
            self._degenerate(diagnostics, "ATR is zero for every bar")
            series = self._neutral_series(series_prices, config.min_multiplier)
            diagnostics.average_trend_run, diagnostics.churn_rate = 0.0, 0.0
            return AdaptiveTrendResult(series=series, signals=(), diagnostics=diagnostics)

        selection = self.selector.select(factors, sweep.performances, config.from_cluster)
        chosen = next(item for item in sweep.series if item.factor == selection.target_factor)
        performance_index = self._performance_index(series_prices, selection.raw_performance)

        self._fill_selection(diagnostics, selection, performance_index)
        if config.return_all_factors:
            diagnostics.factor_analytics = self._factor_analytics(sweep)

        trend = chosen.trend.tolist()
        signals = flip_signals(trend, config.confirm_bars)
        series = self._build_series(series_prices, chosen, signals, performance_index)
        diagnostics.average_trend_run, diagnostics.churn_rate = regime_metrics(trend)

        metrics = self._signal_metrics(series, sweep, selection, performance_index)
        logger.info(
            f"Adaptive trend over {len(series)} bars: factor={selection.target_factor}, "
            f"performance_index={performance_index:.4f}, signals={len(metrics)}"
        )
        return AdaptiveTrendResult(
            series=tuple(series), signals=tuple(metrics), diagnostics=diagnostics
        )

    def _degenerate(self, diagnostics: TrendDiagnostics, reason: str) -> None:
        logger.warning(f"Degenerate input: {reason}")
        diagnostics.warnings.append(reason)
        warnings.warn(reason, DegenerateInputWarning, stacklevel=3)

    def _performance_index(self, prices: PriceSeries, raw_performance: float) -> float:
        close = prices.close.tolist()
        diffs = [0.0] + [abs(close[i] - close[i - 1]) for i in range(1, len(close))]
        volatility = ema_series(diffs, self.config.volatility_span, seed=diffs[0])[-1]
        return max(raw_performance, 0.0) / (volatility + _VOLATILITY_EPSILON)

    @staticmethod
    def _fill_selection(
        diagnostics: TrendDiagnostics, selection: FactorSelection, performance_index: float
    ) -> None:
        diagnostics.target_factor = selection.target_factor
        diagnostics.performance_index = performance_index
        diagnostics.raw_performance_index = selection.raw_performance
        diagnostics.cluster_diagnostics = selection.diagnostics
        diagnostics.cluster_mapping = dict(selection.mapping)
        diagnostics.cluster_dispersions = selection.dispersions
        diagnostics.clusters = selection.clusters
        diagnostics.selected_cluster_id = selection.selected_cluster_id
        diagnostics.selected_cluster_label = selection.selected_label

    @staticmethod
    def _factor_analytics(sweep: BandSweep) -> list[FactorAnalytics]:
        analytics = []
        for item in sweep.series:
            trend = item.trend.tolist()
            analytics.append(
                FactorAnalytics(
                    factor=item.factor,
                    performance=item.performance,
                    final_trend=trend[-1] if trend else 0,
                    flips=_count_flips(trend),
                )
            )
        return analytics

    def _build_series(
        self,
        prices: PriceSeries,
        chosen: PerFactorSeries,
        signals: Sequence[int],
        performance_index: float,
    ) -> list[TrendPoint]:
        # k > 2 makes the recurrence overshoot and diverge; keep it a convex blend.
        k = clamp(performance_index, 0.0, 1.0)
        close = prices.close.tolist()
        supertrend = chosen.supertrend.tolist()
        trend = chosen.trend.tolist()
        upper = chosen.upper_band.tolist()
        lower = chosen.lower_band.tolist()

        series: list[TrendPoint] = []
        ama = supertrend[0]
        for i, date in enumerate(prices.dates):
            if i > 0:
                ama = ama + k * (supertrend[i] - ama)
            series.append(
                TrendPoint(
                    date=date,
                    close=close[i],
                    supertrend=supertrend[i],
                    trend=trend[i],
                    upper_band=upper[i],
                    lower_band=lower[i],
                    ama=ama,
                    signal=signals[i],
                    distance=close[i] - supertrend[i],
                    target_factor=chosen.factor,
                )
            )
        return series

    @staticmethod
    def _neutral_series(prices: PriceSeries, factor: float) -> tuple[TrendPoint, ...]:
        close = prices.close.tolist()
        return tuple(
            TrendPoint(
                date=date,
                close=close[i],
                supertrend=close[i],
                trend=0,
                upper_band=close[i],
                lower_band=close[i],
                ama=close[i],
                signal=0,
                distance=0.0,
                target_factor=factor,
            )
            for i, date in enumerate(prices.dates)
        )

    @staticmethod
    def _signal_metrics(
        series: Sequence[TrendPoint],
        sweep: BandSweep,
        selection: FactorSelection,
        performance_index: float,
    ) -> list[SignalMetric]:
        dispersion = selection.selected_dispersion
        dispersion_factor = 1 / (1 + dispersion) if dispersion > 0 else 1.0
        confidence = clamp(clamp(performance_index, 0.0, 1.0) * dispersion_factor, 0.0, 1.0)
        atr = sweep.atr.tolist()

        metrics: list[SignalMetric] = []
        for i, point in enumerate(series):
            if point.signal == 0:
                continue
            direction = 1 if point.signal == 1 else -1
            take_profit = (
                point.close + direction * atr[i] * point.target_factor if atr[i] > 0 else None
            )
            metrics.append(
                SignalMetric(
                    timestamp=point.date,
                    signal_type="Buy" if direction == 1 else "Sell",
                    price=point.close,
                    supertrend_level=point.supertrend,
                    distance=point.distance,
                    distance_pct=(point.distance / point.close * 100) if point.close else None,
                    atr_factor=point.target_factor,
                    performance_index=performance_index,
                    trend="Bullish" if point.trend == 1 else "Bearish",
                    confidence=confidence,
                    stop_level=point.supertrend,
                    take_profit=take_profit,
                )
            )
        return metrics
