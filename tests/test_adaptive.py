import math
import random
from dataclasses import fields

import pytest

from marketpipe.core.entities import Bar
from marketpipe.core.indicators.adaptive import (
    AdaptiveTrendEngine,
    DegenerateInputWarning,
    flip_signals,
    regime_metrics,
)
from marketpipe.services.models import AdaptiveTrendConfig
from tests.fixtures import (
    create_monotonic_bars,
    create_regime_switch_bars,
    create_test_bars,
    create_trending_bars,
)


def engine(**overrides):
    return AdaptiveTrendEngine(AdaptiveTrendConfig(**overrides), rng=random.Random(42))


def assert_all_finite(result):
    for point in result.series:
        for f in fields(point):
            value = getattr(point, f.name)
            if isinstance(value, float):
                assert math.isfinite(value), f"{f.name} is not finite at {point.date}"


class TestFlipSignals:
    def test_flips_only_between_directions(self):
        trend = [0, 0, 1, 1, -1, -1, 1]
        assert flip_signals(trend) == [0, 0, 0, 0, -1, 0, 1]

    def test_confirmation_delay(self):
        trend = [1, 1, -1, -1, -1, 1, -1]
        assert flip_signals(trend, confirm_bars=2) == [0, 0, 0, 0, -1, 0, 0]

    def test_unconfirmed_flip_dropped(self):
        trend = [1, -1, 1, 1]
        assert flip_signals(trend, confirm_bars=1) == [0, 0, 0, 1]


class TestRegimeMetrics:
    def test_runs_and_churn(self):
        average_run, churn = regime_metrics([0, 1, 1, 1, -1, -1, 1])
        assert average_run == pytest.approx((3 + 2 + 1) / 3)
        assert churn == pytest.approx(2 / 6)

    def test_neutral_only(self):
        assert regime_metrics([0, 0, 0]) == (0.0, 0.0)


class TestAdaptiveTrendEngine:
    def test_series_aligned_with_input(self):
        bars = create_regime_switch_bars()
        result = engine().compute(bars)
        assert len(result.series) == len(bars)
        assert [p.date for p in result.series] == [b.ts for b in bars]
        assert_all_finite(result)

    def test_target_factor_on_swept_grid(self):
        result = engine().compute(create_regime_switch_bars())
        diagnostics = result.diagnostics
        assert diagnostics.target_factor in diagnostics.factors_tested
        assert all(p.target_factor == diagnostics.target_factor for p in result.series)
        assert diagnostics.selected_cluster_label == "Best"
        assert set(diagnostics.cluster_diagnostics) == {"Worst", "Average", "Best"}

    def test_signals_match_series_flips(self):
        result = engine().compute(create_regime_switch_bars())
        flagged = [p for p in result.series if p.signal != 0]
        assert len(result.signals) == len(flagged) >= 2
        types = [s.signal_type for s in result.signals]
        assert "Buy" in types and "Sell" in types

    def test_signal_metric_levels(self):
        result = engine().compute(create_regime_switch_bars())
        for signal in result.signals:
            assert 0.0 <= signal.confidence <= 1.0
            assert signal.stop_level == signal.supertrend_level
            if signal.signal_type == "Buy":
                assert signal.trend == "Bullish"
                assert signal.take_profit > signal.price
                assert signal.stop_level < signal.price
            else:
                assert signal.trend == "Bearish"
                assert signal.take_profit < signal.price
                assert signal.stop_level > signal.price

    def test_confidence_formula(self):
        result = engine().compute(create_regime_switch_bars())
        diagnostics = result.diagnostics
        dispersion = diagnostics.cluster_dispersions[diagnostics.selected_cluster_id]
        factor = 1 / (1 + dispersion) if dispersion > 0 else 1.0
        expected = min(max(min(max(diagnostics.performance_index, 0), 1) * factor, 0), 1)
        for signal in result.signals:
            assert signal.confidence == pytest.approx(expected)

    def test_ama_recurrence(self):
        result = engine().compute(create_regime_switch_bars())
        k = min(max(result.diagnostics.performance_index, 0.0), 1.0)
        series = result.series
        assert series[0].ama == series[0].supertrend
        for prev, point in zip(series, series[1:]):
            assert point.ama == pytest.approx(prev.ama + k * (point.supertrend - prev.ama))

    def test_performance_index_non_negative(self):
        result = engine().compute(create_trending_bars(150, trend="down"))
        assert result.diagnostics.performance_index >= 0.0

    def test_uptrend_ends_bullish(self):
        result = engine().compute(create_monotonic_bars(80))
        assert result.series[-1].trend == 1

    def test_nan_high_low_does_not_propagate(self):
        bars = create_test_bars(120)
        bad = bars[60]
        bars[60] = Bar(bad.ts, bad.open, math.nan, math.nan, bad.close, bad.volume)
        result = engine().compute(bars)
        assert len(result.series) == 120
        assert_all_finite(result)

    def test_nan_and_inf_close_do_not_propagate(self):
        bars = create_regime_switch_bars()
        for i in (0, 30, 31, 75):
            b = bars[i]
            bars[i] = Bar(b.ts, math.nan, math.inf, -math.inf, math.nan, math.nan)
        result = engine().compute(bars)
        assert_all_finite(result)
        for signal in result.signals:
            assert math.isfinite(signal.price)
            assert math.isfinite(signal.confidence)

    def test_max_data_window(self):
        bars = create_regime_switch_bars()
        result = engine(max_data=50).compute(bars)
        assert len(result.series) == 50
        assert result.diagnostics.data_offset == len(bars) - 50
        assert result.series[0].date == bars[-50].ts

    def test_confirm_bars_delays_signals(self):
        bars = create_regime_switch_bars()
        immediate = engine(confirm_bars=0).compute(bars)
        confirmed = engine(confirm_bars=3).compute(bars)
        assert immediate.diagnostics.target_factor == confirmed.diagnostics.target_factor
        first_immediate = next(i for i, p in enumerate(immediate.series) if p.signal)
        first_confirmed = next(i for i, p in enumerate(confirmed.series) if p.signal)
        assert first_confirmed == first_immediate + 3

    def test_return_all_factors(self):
        result = engine(return_all_factors=True).compute(create_regime_switch_bars())
        analytics = result.diagnostics.factor_analytics
        assert [a.factor for a in analytics] == result.diagnostics.factors_tested

    def test_regime_metrics_reported(self):
        result = engine().compute(create_regime_switch_bars())
        assert result.diagnostics.average_trend_run > 1
        assert 0 < result.diagnostics.churn_rate < 1

    def test_deterministic_with_seeded_rng(self):
        bars = create_test_bars(150)
        first = AdaptiveTrendEngine(rng=random.Random(7)).compute(bars)
        second = AdaptiveTrendEngine(rng=random.Random(7)).compute(bars)
        assert first.series == second.series
        assert first.diagnostics.target_factor == second.diagnostics.target_factor


class TestDegenerateInput:
    def test_empty_series(self):
        with pytest.warns(DegenerateInputWarning):
            result = engine(min_multiplier=1.5).compute([])
        assert result.series == ()
        assert result.signals == ()
        assert result.diagnostics.target_factor == 1.5
        assert result.diagnostics.warnings

    def test_all_nan_closes(self):
        bars = [
            Bar(b.ts, math.nan, math.nan, math.nan, math.nan, 0.0) for b in create_test_bars(10)
        ]
        with pytest.warns(DegenerateInputWarning):
            result = engine().compute(bars)
        assert result.is_empty

    def test_fewer_than_three_factors(self):
        with pytest.warns(DegenerateInputWarning):
            result = engine(min_multiplier=2.0, max_multiplier=2.5, step=0.5).compute(
                create_regime_switch_bars()
            )
        assert result.diagnostics.factors_tested == [2.0, 2.5]
        assert result.diagnostics.selected_cluster_label == "Average"
        assert len(result.series) == 120
        assert_all_finite(result)

    def test_flat_prices_zero_atr(self):
        bars = create_monotonic_bars(30, step=0.0)
        with pytest.warns(DegenerateInputWarning):
            result = engine(min_multiplier=1.0).compute(bars)
        assert len(result.series) == 30
        assert all(p.trend == 0 for p in result.series)
        assert result.signals == ()
        assert result.diagnostics.target_factor == 1.0
        assert_all_finite(result)

    def test_single_bar(self):
        bars = create_test_bars(1)
        result = engine().compute(bars)
        assert len(result.series) == 1
        assert result.series[0].trend == 0
        assert_all_finite(result)
