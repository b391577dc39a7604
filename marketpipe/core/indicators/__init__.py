from .adaptive import (
    AdaptiveTrendEngine,
    AdaptiveTrendResult,
    DegenerateInputWarning,
    SignalMetric,
    TrendDiagnostics,
    TrendPoint,
)
from .atr import ATR, atr_series
from .clustering import ClusterDiagnostics, FactorSelection, FactorSelector
from .ema import EMA, ema_series
from .supertrend import BandSweep, PerFactorSeries, VolatilityBandEngine, generate_factors

__all__ = [
    "EMA",
    "ATR",
    "ema_series",
    "atr_series",
    "VolatilityBandEngine",
    "BandSweep",
    "PerFactorSeries",
    "generate_factors",
    "FactorSelector",
    "FactorSelection",
    "ClusterDiagnostics",
    "AdaptiveTrendEngine",
    "AdaptiveTrendResult",
    "DegenerateInputWarning",
    "TrendDiagnostics",
    "TrendPoint",
    "SignalMetric",
]
