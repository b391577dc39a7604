"""
marketpipe: market data aggregation, provider failover and adaptive SuperTrend.
"""

from marketpipe.api import aggregate, compute_adaptive_trend, get_bars_with_fallback

__version__ = "0.1.0"

__all__ = ["aggregate", "compute_adaptive_trend", "get_bars_with_fallback", "__version__"]
