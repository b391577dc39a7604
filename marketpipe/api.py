"""
Public entry points consumed by request handlers.

- ``compute_adaptive_trend``: adaptive SuperTrend series, signals and diagnostics
- ``get_bars_with_fallback``: historical bars with primary/secondary failover
- ``aggregate``: batch re-bucketing of bars to a coarser interval
"""

from __future__ import annotations

import random
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, tzinfo
from typing import Any

from marketpipe.core.aggregator import aggregate_bars
from marketpipe.core.entities import Bar, bars_from_records
from marketpipe.core.indicators.adaptive import AdaptiveTrendEngine, AdaptiveTrendResult
from marketpipe.core.timeframe import Interval, normalize_resolution
from marketpipe.services.fallback import BarsFallback, BarsResult
from marketpipe.services.models import AdaptiveTrendConfig

__all__ = ["compute_adaptive_trend", "get_bars_with_fallback", "aggregate"]


def _as_bars(prices: Sequence[Bar] | Iterable[Mapping[str, Any]]) -> list[Bar]:
    items = list(prices)
    if items and not isinstance(items[0], Bar):
        return bars_from_records(items)
    return items


def compute_adaptive_trend(
    prices: Sequence[Bar] | Iterable[Mapping[str, Any]],
    options: AdaptiveTrendConfig | Mapping[str, Any] | None = None,
    rng: random.Random | None = None,
) -> AdaptiveTrendResult:
    """Adaptive SuperTrend over OHLCV bars.

    Args:
        prices: ``Bar`` objects or OHLCV mappings (``date``/``open``/... or
            vendor short keys).
        options: Engine configuration or a mapping of its fields.
        rng: Random source for the clustering step.

    Returns:
        Per-bar series, signals and diagnostics.
    """
    if options is None:
        config = AdaptiveTrendConfig()
    elif isinstance(options, AdaptiveTrendConfig):
        config = options
    else:
        config = AdaptiveTrendConfig(**options)
    return AdaptiveTrendEngine(config, rng=rng).compute(_as_bars(prices))


async def get_bars_with_fallback(
    symbol: str,
    from_date: datetime,
    to_date: datetime,
    resolution: str | Interval,
    chain: BarsFallback | None = None,
    deadline: datetime | None = None,
) -> BarsResult:
    """Bars for ``symbol`` from the primary provider, or the secondary on outage.

    When ``chain`` is omitted an Alpaca/Finnhub chain is built from the
    environment and closed after the call.
    """
    if chain is not None:
        return await chain.get_bars(symbol, from_date, to_date, resolution, deadline=deadline)
    async with BarsFallback.from_settings() as owned:
        return await owned.get_bars(symbol, from_date, to_date, resolution, deadline=deadline)


def aggregate(
    bars: Sequence[Bar] | Iterable[Mapping[str, Any]],
    target_interval: str | Interval,
    timezone: str | tzinfo = "UTC",
) -> list[Bar]:
    """Re-bucket bars to ``target_interval`` in ``timezone``.

    Raises:
        InputError: If the interval token is not supported.
    """
    return aggregate_bars(_as_bars(bars), normalize_resolution(target_interval), timezone)
