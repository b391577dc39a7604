"""
Numeric helper functions shared by the indicator engines.

This module keeps the small, NaN-aware building blocks (clamping, finiteness
checks, linear percentiles and population dispersion) in one place so every
recurrence in the pipeline treats non-finite values the same way.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp value into the closed interval [lower, upper].

    Examples:
        >>> clamp(1.5, 0.0, 1.0)
        1.0
        >>> clamp(-2.0, 0.0, 1.0)
        0.0
    """
    return max(lower, min(upper, value))


def is_finite(value: float | None) -> bool:
    """True for real, finite numbers (None, NaN and infinities are rejected)."""
    return value is not None and math.isfinite(value)


def percentile(values: Sequence[float], q: float) -> float:
    """Linear-interpolated percentile with q in [0, 1].

    Args:
        values: Sample values (unsorted).
        q: Quantile fraction, e.g. 0.25 for the first quartile.

    Returns:
        The interpolated percentile, or 0.0 for an empty sample.

    Examples:
        >>> percentile([1, 2, 3, 4], 0.5)
        2.5
    """
    if len(values) == 0:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), q * 100.0))


def population_std(values: Sequence[float]) -> float:
    """Population standard deviation (ddof=0); 0.0 for fewer than two values."""
    if len(values) <= 1:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float), ddof=0))


def mean(values: Sequence[float], default: float = 0.0) -> float:
    """Arithmetic mean with an explicit default for empty input."""
    if len(values) == 0:
        return default
    return float(np.mean(np.asarray(values, dtype=float)))
