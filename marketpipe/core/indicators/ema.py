from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from marketpipe.core.entities import Bar
from marketpipe.core.utils import clamp

__all__ = ["EMA", "ema_alpha", "ema_series"]


def ema_alpha(span: float) -> float:
    """Smoothing factor for an EMA span, clamped to [0.001, 1]."""
    alpha = 1.0 if span <= 0 else 2 / (span + 1)
    return clamp(alpha, 0.001, 1.0)


@dataclass
class EMA:
    period: int
    _mult: float | None = None
    _value: float | None = None

    def __post_init__(self) -> None:
        self._mult = ema_alpha(self.period)

    def update(self, bar: Bar) -> None:
        self.update_value(bar.close)

    def update_value(self, value: float) -> None:
        # Non-finite samples carry the previous value forward.
        if not math.isfinite(value):
            return
        if self._value is None:
            self._value = value
        else:
            assert self._mult is not None  # mypy hint: _mult is set in __post_init__
            self._value = (value - self._value) * self._mult + self._value

    @property
    def value(self) -> float | None:
        return self._value


def ema_series(
    values: Sequence[float],
    span: float,
    seed: float | None = None,
    alpha: float | None = None,
) -> list[float]:
    """Exponential moving average over a whole series.

    Seeded at ``seed`` when given and finite, otherwise at the first finite
    value (never at zero). Non-finite samples repeat the previous output.
    """
    if len(values) == 0:
        return []

    smoothing = clamp(alpha, 0.001, 1.0) if alpha is not None else ema_alpha(span)
    if seed is not None and math.isfinite(seed):
        current = seed
    else:
        current = next((v for v in values if math.isfinite(v)), 0.0)

    result = [current]
    for value in values[1:]:
        if math.isfinite(value):
            current = smoothing * value + (1 - smoothing) * current
        result.append(current)
    return result
