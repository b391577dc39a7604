"""
Configuration models for the market data pipeline.

This module defines Pydantic models for type-safe configuration of the
adaptive trend engine, the provider fallback chain and logging, plus a YAML
loader that assembles them into one ``PipelineConfig``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

__all__ = [
    "AdaptiveTrendConfig",
    "FallbackConfig",
    "LoggingConfig",
    "PipelineConfig",
]

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class AdaptiveTrendConfig(BaseModel):
    """Adaptive SuperTrend engine parameters."""

    model_config = {"frozen": True, "extra": "forbid"}

    atr_length: int = Field(default=10, ge=1, description="ATR EMA span")
    min_multiplier: float = Field(default=1.0, gt=0, description="Smallest ATR factor swept")
    max_multiplier: float = Field(default=5.0, gt=0, description="Largest ATR factor swept")
    step: float = Field(default=0.5, gt=0, description="Factor sweep step")
    perf_alpha: float = Field(
        default=10.0,
        gt=0,
        description="Performance smoothing: EMA span if > 1, else a raw alpha",
    )
    from_cluster: Literal["Best", "Average", "Worst"] = Field(
        default="Best", description="Cluster whose mean factor is traded"
    )
    max_iter: int = Field(default=1000, ge=1, description="k-means iteration cap")
    max_data: int = Field(default=10000, ge=1, description="Most recent bars considered")
    confirm_bars: int = Field(
        default=0, ge=0, description="Bars the new trend must hold before a signal"
    )
    return_all_factors: bool = Field(
        default=False, description="Include per-factor analytics in diagnostics"
    )
    volatility_span: int = Field(
        default=10, ge=1, description="EMA span of |delta close| normalising performance"
    )

    @model_validator(mode="after")
    def validate_range(self) -> AdaptiveTrendConfig:
        if self.max_multiplier < self.min_multiplier:
            raise ValueError(
                f"max_multiplier ({self.max_multiplier}) must be >= "
                f"min_multiplier ({self.min_multiplier})"
            )
        return self


class FallbackConfig(BaseModel):
    """Primary/secondary provider fallback configuration."""

    max_retries: int = Field(default=2, ge=1, description="Secondary provider attempts")
    backoff_ms_initial: float = Field(
        default=1000, ge=0, description="First backoff delay in milliseconds (doubles)"
    )
    call_timeout_s: float = Field(
        default=10.0, gt=0, description="Timeout for one provider call"
    )
    aggregation_tz: str = Field(
        default="America/New_York",
        description="Timezone used when re-aggregating secondary bars",
    )
    cache_ttl_s: int = Field(default=45, ge=0, description="Cache write-through TTL")

    @field_validator("aggregation_tz")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before the ``attempt``-th (0-based) secondary call."""
        return self.backoff_ms_initial * (2**attempt) / 1000.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Logging level")
    log_file: str | None = Field(default=None, description="Log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Valid: {list(_LOG_LEVELS)}")
        return level


class PipelineConfig(BaseModel):
    """Complete pipeline configuration."""

    model_config = {"extra": "ignore"}

    trend: AdaptiveTrendConfig = Field(default_factory=AdaptiveTrendConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PipelineConfig:
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineConfig:
        """Load configuration from a YAML file.

        Missing sections fall back to their defaults.

        Example:
            >>> config = PipelineConfig.from_yaml("configs/pipeline.yaml")
            >>> config.fallback.max_retries
            2
        """
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"Top-level YAML in {path} must be a mapping")
        return cls.from_dict(data)
