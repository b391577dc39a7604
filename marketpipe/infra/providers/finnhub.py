"""
Finnhub candle client (secondary bar provider).

Finnhub only serves a fixed set of native resolutions (1, 5, 15, 30, 60
minutes and daily); the fallback chain requests one of those and
re-aggregates to the caller's resolution.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

from pydantic_settings import BaseSettings

from marketpipe.core.entities import Bar, ensure_aware
from marketpipe.core.timeframe import normalize_resolution

from .base import HttpBarProvider, ProviderConfig
from .exceptions import InputError, ProviderError

__all__ = ["FinnhubSettings", "FinnhubDataProvider", "FINNHUB_RESOLUTIONS"]

# Canonical interval -> Finnhub native token.
FINNHUB_RESOLUTIONS = {
    "1m": "1",
    "5m": "5",
    "15m": "15",
    "30m": "30",
    "1h": "60",
    "1d": "D",
}
_NATIVE_TOKENS = frozenset(FINNHUB_RESOLUTIONS.values())


class FinnhubSettings(BaseSettings):
    """Finnhub API configuration loaded from environment variables."""

    finnhub_api_key: str = ""
    finnhub_base_url: str = "https://finnhub.io/api/v1"

    model_config = {"env_file": ".env", "case_sensitive": False, "extra": "ignore"}

    def model_post_init(self, __context: Any) -> None:
        """Validate that required fields are set."""
        if not self.finnhub_api_key:
            raise ValueError("FINNHUB_API_KEY environment variable is required")


def native_resolution(resolution: str) -> str:
    """Finnhub token for ``resolution``; native tokens pass through.

    Raises:
        InputError: If Finnhub has no native equivalent.
    """
    if resolution in _NATIVE_TOKENS:
        return resolution
    interval = normalize_resolution(resolution)
    token = FINNHUB_RESOLUTIONS.get(interval.name)
    if token is None:
        raise InputError(f"Finnhub has no native {interval} resolution")
    return token


class FinnhubDataProvider(HttpBarProvider):
    """Finnhub ``/stock/candle`` client."""

    name = "finnhub"

    def __init__(self, settings: FinnhubSettings | None = None) -> None:
        """Initialize the Finnhub client.

        Args:
            settings: Finnhub settings (loads from env if None)
        """
        if settings is None:
            settings = FinnhubSettings()

        super().__init__(
            ProviderConfig(
                base_url=settings.finnhub_base_url,
                api_key=settings.finnhub_api_key,
            )
        )

    def _auth_headers(self) -> dict[str, str]:
        return {"X-Finnhub-Token": self.config.api_key}

    async def fetch_bars(
        self,
        symbol: str,
        resolution: str,
        from_date: datetime,
        to_date: datetime,
    ) -> list[Bar]:
        params = {
            "symbol": symbol,
            "resolution": native_resolution(resolution),
            "from": int(ensure_aware(from_date).timestamp()),
            "to": int(ensure_aware(to_date).timestamp()),
        }
        payload = await self._http_get("/stock/candle", params)

        status = payload.get("s")
        if status == "no_data":
            self.logger.info(f"No data for {symbol} between {from_date} and {to_date}")
            return []
        if status != "ok":
            raise ProviderError(
                f"Unexpected candle status {status!r} for {symbol}", provider=self.name
            )
        return self._parse_candles(payload)

    def _parse_candles(self, payload: dict[str, Any]) -> list[Bar]:
        """Zip Finnhub's parallel arrays into bars."""
        times = payload.get("t") or []
        columns = {key: payload.get(key) or [] for key in ("o", "h", "l", "c", "v")}

        def value(key: str, i: int) -> float:
            series = columns[key]
            if i >= len(series) or series[i] is None:
                return math.nan
            return float(series[i])

        bars = []
        for i, epoch in enumerate(times):
            volume = value("v", i)
            bars.append(
                Bar(
                    ts=datetime.fromtimestamp(epoch, tz=UTC),
                    open=value("o", i),
                    high=value("h", i),
                    low=value("l", i),
                    close=value("c", i),
                    volume=volume if math.isfinite(volume) else 0.0,
                )
            )
        return bars
