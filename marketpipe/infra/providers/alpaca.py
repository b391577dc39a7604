"""
Alpaca market data client (primary bar provider).

Fetches historical stock bars from the Alpaca data API v2, following
``next_page_token`` pagination until the requested range is exhausted.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic_settings import BaseSettings

from marketpipe.core.entities import Bar, bars_from_records, ensure_aware
from marketpipe.core.timeframe import normalize_resolution

from .base import HttpBarProvider, ProviderConfig
from .exceptions import ProviderError

__all__ = ["AlpacaSettings", "AlpacaDataProvider", "ALPACA_TIMEFRAMES"]

ALPACA_TIMEFRAMES = {
    "1m": "1Min",
    "5m": "5Min",
    "10m": "10Min",
    "15m": "15Min",
    "30m": "30Min",
    "1h": "1Hour",
    "4h": "4Hour",
    "1d": "1Day",
}

MAX_PAGES = 50


class AlpacaSettings(BaseSettings):
    """Alpaca API configuration loaded from environment variables."""

    alpaca_key_id: str = ""
    alpaca_secret: str = ""
    alpaca_data_url: str = "https://data.alpaca.markets"
    alpaca_feed: str = "iex"

    model_config = {"env_file": ".env", "case_sensitive": False, "extra": "ignore"}

    def model_post_init(self, __context: Any) -> None:
        """Validate that required fields are set."""
        if not self.alpaca_key_id:
            raise ValueError("ALPACA_KEY_ID environment variable is required")
        if not self.alpaca_secret:
            raise ValueError("ALPACA_SECRET environment variable is required")


def _rfc3339(ts: datetime) -> str:
    return ensure_aware(ts).astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class AlpacaDataProvider(HttpBarProvider):
    """Alpaca stock bars over REST.

    Supports every canonical resolution natively, so no re-aggregation is
    needed on the primary path.
    """

    name = "alpaca"

    def __init__(self, settings: AlpacaSettings | None = None, page_limit: int = 10000) -> None:
        """Initialize the Alpaca client.

        Args:
            settings: Alpaca settings (loads from env if None)
            page_limit: Bars requested per page.
        """
        if settings is None:
            settings = AlpacaSettings()

        super().__init__(
            ProviderConfig(
                base_url=settings.alpaca_data_url,
                api_key=settings.alpaca_key_id,
                api_secret=settings.alpaca_secret,
            )
        )
        self.feed = settings.alpaca_feed
        self.page_limit = page_limit

    def _auth_headers(self) -> dict[str, str]:
        return {
            "APCA-API-KEY-ID": self.config.api_key,
            "APCA-API-SECRET-KEY": self.config.api_secret,
        }

    async def fetch_bars(
        self,
        symbol: str,
        resolution: str,
        from_date: datetime,
        to_date: datetime,
    ) -> list[Bar]:
        interval = normalize_resolution(resolution)
        params: dict[str, Any] = {
            "timeframe": ALPACA_TIMEFRAMES[interval.name],
            "start": _rfc3339(from_date),
            "end": _rfc3339(to_date),
            "limit": self.page_limit,
            "adjustment": "raw",
            "feed": self.feed,
        }
        endpoint = f"/v2/stocks/{symbol}/bars"

        bars: list[Bar] = []
        for _ in range(MAX_PAGES):
            payload = await self._http_get(endpoint, params)
            records = payload.get("bars") or []
            if not isinstance(records, list):
                raise ProviderError(
                    f"Unexpected bars payload type: {type(records).__name__}",
                    provider=self.name,
                )
            bars.extend(bars_from_records(records))

            page_token = payload.get("next_page_token")
            if not page_token:
                break
            params = {**params, "page_token": page_token}
        else:
            self.logger.warning(
                f"Stopped paginating {symbol} after {MAX_PAGES} pages; result truncated"
            )

        self.logger.debug(f"Fetched {len(bars)} {interval} bars for {symbol}")
        return bars
