"""
Base HTTP bar provider with session management and REST helpers.

This module provides the foundation for the market data vendor clients:
the ``BarProvider`` protocol the fallback chain depends on, and an aiohttp
based implementation with certifi TLS, request rate limiting, latency
tracking and HTTP error classification. Providers never retry on their own;
the retry policy belongs to the fallback chain.
"""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import aiohttp
import certifi

from marketpipe.core.entities import Bar

from .exceptions import ProviderError, TransientProviderError

__all__ = ["BarProvider", "ProviderConfig", "HttpBarProvider"]

logger = logging.getLogger(__name__)


@runtime_checkable
class BarProvider(Protocol):
    """Historical bar source; primary and secondary are interchangeable."""

    name: str

    async def fetch_bars(
        self,
        symbol: str,
        resolution: str,
        from_date: datetime,
        to_date: datetime,
    ) -> list[Bar]:
        """Fetch bars for ``[from_date, to_date]`` at a resolution token.

        Raises:
            ProviderError: With ``status`` set for HTTP failures.
        """
        ...


@dataclass
class ProviderConfig:
    """Connection settings for an HTTP data provider."""

    base_url: str
    api_key: str
    api_secret: str = ""
    rest_timeout: float = 10.0
    min_request_interval: float = 0.1
    user_agent: str = "marketpipe/0.1"


class HttpBarProvider(ABC):
    """Base class for HTTP-based bar providers.

    Provides common functionality for:
    - Lazily created aiohttp session with a certifi-backed SSL context
    - Rate-limited GET requests
    - Mapping HTTP/transport failures onto the provider error taxonomy
    - Request latency statistics
    """

    name = "http"

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self._session: aiohttp.ClientSession | None = None

        # Rate limiting
        self._last_request_time = 0.0

        # Latency tracking
        self._request_latencies: list[float] = []
        self._max_latency_samples = 100

    async def __aenter__(self) -> HttpBarProvider:
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is initialized."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.rest_timeout)

            ssl_context = ssl.create_default_context(cafile=certifi.where())
            ssl_context.check_hostname = True
            ssl_context.verify_mode = ssl.CERT_REQUIRED

            connector = aiohttp.TCPConnector(ssl=ssl_context)

            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self.config.user_agent},
                connector=connector,
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _rate_limit(self) -> None:
        """Space out requests by at least ``min_request_interval`` seconds."""
        current_time = time.time()
        time_since_last = current_time - self._last_request_time

        if time_since_last < self.config.min_request_interval:
            await asyncio.sleep(self.config.min_request_interval - time_since_last)

        self._last_request_time = time.time()

    def _auth_headers(self) -> dict[str, str]:
        """Vendor authentication headers."""
        return {}

    async def _http_get(
        self, endpoint: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """GET a JSON document.

        Args:
            endpoint: API path appended to ``base_url``.
            params: Query parameters.

        Returns:
            Parsed JSON response.

        Raises:
            TransientProviderError: HTTP 429/5xx, transport failure or timeout.
            ProviderError: Any other non-200 status or an invalid payload.
        """
        await self._ensure_session()
        await self._rate_limit()

        url = f"{self.config.base_url}{endpoint}"
        start_time = time.time()

        try:
            assert self._session is not None
            async with self._session.get(
                url, params=params, headers=self._auth_headers()
            ) as response:
                self._track_latency((time.time() - start_time) * 1000)
                response_text = await response.text()

                if response.status == 200:
                    try:
                        result: dict[str, Any] = json.loads(response_text)
                        return result
                    except json.JSONDecodeError as e:
                        raise ProviderError(
                            f"Invalid JSON response: {e}", status=200, provider=self.name
                        ) from e

                try:
                    error_data = json.loads(response_text)
                    error_msg = (
                        error_data.get("message")
                        or error_data.get("error")
                        or f"HTTP {response.status}"
                    )
                except (json.JSONDecodeError, AttributeError):
                    error_msg = f"HTTP {response.status}: {response_text[:200]}"

                error_cls = (
                    TransientProviderError
                    if response.status == 429 or response.status >= 500
                    else ProviderError
                )
                raise error_cls(
                    f"Request to {endpoint} failed: {error_msg}",
                    status=response.status,
                    provider=self.name,
                )

        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"Request to {endpoint} timed out", provider=self.name
            ) from e
        except aiohttp.ClientError as e:
            raise TransientProviderError(
                f"Network error calling {endpoint}: {e}", provider=self.name
            ) from e

    def _track_latency(self, latency_ms: float) -> None:
        """Track request latency for monitoring."""
        self._request_latencies.append(latency_ms)

        if len(self._request_latencies) > self._max_latency_samples:
            self._request_latencies.pop(0)

    def get_latency_stats(self) -> dict[str, float]:
        """Get latency statistics for monitoring.

        Returns:
            Dictionary with avg, max, and p95 latency in milliseconds
        """
        if not self._request_latencies:
            return {"avg": 0.0, "max": 0.0, "p95": 0.0}

        latencies = sorted(self._request_latencies)
        n = len(latencies)
        p95_idx = int(0.95 * n)

        return {
            "avg": sum(latencies) / n,
            "max": max(latencies),
            "p95": latencies[p95_idx] if p95_idx < n else latencies[-1],
        }

    @abstractmethod
    async def fetch_bars(
        self,
        symbol: str,
        resolution: str,
        from_date: datetime,
        to_date: datetime,
    ) -> list[Bar]:
        """Fetch historical bars."""
        pass
