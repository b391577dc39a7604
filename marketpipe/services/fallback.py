"""
Primary/secondary bar provider fallback chain.

The chain calls the primary provider once. Retryable failures (HTTP 429,
HTTP 5xx, timeouts and transport errors) switch to the secondary provider,
which is called up to ``max_retries`` times with exponential backoff. Any
other failure propagates untouched so a client error such as an unknown
symbol is never masked as a provider outage.

The secondary is asked for the native resolution listed in
``FALLBACK_RESOLUTION_MAP`` and its bars are re-aggregated to the requested
interval.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from marketpipe.core.aggregator import aggregate_bars
from marketpipe.core.clock import Clock, WallClock
from marketpipe.core.entities import Bar, ensure_aware
from marketpipe.core.timeframe import Interval, normalize_resolution
from marketpipe.infra.cache import Cache
from marketpipe.infra.providers.base import BarProvider
from marketpipe.infra.providers.exceptions import (
    DeadlineExceededError,
    ExhaustionError,
    InputError,
    TransientProviderError,
    is_retryable,
)
from marketpipe.services.models import FallbackConfig

__all__ = [
    "BarsFallback",
    "BarsResult",
    "FALLBACK_RESOLUTION_MAP",
    "SYMBOL_PATTERN",
    "cache_key",
]

logger = logging.getLogger(__name__)

# Canonical interval -> secondary provider native token. Several entries
# fetch a finer native series than the natural divisor (10m and 30m fetch 5m,
# 4h fetches 60m); kept as-is pending product review.
FALLBACK_RESOLUTION_MAP: dict[str, str] = {
    "1m": "1",
    "5m": "5",
    "10m": "5",
    "15m": "15",
    "30m": "5",
    "1h": "60",
    "4h": "60",
    "1d": "D",
}

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9.\-/=^]{0,14}$")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BarsResult:
    """Bars plus provenance of one ``get_bars`` call."""

    bars: list[Bar]
    provider: Literal["primary", "secondary"]
    provider_name: str
    attempts: int
    errors: list[BaseException] = field(default_factory=list)
    raw_count: int = 0


def cache_key(symbol: str, interval: Interval, from_date: datetime, to_date: datetime) -> str:
    return f"bars:{symbol}:{interval.name}:{from_date.isoformat()}:{to_date.isoformat()}"


def _encode_bars(bars: list[Bar], provider: str) -> bytes:
    payload = {
        "provider": provider,
        "bars": [
            {
                "t": bar.ts.isoformat(),
                "o": bar.open,
                "h": bar.high,
                "l": bar.low,
                "c": bar.close,
                "v": bar.volume,
            }
            for bar in bars
        ],
    }
    return json.dumps(payload).encode("utf-8")


class BarsFallback:
    """Fetch bars from a primary provider, falling back to a secondary.

    Args:
        primary: Provider tried first, exactly once.
        secondary: Provider used when the primary fails retryably.
        config: Retry/backoff/timeout settings.
        cache: Optional write-through cache; failures are logged and ignored.
        clock: Time source used for deadline checks.
        sleep: Awaitable sleep used for backoff.

    Example:
        >>> chain = BarsFallback.from_settings()
        >>> result = await chain.get_bars("AAPL", start, end, "5m")
        >>> result.provider
        'primary'
    """

    def __init__(
        self,
        primary: BarProvider,
        secondary: BarProvider,
        config: FallbackConfig | None = None,
        cache: Cache | None = None,
        clock: Clock | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.config = config or FallbackConfig()
        self.cache = cache
        self.clock = clock or WallClock()
        self._sleep = sleep or asyncio.sleep
        self.logger = logging.getLogger(self.__class__.__name__)
        self._pending_writes: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls,
        config: FallbackConfig | None = None,
        cache: Cache | None = None,
    ) -> BarsFallback:
        """Alpaca as primary and Finnhub as secondary, credentials from the environment."""
        from marketpipe.infra.providers.alpaca import AlpacaDataProvider
        from marketpipe.infra.providers.finnhub import FinnhubDataProvider

        return cls(
            primary=AlpacaDataProvider(),
            secondary=FinnhubDataProvider(),
            config=config,
            cache=cache,
        )

    async def __aenter__(self) -> BarsFallback:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Wait for pending cache writes and close provider sessions."""
        await self.wait_for_cache_writes()
        for provider in (self.primary, self.secondary):
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

    @staticmethod
    def validate_request(
        symbol: str, from_date: datetime, to_date: datetime, resolution: str | Interval
    ) -> tuple[str, Interval]:
        """Normalise and check a request.

        Returns:
            The upper-cased symbol and the canonical interval.

        Raises:
            InputError: Malformed symbol, inverted range or unknown resolution.
        """
        if not isinstance(symbol, str):
            raise InputError(f"Symbol must be a string, got {type(symbol).__name__}")
        normalized = symbol.strip().upper()
        if not SYMBOL_PATTERN.match(normalized):
            raise InputError(f"Malformed symbol: {symbol!r}")
        if ensure_aware(from_date) > ensure_aware(to_date):
            raise InputError(f"Inverted date range: {from_date} > {to_date}")
        return normalized, normalize_resolution(resolution)

    async def get_bars(
        self,
        symbol: str,
        from_date: datetime,
        to_date: datetime,
        resolution: str | Interval,
        deadline: datetime | None = None,
    ) -> BarsResult:
        """Fetch bars, falling back to the secondary provider when needed.

        Args:
            symbol: Ticker; upper-cased before use.
            from_date: Range start (inclusive).
            to_date: Range end (inclusive).
            resolution: Resolution token or canonical interval.
            deadline: Optional absolute time after which no new backoff sleep
                or provider call is started.

        Returns:
            The bars and which provider produced them.

        Raises:
            InputError: Invalid request; no provider is called.
            DeadlineExceededError: The next backoff would cross ``deadline``.
            ExhaustionError: Both providers failed.
            Exception: A non-retryable primary failure, unchanged.
        """
        symbol, interval = self.validate_request(symbol, from_date, to_date, resolution)
        deadline = ensure_aware(deadline) if deadline is not None else None

        try:
            bars = await self._call(self.primary, symbol, interval.name, from_date, to_date, deadline)
        except Exception as primary_error:
            if not is_retryable(primary_error):
                self.logger.info(
                    f"Primary provider failed non-retryably for {symbol}: {primary_error}"
                )
                raise
            self.logger.warning(
                f"Primary provider failed for {symbol} {interval}, falling back: {primary_error}"
            )
            return await self._fallback(symbol, interval, from_date, to_date, deadline, primary_error)

        result = BarsResult(
            bars=bars,
            provider="primary",
            provider_name=self._name(self.primary),
            attempts=1,
            raw_count=len(bars),
        )
        self._schedule_cache_write(symbol, interval, from_date, to_date, result)
        return result

    async def _fallback(
        self,
        symbol: str,
        interval: Interval,
        from_date: datetime,
        to_date: datetime,
        deadline: datetime | None,
        primary_error: Exception,
    ) -> BarsResult:
        native = FALLBACK_RESOLUTION_MAP[interval.name]
        errors: list[BaseException] = []
        last_error: BaseException = primary_error

        for attempt in range(self.config.max_retries):
            delay = self.config.backoff_seconds(attempt)
            if deadline is not None and self.clock.now() + timedelta(seconds=delay) > deadline:
                raise DeadlineExceededError(
                    f"Deadline {deadline.isoformat()} would be exceeded by a "
                    f"{delay:.3f}s backoff (attempt {attempt + 1})",
                    provider=self._name(self.secondary),
                ) from last_error

            await self._sleep(delay)

            try:
                raw = await self._call(self.secondary, symbol, native, from_date, to_date, deadline)
            except DeadlineExceededError as e:
                # The deadline lapsed during the backoff; the secondary was never called.
                raise e from last_error
            except Exception as e:
                errors.append(e)
                last_error = e
                if not is_retryable(e):
                    self.logger.warning(
                        f"Secondary provider failed non-retryably for {symbol}: {e}"
                    )
                    break
                self.logger.warning(
                    f"Secondary attempt {attempt + 1}/{self.config.max_retries} "
                    f"failed for {symbol}: {e}"
                )
                continue

            bars = aggregate_bars(raw, interval, self.config.aggregation_tz)
            self.logger.info(
                f"Served {symbol} {interval} from secondary: {len(raw)} native '{native}' "
                f"bars -> {len(bars)} aggregated"
            )
            result = BarsResult(
                bars=bars,
                provider="secondary",
                provider_name=self._name(self.secondary),
                attempts=attempt + 2,
                errors=[primary_error, *errors],
                raw_count=len(raw),
            )
            self._schedule_cache_write(symbol, interval, from_date, to_date, result)
            return result

        self.logger.error(f"All providers failed for {symbol} {interval}")
        raise ExhaustionError(primary_error, errors) from last_error

    async def _call(
        self,
        provider: BarProvider,
        symbol: str,
        token: str,
        from_date: datetime,
        to_date: datetime,
        deadline: datetime | None,
    ) -> list[Bar]:
        timeout = self.config.call_timeout_s
        if deadline is not None:
            remaining = (deadline - self.clock.now()).total_seconds()
            if remaining <= 0:
                raise DeadlineExceededError(
                    f"Deadline {deadline.isoformat()} passed before calling "
                    f"{self._name(provider)}",
                    provider=self._name(provider),
                )
            timeout = min(timeout, remaining)

        try:
            return await asyncio.wait_for(
                provider.fetch_bars(symbol, token, from_date, to_date), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"Call timed out after {timeout:.2f}s", provider=self._name(provider)
            ) from e

    def _schedule_cache_write(
        self,
        symbol: str,
        interval: Interval,
        from_date: datetime,
        to_date: datetime,
        result: BarsResult,
    ) -> None:
        if self.cache is None:
            return
        key = cache_key(symbol, interval, from_date, to_date)
        task = asyncio.ensure_future(self._write_cache(key, result))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _write_cache(self, key: str, result: BarsResult) -> None:
        assert self.cache is not None
        try:
            payload = _encode_bars(result.bars, result.provider)
            await self.cache.set(key, payload, self.config.cache_ttl_s)
        except Exception as e:
            self.logger.warning(f"Cache write failed for {key}: {e}")

    async def wait_for_cache_writes(self) -> None:
        """Await outstanding write-through tasks."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    @staticmethod
    def _name(provider: BarProvider) -> str:
        return getattr(provider, "name", provider.__class__.__name__)
