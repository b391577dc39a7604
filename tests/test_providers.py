"""
Tests for the HTTP bar providers with mocked transport.

Covers Alpaca pagination, Finnhub candle parsing and the mapping of HTTP
responses onto the provider error taxonomy.
"""

import math
import os
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
import pytest_asyncio

from marketpipe.infra.providers import BarProvider
from marketpipe.infra.providers.alpaca import (
    ALPACA_TIMEFRAMES,
    AlpacaDataProvider,
    AlpacaSettings,
)
from marketpipe.infra.providers.exceptions import (
    InputError,
    ProviderError,
    TransientProviderError,
)
from marketpipe.infra.providers.finnhub import (
    FinnhubDataProvider,
    FinnhubSettings,
    native_resolution,
)

START = datetime(2025, 1, 6, tzinfo=UTC)
END = datetime(2025, 1, 7, tzinfo=UTC)


class FakeResponse:
    def __init__(self, status, text):
        self.status = status
        self._text = text

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    closed = False

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, params=None, headers=None):
        self.requests.append((url, params, headers))
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


@pytest_asyncio.fixture
async def alpaca():
    provider = AlpacaDataProvider(
        AlpacaSettings(alpaca_key_id="test_key", alpaca_secret="test_secret", _env_file=None)
    )
    yield provider
    await provider.close()


@pytest_asyncio.fixture
async def finnhub():
    provider = FinnhubDataProvider(FinnhubSettings(finnhub_api_key="test_key", _env_file=None))
    yield provider
    await provider.close()


class TestSettings:
    def test_alpaca_missing_credentials(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError, match="ALPACA_KEY_ID"):
                AlpacaSettings(_env_file=None)

    def test_alpaca_reads_environment(self):
        env = {"ALPACA_KEY_ID": "env_key", "ALPACA_SECRET": "env_secret", "ALPACA_FEED": "sip"}
        with patch.dict(os.environ, env, clear=True):
            settings = AlpacaSettings(_env_file=None)
        assert settings.alpaca_key_id == "env_key"
        assert settings.alpaca_feed == "sip"
        assert settings.alpaca_data_url == "https://data.alpaca.markets"

    def test_finnhub_missing_key(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError, match="FINNHUB_API_KEY"):
                FinnhubSettings(_env_file=None)


class TestAlpacaDataProvider:
    @pytest.mark.asyncio
    async def test_satisfies_protocol(self, alpaca):
        assert isinstance(alpaca, BarProvider)
        assert alpaca.name == "alpaca"
        assert alpaca._auth_headers() == {
            "APCA-API-KEY-ID": "test_key",
            "APCA-API-SECRET-KEY": "test_secret",
        }

    @pytest.mark.asyncio
    async def test_request_parameters(self, alpaca):
        with patch.object(alpaca, "_http_get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = {"bars": [], "next_page_token": None}

            await alpaca.fetch_bars("AAPL", "5m", START, END)

            endpoint, params = mock_get.call_args.args
            assert endpoint == "/v2/stocks/AAPL/bars"
            assert params["timeframe"] == "5Min"
            assert params["start"] == "2025-01-06T00:00:00Z"
            assert params["end"] == "2025-01-07T00:00:00Z"
            assert params["feed"] == "iex"
            assert params["adjustment"] == "raw"
            assert "page_token" not in params

    @pytest.mark.asyncio
    async def test_follows_pagination(self, alpaca):
        pages = [
            {
                "bars": [
                    {"t": "2025-01-06T14:30:00Z", "o": 1, "h": 2, "l": 0.5, "c": 1.5, "v": 100},
                ],
                "next_page_token": "abc",
            },
            {
                "bars": [
                    {"t": "2025-01-06T14:35:00Z", "o": 1.5, "h": 3, "l": 1, "c": 2.5, "v": 50},
                ],
                "next_page_token": None,
            },
        ]
        with patch.object(alpaca, "_http_get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = pages

            bars = await alpaca.fetch_bars("AAPL", "5m", START, END)

            assert mock_get.call_count == 2
            assert mock_get.call_args_list[1].args[1]["page_token"] == "abc"

        assert [b.close for b in bars] == [1.5, 2.5]
        assert bars[0].ts == datetime(2025, 1, 6, 14, 30, tzinfo=UTC)
        assert bars[1].volume == 50.0

    @pytest.mark.asyncio
    async def test_missing_bars_field_is_empty(self, alpaca):
        with patch.object(alpaca, "_http_get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = {"bars": None}
            assert await alpaca.fetch_bars("AAPL", "1d", START, END) == []

    @pytest.mark.asyncio
    async def test_malformed_bars_payload(self, alpaca):
        with patch.object(alpaca, "_http_get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = {"bars": {"AAPL": []}}
            with pytest.raises(ProviderError):
                await alpaca.fetch_bars("AAPL", "1d", START, END)

    @pytest.mark.asyncio
    async def test_unknown_resolution(self, alpaca):
        with pytest.raises(InputError):
            await alpaca.fetch_bars("AAPL", "3m", START, END)

    def test_every_canonical_interval_supported(self):
        assert set(ALPACA_TIMEFRAMES) == {"1m", "5m", "10m", "15m", "30m", "1h", "4h", "1d"}


class TestFinnhubDataProvider:
    @pytest.mark.asyncio
    async def test_parses_parallel_arrays(self, finnhub):
        payload = {
            "s": "ok",
            "t": [1736173800, 1736174100],
            "o": [100.0, 101.0],
            "h": [102.0, None],
            "l": [99.0, 100.5],
            "c": [101.0, 101.5],
            "v": [1000],
        }
        with patch.object(finnhub, "_http_get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = payload

            bars = await finnhub.fetch_bars("AAPL", "5", START, END)

            endpoint, params = mock_get.call_args.args
            assert endpoint == "/stock/candle"
            assert params == {
                "symbol": "AAPL",
                "resolution": "5",
                "from": int(START.timestamp()),
                "to": int(END.timestamp()),
            }

        assert len(bars) == 2
        assert bars[0].ts == datetime(2025, 1, 6, 14, 30, tzinfo=UTC)
        assert bars[0].volume == 1000.0
        assert math.isnan(bars[1].high)
        assert bars[1].volume == 0.0

    @pytest.mark.asyncio
    async def test_no_data(self, finnhub):
        with patch.object(finnhub, "_http_get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = {"s": "no_data"}
            assert await finnhub.fetch_bars("AAPL", "D", START, END) == []

    @pytest.mark.asyncio
    async def test_unexpected_status(self, finnhub):
        with patch.object(finnhub, "_http_get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = {"s": "error"}
            with pytest.raises(ProviderError) as exc_info:
                await finnhub.fetch_bars("AAPL", "D", START, END)
            assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_token_header(self, finnhub):
        assert finnhub._auth_headers() == {"X-Finnhub-Token": "test_key"}

    @pytest.mark.parametrize(
        "token,expected",
        [("1", "1"), ("5", "5"), ("60", "60"), ("D", "D"), ("1h", "60"), ("15m", "15"), ("1d", "D")],
    )
    def test_native_resolution(self, token, expected):
        assert native_resolution(token) == expected

    @pytest.mark.parametrize("token", ["10m", "4h"])
    def test_no_native_equivalent(self, token):
        with pytest.raises(InputError):
            native_resolution(token)


class TestHttpGet:
    @pytest.mark.asyncio
    async def test_success_returns_json(self, finnhub):
        finnhub._session = FakeSession(FakeResponse(200, '{"s": "no_data"}'))
        result = await finnhub._http_get("/stock/candle", {"symbol": "AAPL"})
        assert result == {"s": "no_data"}

        url, params, headers = finnhub._session.requests[0]
        assert url == "https://finnhub.io/api/v1/stock/candle"
        assert headers == {"X-Finnhub-Token": "test_key"}
        assert finnhub.get_latency_stats()["max"] >= 0.0

    @pytest.mark.asyncio
    async def test_invalid_json(self, finnhub):
        finnhub._session = FakeSession(FakeResponse(200, "<html>"))
        with pytest.raises(ProviderError) as exc_info:
            await finnhub._http_get("/stock/candle")
        assert exc_info.value.status == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_statuses(self, alpaca, status):
        alpaca._session = FakeSession(FakeResponse(status, '{"message": "slow down"}'))
        with pytest.raises(TransientProviderError) as exc_info:
            await alpaca._http_get("/v2/stocks/AAPL/bars")
        assert exc_info.value.status == status
        assert "slow down" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 403, 404, 422])
    async def test_client_statuses(self, alpaca, status):
        alpaca._session = FakeSession(FakeResponse(status, "not json"))
        with pytest.raises(ProviderError) as exc_info:
            await alpaca._http_get("/v2/stocks/AAPL/bars")
        assert not isinstance(exc_info.value, TransientProviderError)
        assert exc_info.value.status == status
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_transport_error(self, alpaca):
        alpaca._session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(TransientProviderError):
            await alpaca._http_get("/v2/stocks/AAPL/bars")

    def test_latency_stats_default(self):
        provider = FinnhubDataProvider(FinnhubSettings(finnhub_api_key="k", _env_file=None))
        assert provider.get_latency_stats() == {"avg": 0.0, "max": 0.0, "p95": 0.0}
        for latency in range(1, 21):
            provider._track_latency(float(latency))
        stats = provider.get_latency_stats()
        assert stats["max"] == 20.0
        assert stats["avg"] == pytest.approx(10.5)
        assert stats["p95"] == 20.0
