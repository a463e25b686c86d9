"""Tests for pinebot.broker.market_data — host fallback with mocked HTTP."""

import json

import httpx
import pytest

from pinebot.broker.market_data import MarketDataGateway, timeframe_to_interval
from pinebot.config import Config
from pinebot.errors import MarketDataUnavailable, RateLimited


def _make_config(**overrides) -> Config:
    defaults = dict(
        db_path=":memory:",
        log_level="WARNING",
        api_port=8080,
        market_data_hosts=("https://h1/api/v3", "https://h2/api/v3", "https://h3/api/v3"),
        exchange_base_url="https://exchange.test",
        candle_limit=200,
        sweep_interval_seconds=60,
        http_timeout_seconds=5.0,
        order_timeout_seconds=5.0,
        order_quote_amount=10.0,
        max_concurrent_tuples=4,
        strategy_cache_size=16,
        default_user_coins=5,
    )
    defaults.update(overrides)
    return Config(**defaults)


# ── Mock exchange responses ──────────────────────────────────────────────

MOCK_KLINES = [
    [1700000000000, "100.0", "101.0", "99.0", "100.5", "12.5", 1700003599999],
    [1700003600000, "100.5", "102.0", "100.0", "101.5", "8.0", 1700007199999],
]

MOCK_TICKER = {
    "symbol": "BTCUSDT",
    "lastPrice": "101.50",
    "bidPrice": "101.40",
    "askPrice": "101.60",
    "highPrice": "103.00",
    "lowPrice": "98.00",
    "volume": "1234.5",
    "priceChangePercent": "1.25",
}


def _response(status: int, payload, url: str) -> httpx.Response:
    return httpx.Response(
        status,
        content=json.dumps(payload).encode(),
        headers={"content-type": "application/json"},
        request=httpx.Request("GET", url),
    )


def _install(monkeypatch, plan: dict):
    """Serve ``plan[host_prefix]`` for each URL; record every call."""
    calls: list[tuple[str, dict]] = []

    async def _mock_get(self, url, *, params=None, timeout=None):
        calls.append((url, params))
        for prefix, outcome in plan.items():
            if url.startswith(prefix):
                if isinstance(outcome, Exception):
                    raise outcome
                status, payload = outcome
                return _response(status, payload, url)
        raise AssertionError(f"unexpected URL {url}")

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    return calls


# ── Tests ────────────────────────────────────────────────────────────────


class TestFetchCandles:
    @pytest.mark.asyncio
    async def test_first_host_success(self, monkeypatch):
        calls = _install(monkeypatch, {"https://h1": (200, MOCK_KLINES)})
        candles = await MarketDataGateway(_make_config()).fetch_candles("btcusdt", "1h", 2)
        assert len(candles) == 2
        assert candles[0].open_time == 1700000000000
        assert candles[1].close == 101.5
        assert candles[1].close_time == 1700007199999
        assert calls == [
            ("https://h1/api/v3/klines", {"symbol": "BTCUSDT", "interval": "1h", "limit": 2}),
        ]

    @pytest.mark.asyncio
    async def test_falls_back_on_5xx(self, monkeypatch):
        calls = _install(monkeypatch, {
            "https://h1": (503, {"msg": "down"}),
            "https://h2": (200, MOCK_KLINES),
        })
        candles = await MarketDataGateway(_make_config()).fetch_candles("BTCUSDT", "1h")
        assert len(candles) == 2
        assert [c[0].split("/api")[0] for c in calls] == ["https://h1", "https://h2"]

    @pytest.mark.asyncio
    async def test_falls_back_on_transport_error(self, monkeypatch):
        _install(monkeypatch, {
            "https://h1": httpx.ConnectError("refused"),
            "https://h2": (200, MOCK_KLINES),
        })
        candles = await MarketDataGateway(_make_config()).fetch_candles("BTCUSDT", "1h")
        assert candles[-1].close == 101.5

    @pytest.mark.asyncio
    async def test_falls_back_on_malformed_payload(self, monkeypatch):
        _install(monkeypatch, {
            "https://h1": (200, {"unexpected": "object"}),
            "https://h2": (200, [["not", "a", "kline"]]),
            "https://h3": (200, MOCK_KLINES),
        })
        candles = await MarketDataGateway(_make_config()).fetch_candles("BTCUSDT", "1h")
        assert len(candles) == 2

    @pytest.mark.asyncio
    async def test_inconsistent_ohlc_rejected(self, monkeypatch):
        bad = [[1700000000000, "100.0", "99.0", "98.0", "100.5", "1.0"]]
        _install(monkeypatch, {
            "https://h1": (200, bad),
            "https://h2": (200, MOCK_KLINES),
        })
        candles = await MarketDataGateway(_make_config()).fetch_candles("BTCUSDT", "1h")
        assert candles[0].high == 101.0

    @pytest.mark.asyncio
    async def test_all_hosts_fail(self, monkeypatch):
        _install(monkeypatch, {
            "https://h1": (500, {}),
            "https://h2": httpx.ReadTimeout("slow"),
            "https://h3": (404, {}),
        })
        with pytest.raises(MarketDataUnavailable) as exc_info:
            await MarketDataGateway(_make_config()).fetch_candles("BTCUSDT", "1h")
        assert len(exc_info.value.failures) == 3
        assert "https://h1/api/v3: HTTP 500" in exc_info.value.failures

    @pytest.mark.asyncio
    async def test_all_hosts_rate_limited(self, monkeypatch):
        _install(monkeypatch, {
            "https://h1": (429, {}),
            "https://h2": (418, {}),
            "https://h3": (429, {}),
        })
        with pytest.raises(RateLimited):
            await MarketDataGateway(_make_config()).fetch_candles("BTCUSDT", "1h")

    @pytest.mark.asyncio
    async def test_mixed_rate_limit_and_outage_is_unavailable(self, monkeypatch):
        _install(monkeypatch, {
            "https://h1": (429, {}),
            "https://h2": (500, {}),
            "https://h3": (429, {}),
        })
        with pytest.raises(MarketDataUnavailable):
            await MarketDataGateway(_make_config()).fetch_candles("BTCUSDT", "1h")


class TestFetchTicker:
    @pytest.mark.asyncio
    async def test_single_ticker(self, monkeypatch):
        calls = _install(monkeypatch, {"https://h1": (200, MOCK_TICKER)})
        ticker = await MarketDataGateway(_make_config()).fetch_ticker("btcusdt")
        assert ticker.symbol == "BTCUSDT"
        assert ticker.last == 101.5
        assert ticker.bid == 101.4
        assert ticker.price_change_percent == 1.25
        assert calls[0] == ("https://h1/api/v3/ticker/24hr", {"symbol": "BTCUSDT"})

    @pytest.mark.asyncio
    async def test_many_tickers(self, monkeypatch):
        eth = dict(MOCK_TICKER, symbol="ETHUSDT", lastPrice="2000")
        calls = _install(monkeypatch, {"https://h1": (200, [MOCK_TICKER, eth])})
        tickers = await MarketDataGateway(_make_config()).fetch_tickers(["btcusdt", "ethusdt"])
        assert [t.symbol for t in tickers] == ["BTCUSDT", "ETHUSDT"]
        assert calls[0][1] == {"symbols": '["BTCUSDT","ETHUSDT"]'}

    @pytest.mark.asyncio
    async def test_missing_last_price_falls_back(self, monkeypatch):
        _install(monkeypatch, {
            "https://h1": (200, {"symbol": "BTCUSDT"}),
            "https://h2": (200, MOCK_TICKER),
        })
        ticker = await MarketDataGateway(_make_config()).fetch_ticker("BTCUSDT")
        assert ticker.last == 101.5


class TestTimeframes:
    @pytest.mark.parametrize("tf", ["1m", "5m", "15m", "30m", "1h", "4h", "1d", "1w"])
    def test_known(self, tf):
        assert timeframe_to_interval(tf) == tf

    def test_unknown_defaults_to_hourly(self):
        assert timeframe_to_interval("7h") == "1h"
