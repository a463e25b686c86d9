"""Tests for pinebot.broker.exchange_client and error classification."""

import hashlib
import hmac
import json

import httpx
import pytest

from pinebot.broker.exchange_client import BinanceClient, format_quantity, sign_query
from pinebot.broker.models import ExchangeCredentials, OrderRequest
from pinebot.config import Config
from pinebot.errors import (
    ApiKeyPermissionError,
    ExchangeError,
    ExchangeRejected,
    RateLimited,
    classify_exchange_error,
    is_permission_error,
)


def _make_config(**overrides) -> Config:
    defaults = dict(
        db_path=":memory:",
        log_level="WARNING",
        api_port=8080,
        market_data_hosts=("https://h1/api/v3",),
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


CREDS = ExchangeCredentials(
    user_id="u1", exchange="binance", api_key="key-abcdefgh-123", api_secret="s3cret",
)

MOCK_ORDER_FILL = {
    "symbol": "BTCUSDT",
    "orderId": 28,
    "side": "BUY",
    "status": "FILLED",
    "executedQty": "0.000100",
    "fills": [{"price": "100000.00", "qty": "0.000100"}],
}


def _install_post(monkeypatch, responses: list):
    """Return queued responses in order; record each call's params."""
    calls: list[dict] = []

    async def _mock_post(self, url, *, headers=None, params=None, timeout=None):
        calls.append({"url": url, "headers": headers, "params": params})
        outcome = responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        status, payload = outcome
        return httpx.Response(
            status,
            content=payload if isinstance(payload, bytes) else json.dumps(payload).encode(),
            headers={"content-type": "application/json"},
            request=httpx.Request("POST", url),
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)
    return calls


# ── Signing ──────────────────────────────────────────────────────────────


class TestSigning:
    def test_sign_query_matches_hmac(self):
        expected = hmac.new(b"s3cret", b"symbol=BTCUSDT&timestamp=1", hashlib.sha256).hexdigest()
        assert sign_query("symbol=BTCUSDT&timestamp=1", "s3cret") == expected

    def test_signed_params_adds_timestamp_and_signature(self):
        client = BinanceClient(CREDS, _make_config())
        signed = client._signed_params({"symbol": "BTCUSDT"}, timestamp_ms=1234)
        assert signed["timestamp"] == "1234"
        assert signed["signature"] == sign_query("symbol=BTCUSDT&timestamp=1234", "s3cret")

    def test_format_quantity(self):
        assert format_quantity(10.0, 100000.0) == "0.000100"
        assert format_quantity(10.0, 0.0) == "0.000000"


# ── Orders ───────────────────────────────────────────────────────────────


class TestMarketOrder:
    @pytest.mark.asyncio
    async def test_fill(self, monkeypatch):
        calls = _install_post(monkeypatch, [(200, MOCK_ORDER_FILL)])
        client = BinanceClient(CREDS, _make_config())
        resp = await client.place_market_order(OrderRequest("BTCUSDT", "BUY", "0.000100"))
        assert resp.order_id == "28"
        assert resp.price == 100000.0
        assert resp.executed_qty == 0.0001
        assert resp.status == "FILLED"
        assert calls[0]["url"] == "https://exchange.test/api/v3/order"
        assert calls[0]["headers"] == {"X-MBX-APIKEY": "key-abcdefgh-123"}
        assert calls[0]["params"]["type"] == "MARKET"
        assert "signature" in calls[0]["params"]

    @pytest.mark.asyncio
    async def test_permission_rejection(self, monkeypatch):
        _install_post(monkeypatch, [
            (401, {"code": -2015, "msg": "Invalid API-key, IP, or permissions for action."}),
        ])
        client = BinanceClient(CREDS, _make_config())
        with pytest.raises(ApiKeyPermissionError) as exc_info:
            await client.place_market_order(OrderRequest("BTCUSDT", "BUY", "0.000100"))
        assert exc_info.value.code == -2015
        assert exc_info.value.provider_message.startswith("Invalid API-key")

    @pytest.mark.asyncio
    async def test_generic_rejection(self, monkeypatch):
        _install_post(monkeypatch, [
            (400, {"code": -2010, "msg": "Account has insufficient balance."}),
        ])
        client = BinanceClient(CREDS, _make_config())
        with pytest.raises(ExchangeRejected) as exc_info:
            await client.place_market_order(OrderRequest("BTCUSDT", "BUY", "0.000100"))
        assert not isinstance(exc_info.value, ApiKeyPermissionError)
        assert str(exc_info.value) == "Account has insufficient balance."

    @pytest.mark.asyncio
    async def test_rate_limited(self, monkeypatch):
        _install_post(monkeypatch, [(429, {"code": -1003, "msg": "Too many requests."})])
        client = BinanceClient(CREDS, _make_config())
        with pytest.raises(RateLimited):
            await client.place_market_order(OrderRequest("BTCUSDT", "BUY", "0.000100"))

    @pytest.mark.asyncio
    async def test_unreachable(self, monkeypatch):
        _install_post(monkeypatch, [httpx.ConnectError("refused")])
        client = BinanceClient(CREDS, _make_config())
        with pytest.raises(ExchangeError, match="unreachable"):
            await client.place_market_order(OrderRequest("BTCUSDT", "BUY", "0.000100"))

    @pytest.mark.asyncio
    async def test_non_json_success_body(self, monkeypatch):
        _install_post(monkeypatch, [(200, b"<html>gateway</html>")])
        client = BinanceClient(CREDS, _make_config())
        with pytest.raises(ExchangeError, match="Unreadable"):
            await client.place_market_order(OrderRequest("BTCUSDT", "BUY", "0.000100"))

    @pytest.mark.asyncio
    async def test_fill_without_price(self, monkeypatch):
        fill = dict(MOCK_ORDER_FILL, fills=[{"qty": "0.000100"}])
        _install_post(monkeypatch, [(200, fill)])
        client = BinanceClient(CREDS, _make_config())
        with pytest.raises(ExchangeError, match="Malformed order fill"):
            await client.place_market_order(OrderRequest("BTCUSDT", "BUY", "0.000100"))

    @pytest.mark.asyncio
    async def test_decoding_error(self, monkeypatch):
        _install_post(monkeypatch, [httpx.DecodingError("bad gzip")])
        client = BinanceClient(CREDS, _make_config())
        with pytest.raises(ExchangeError):
            await client.place_market_order(OrderRequest("BTCUSDT", "BUY", "0.000100"))


class TestProtectiveOrders:
    @pytest.mark.asyncio
    async def test_both_legs_placed_on_opposite_side(self, monkeypatch):
        calls = _install_post(monkeypatch, [(200, {}), (200, {})])
        client = BinanceClient(CREDS, _make_config())
        order = OrderRequest("BTCUSDT", "BUY", "0.000100", 98.0, 104.0)
        placed = await client.place_protective_orders(order)
        assert placed == ["stop_loss", "take_profit"]
        assert [c["params"]["type"] for c in calls] == ["STOP_LOSS_LIMIT", "TAKE_PROFIT_LIMIT"]
        assert all(c["params"]["side"] == "SELL" for c in calls)
        assert calls[0]["params"]["stopPrice"] == "98.00"

    @pytest.mark.asyncio
    async def test_failed_leg_is_skipped(self, monkeypatch):
        _install_post(monkeypatch, [
            (400, {"code": -2010, "msg": "Stop price would trigger immediately."}),
            (200, {}),
        ])
        client = BinanceClient(CREDS, _make_config())
        order = OrderRequest("BTCUSDT", "SELL", "0.000100", 102.0, 96.0)
        placed = await client.place_protective_orders(order)
        assert placed == ["take_profit"]


# ── Classification ───────────────────────────────────────────────────────


class TestClassification:
    @pytest.mark.parametrize("message", [
        "Invalid API-key, IP, or permissions for action.",
        "API-key format invalid.",
        "This key lacks permissions for action.",
    ])
    def test_permission_messages(self, message):
        assert is_permission_error(message)

    def test_permission_code(self):
        assert is_permission_error("something odd", code=-1022)

    def test_not_permission(self):
        assert not is_permission_error("Order would trigger immediately.")
        assert not is_permission_error(None)

    def test_classify(self):
        assert isinstance(classify_exchange_error(418, "banned"), RateLimited)
        assert isinstance(classify_exchange_error(400, "x", code=-1015), RateLimited)
        assert isinstance(
            classify_exchange_error(401, "Invalid API-key"), ApiKeyPermissionError
        )
        assert type(classify_exchange_error(400, "bad")) is ExchangeRejected
