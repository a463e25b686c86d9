"""Binance spot REST client for order placement.

Signed with the user's own key pair.  Orders are never retried: a second
attempt after an ambiguous failure could double-fill.  Errors are mapped
onto the engine taxonomy with the provider message kept verbatim.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional
from urllib.parse import urlencode

import httpx

from pinebot.broker.models import ExchangeCredentials, OrderRequest, OrderResponse
from pinebot.config import Config
from pinebot.errors import ExchangeError, classify_exchange_error

logger = logging.getLogger("pinebot")


def sign_query(query_string: str, api_secret: str) -> str:
    """Return the hex HMAC-SHA256 signature Binance expects."""
    return hmac.new(
        api_secret.encode("utf-8"),
        query_string.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def format_quantity(quote_amount: float, price: float) -> str:
    """Base-asset quantity worth *quote_amount* at *price*, 6 decimals."""
    if price <= 0:
        return "0.000000"
    return f"{quote_amount / price:.6f}"


class BinanceClient:
    """Async client wrapping the signed Binance spot order endpoints.

    Args:
        credentials: The user's API key pair.
        config: Application configuration (base URL and HTTP timeout).
    """

    def __init__(self, credentials: ExchangeCredentials, config: Config) -> None:
        self._credentials = credentials
        self._base_url = config.exchange_base_url
        self._timeout = config.http_timeout_seconds
        self._headers = {"X-MBX-APIKEY": credentials.api_key}

    def _signed_params(self, params: dict, timestamp_ms: Optional[int] = None) -> dict:
        signed = dict(params)
        signed["timestamp"] = str(
            timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        )
        signed["signature"] = sign_query(urlencode(signed), self._credentials.api_secret)
        return signed

    async def _signed_post(self, path: str, params: dict) -> dict:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    url,
                    headers=self._headers,
                    params=self._signed_params(params),
                    timeout=self._timeout,
                )
        except httpx.RequestError as exc:
            raise ExchangeError(f"Exchange unreachable: {exc}") from exc

        if resp.status_code >= 400:
            code: Optional[int] = None
            message = f"Binance API error: {resp.status_code}"
            try:
                body = resp.json()
                code = body.get("code")
                message = body.get("msg") or message
            except (ValueError, AttributeError):
                pass
            logger.error(
                "Binance %s rejected (code %s): %s | keyPrefix=%s...",
                path, code, message, self._credentials.api_key[:8],
            )
            raise classify_exchange_error(resp.status_code, message, code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise ExchangeError(f"Unreadable exchange response: {exc}") from exc
        if not isinstance(data, dict):
            raise ExchangeError(f"Unexpected exchange response: {data!r}")
        return data

    # ── Orders ───────────────────────────────────────────────────────────

    async def place_market_order(self, order: OrderRequest) -> OrderResponse:
        """Place a spot market order.

        Returns:
            ``OrderResponse`` with the first fill price, or 0.0 when the
            exchange reports no fills yet.
        """
        data = await self._signed_post(
            "/api/v3/order",
            {
                "symbol": order.symbol,
                "side": order.side,
                "type": "MARKET",
                "quantity": order.quantity,
            },
        )
        try:
            fills = data.get("fills") or []
            price = float(fills[0]["price"]) if fills else 0.0
            executed_qty = float(data.get("executedQty", order.quantity))
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ExchangeError(f"Malformed order fill: {exc!r}") from exc
        return OrderResponse(
            order_id=str(data.get("orderId", "")),
            symbol=data.get("symbol", order.symbol),
            side=data.get("side", order.side),
            executed_qty=executed_qty,
            price=price,
            status=data.get("status", ""),
        )

    async def place_protective_orders(self, order: OrderRequest) -> list[str]:
        """Place the stop-loss and take-profit legs for a filled entry.

        Best effort: a failed leg is logged and skipped, the entry stands.

        Returns:
            Names of the legs that were accepted.
        """
        exit_side = "SELL" if order.side == "BUY" else "BUY"
        legs: list[tuple[str, dict]] = []
        if order.stop_loss_price:
            legs.append((
                "stop_loss",
                {
                    "symbol": order.symbol,
                    "side": exit_side,
                    "type": "STOP_LOSS_LIMIT",
                    "quantity": order.quantity,
                    "stopPrice": f"{order.stop_loss_price:.2f}",
                    "price": f"{order.stop_loss_price * 0.995:.2f}",
                    "timeInForce": "GTC",
                },
            ))
        if order.take_profit_price:
            legs.append((
                "take_profit",
                {
                    "symbol": order.symbol,
                    "side": exit_side,
                    "type": "TAKE_PROFIT_LIMIT",
                    "quantity": order.quantity,
                    "stopPrice": f"{order.take_profit_price:.2f}",
                    "price": f"{order.take_profit_price * 1.005:.2f}",
                    "timeInForce": "GTC",
                },
            ))

        placed: list[str] = []
        for name, params in legs:
            try:
                await self._signed_post("/api/v3/order", params)
                placed.append(name)
            except Exception as exc:
                logger.warning(
                    "%s %s leg failed for %s: %s",
                    order.symbol, name, self._credentials.user_id, exc,
                )
        return placed
