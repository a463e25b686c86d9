"""Market data gateway — public kline and ticker reads with host fallback.

Tries an ordered list of equivalent exchange hosts.  The first host that
answers with a 2xx and a payload that normalises cleanly wins.  There is no
retry within a host; callers decide whether to retry a whole sweep tuple on
the next tick.
"""

import json
import logging
from typing import Any, Sequence

import httpx

from pinebot.broker.models import Candle, Ticker
from pinebot.config import Config
from pinebot.errors import MarketDataUnavailable, RateLimited

logger = logging.getLogger("pinebot")

_RATE_LIMIT_STATUS_CODES = {418, 429}

TIMEFRAME_INTERVALS: dict[str, str] = {
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1h": "1h",
    "4h": "4h",
    "1d": "1d",
    "1w": "1w",
}


def timeframe_to_interval(timeframe: str) -> str:
    """Map a user-facing timeframe onto an exchange kline interval."""
    return TIMEFRAME_INTERVALS.get(timeframe, "1h")


class _HostFailed(Exception):
    def __init__(self, reason: str, rate_limited: bool = False) -> None:
        super().__init__(reason)
        self.rate_limited = rate_limited


def _parse_kline(row: Sequence[Any]) -> Candle:
    candle = Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
        close_time=int(row[6]) if len(row) > 6 else 0,
    )
    if candle.high < max(candle.open, candle.close) or candle.low > min(
        candle.open, candle.close
    ):
        raise ValueError(f"inconsistent OHLC at {candle.open_time}")
    return candle


def _parse_ticker(data: dict) -> Ticker:
    return Ticker(
        symbol=data["symbol"],
        last=float(data["lastPrice"]),
        bid=float(data.get("bidPrice", 0) or 0),
        ask=float(data.get("askPrice", 0) or 0),
        high=float(data.get("highPrice", 0) or 0),
        low=float(data.get("lowPrice", 0) or 0),
        volume=float(data.get("volume", 0) or 0),
        price_change_percent=float(data.get("priceChangePercent", 0) or 0),
    )


class MarketDataGateway:
    """Async read-only client over the public market data API.

    Args:
        config: Application configuration (hosts and HTTP timeout).
    """

    def __init__(self, config: Config) -> None:
        self._hosts = list(config.market_data_hosts)
        self._timeout = config.http_timeout_seconds

    @property
    def hosts(self) -> list[str]:
        return list(self._hosts)

    # ── Fallback helper ──────────────────────────────────────────────────

    async def _get_with_fallback(self, path: str, params: dict, parse):
        """GET *path* from each host in order and return ``parse(json)``.

        A non-2xx status, a transport error or a payload that *parse*
        rejects all move on to the next host.
        """
        failures: list[str] = []
        rate_limited = 0

        for base_url in self._hosts:
            url = f"{base_url}{path}"
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(
                        url,
                        params=params,
                        timeout=self._timeout,
                    )
                if resp.status_code in _RATE_LIMIT_STATUS_CODES:
                    raise _HostFailed(f"HTTP {resp.status_code}", rate_limited=True)
                if not 200 <= resp.status_code < 300:
                    raise _HostFailed(f"HTTP {resp.status_code}")
                try:
                    return parse(resp.json())
                except (KeyError, IndexError, TypeError, ValueError) as exc:
                    raise _HostFailed(f"malformed payload ({exc})") from exc
            except httpx.TransportError as exc:
                reason = f"transport error ({exc.__class__.__name__})"
            except _HostFailed as exc:
                reason = str(exc)
                if exc.rate_limited:
                    rate_limited += 1

            logger.warning("Market data %s%s failed: %s", base_url, path, reason)
            failures.append(f"{base_url}: {reason}")

        if failures and rate_limited == len(failures):
            raise RateLimited("All market data hosts are rate limiting")
        raise MarketDataUnavailable(failures)

    # ── Candles ──────────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        limit: int = 200,
    ) -> list[Candle]:
        """Fetch klines for *symbol*, ordered oldest-first.

        Args:
            symbol: e.g. ``"BTCUSDT"``
            timeframe: e.g. ``"1h"``; unknown values fall back to ``"1h"``.
            limit: number of candles to request.
        """
        params = {
            "symbol": symbol.upper(),
            "interval": timeframe_to_interval(timeframe),
            "limit": limit,
        }

        def _parse(data):
            if not isinstance(data, list):
                raise ValueError("expected a list of klines")
            return [_parse_kline(row) for row in data]

        return await self._get_with_fallback("/klines", params, _parse)

    # ── Tickers ──────────────────────────────────────────────────────────

    async def fetch_ticker(self, symbol: str) -> Ticker:
        """Fetch the 24h ticker for a single symbol."""
        return await self._get_with_fallback(
            "/ticker/24hr", {"symbol": symbol.upper()}, _parse_ticker,
        )

    async def fetch_tickers(self, symbols: list[str]) -> list[Ticker]:
        """Fetch 24h tickers for several symbols in one request."""
        params = {
            "symbols": json.dumps([s.upper() for s in symbols], separators=(",", ":")),
        }

        def _parse(data):
            if not isinstance(data, list):
                raise ValueError("expected a list of tickers")
            return [_parse_ticker(d) for d in data]

        return await self._get_with_fallback("/ticker/24hr", params, _parse)
