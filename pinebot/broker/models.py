"""Broker data models — typed representations of exchange API objects."""

from dataclasses import asdict, dataclass
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single kline bar.  Times are epoch milliseconds."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int = 0

    def to_dict(self) -> dict:
        return {
            "openTime": self.open_time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "closeTime": self.close_time,
        }


@dataclass(frozen=True)
class Ticker:
    """24h rolling ticker for one symbol."""

    symbol: str
    last: float
    bid: float
    ask: float
    high: float
    low: float
    volume: float
    price_change_percent: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExchangeCredentials:
    """API key pair for one user on one exchange."""

    user_id: str
    exchange: str
    api_key: str
    api_secret: str


@dataclass(frozen=True)
class OrderRequest:
    """A market order request payload."""

    symbol: str
    side: str  # "BUY" or "SELL"
    quantity: str
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None


@dataclass(frozen=True)
class OrderResponse:
    """Acknowledgement from placing an order."""

    order_id: str
    symbol: str
    side: str
    executed_qty: float
    price: float
    status: str
