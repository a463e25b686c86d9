"""Strategy data models — typed representations for parser and evaluator outputs."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EntryType(str, Enum):
    MA_CROSSOVER = "MA_CROSSOVER"
    MA_CROSSUNDER = "MA_CROSSUNDER"
    PRICE_ABOVE = "PRICE_ABOVE"
    PRICE_BELOW = "PRICE_BELOW"
    RSI = "RSI"
    CUSTOM = "CUSTOM"


class MAType(str, Enum):
    SMA = "SMA"
    EMA = "EMA"


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    NONE = "NONE"


MA_ENTRY_TYPES = frozenset({EntryType.MA_CROSSOVER, EntryType.MA_CROSSUNDER})
PRICE_ENTRY_TYPES = frozenset({EntryType.PRICE_ABOVE, EntryType.PRICE_BELOW})


@dataclass(frozen=True)
class ParsedStrategy:
    """Structured descriptor compiled from script text.

    Immutable; cheap to rebuild from source, so it is cached rather than
    shared or mutated.
    """

    entry_type: EntryType = EntryType.MA_CROSSOVER
    ma_type: MAType = MAType.EMA
    fast_period: int = 12
    slow_period: int = 26
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 4.0
    rsi_period: Optional[int] = None
    rsi_overbought: Optional[float] = None
    rsi_oversold: Optional[float] = None
    price_threshold: Optional[float] = None
    custom_rule: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialise with the API's camelCase keys."""
        data = {
            "entryType": self.entry_type.value,
            "maType": self.ma_type.value,
            "fastPeriod": self.fast_period,
            "slowPeriod": self.slow_period,
            "stopLossPercent": self.stop_loss_percent,
            "takeProfitPercent": self.take_profit_percent,
        }
        optional = {
            "rsiPeriod": self.rsi_period,
            "rsiOverbought": self.rsi_overbought,
            "rsiOversold": self.rsi_oversold,
            "priceThreshold": self.price_threshold,
            "customRule": self.custom_rule,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass(frozen=True)
class TradeSignal:
    """Evaluator decision for the latest candle.

    For ``NONE`` the price fields are not meaningful and must not be acted on.
    """

    type: SignalType
    price: float
    stop_loss: float
    take_profit: float
    reason: str
    candle_time: int = 0

    @property
    def actionable(self) -> bool:
        return self.type is not SignalType.NONE

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "price": self.price,
            "stopLoss": self.stop_loss,
            "takeProfit": self.take_profit,
            "reason": self.reason,
            "candleTime": self.candle_time,
        }
