"""Signal evaluator — turns a strategy and candle history into a TradeSignal.

Pure: no I/O, no clock.  Only the last two candles decide whether a rule
fired, so the same history always yields the same signal.
"""

import math
from typing import Optional, Protocol

from pinebot.broker.models import Candle
from pinebot.errors import InsufficientHistory, StrategySyntaxError
from pinebot.strategy.indicators import calculate_rsi, moving_average
from pinebot.strategy.models import EntryType, ParsedStrategy, SignalType, TradeSignal


class CustomRuleEvaluator(Protocol):
    """Decides a CUSTOM rule.  Returns BUY, SELL or NONE plus a reason."""

    def __call__(
        self, rule: str, candles: list[Candle],
    ) -> tuple[SignalType, str]: ...


def _crossed_above(prev_a: float, prev_b: float, last_a: float, last_b: float) -> bool:
    return prev_a <= prev_b and last_a > last_b


def _crossed_below(prev_a: float, prev_b: float, last_a: float, last_b: float) -> bool:
    return prev_a >= prev_b and last_a < last_b


def _defined(*values: float) -> bool:
    return not any(math.isnan(v) for v in values)


def build_signal(
    signal_type: SignalType,
    price: float,
    strategy: ParsedStrategy,
    reason: str,
    candle_time: int = 0,
) -> TradeSignal:
    """Attach stop-loss and take-profit levels to a direction.

    BUY places the stop below and the target above *price*; SELL mirrors.
    """
    sl = strategy.stop_loss_percent / 100
    tp = strategy.take_profit_percent / 100
    if signal_type is SignalType.BUY:
        return TradeSignal(
            SignalType.BUY, price, price * (1 - sl), price * (1 + tp),
            reason, candle_time,
        )
    if signal_type is SignalType.SELL:
        return TradeSignal(
            SignalType.SELL, price, price * (1 + sl), price * (1 - tp),
            reason, candle_time,
        )
    return TradeSignal(SignalType.NONE, price, 0.0, 0.0, reason, candle_time)


# ── Rule implementations ─────────────────────────────────────────────────


def _moving_average_cross(strategy: ParsedStrategy, closes: list[float]):
    fast = moving_average(closes, strategy.fast_period, strategy.ma_type)
    slow = moving_average(closes, strategy.slow_period, strategy.ma_type)
    prev_fast, last_fast = fast[-2], fast[-1]
    prev_slow, last_slow = slow[-2], slow[-1]
    if not _defined(prev_fast, last_fast, prev_slow, last_slow):
        raise InsufficientHistory(strategy.slow_period + 1, len(closes), "crossover")

    ma = strategy.ma_type.value
    if strategy.entry_type is EntryType.MA_CROSSOVER and _crossed_above(
        prev_fast, prev_slow, last_fast, last_slow
    ):
        return SignalType.BUY, (
            f"MA crossover: fast {ma}({strategy.fast_period}) crossed above "
            f"slow {ma}({strategy.slow_period})"
        )
    if strategy.entry_type is EntryType.MA_CROSSUNDER and _crossed_below(
        prev_fast, prev_slow, last_fast, last_slow
    ):
        return SignalType.SELL, (
            f"MA crossunder: fast {ma}({strategy.fast_period}) crossed below "
            f"slow {ma}({strategy.slow_period})"
        )
    return SignalType.NONE, "No crossing on the latest candle"


def _price_threshold(strategy: ParsedStrategy, closes: list[float]):
    if len(closes) < 2:
        raise InsufficientHistory(2, len(closes), "price threshold")
    threshold = strategy.price_threshold
    prev_close, last_close = closes[-2], closes[-1]
    if strategy.entry_type is EntryType.PRICE_ABOVE and prev_close <= threshold < last_close:
        return SignalType.BUY, f"Price crossed above {threshold}"
    if strategy.entry_type is EntryType.PRICE_BELOW and prev_close >= threshold > last_close:
        return SignalType.SELL, f"Price crossed below {threshold}"
    return SignalType.NONE, f"Price did not cross {threshold}"


def _rsi(strategy: ParsedStrategy, closes: list[float]):
    period = strategy.rsi_period or 14
    oversold = strategy.rsi_oversold if strategy.rsi_oversold is not None else 30.0
    overbought = strategy.rsi_overbought if strategy.rsi_overbought is not None else 70.0
    # two defined RSI values are needed to see a crossing
    if len(closes) < period + 2:
        raise InsufficientHistory(period + 2, len(closes), f"RSI({period})")

    rsi = calculate_rsi(closes, period)
    prev_rsi, last_rsi = rsi[-2], rsi[-1]
    if _crossed_above(prev_rsi, oversold, last_rsi, oversold):
        return SignalType.BUY, f"RSI crossed above {oversold:g} (oversold), now {last_rsi:.2f}"
    if _crossed_below(prev_rsi, overbought, last_rsi, overbought):
        return SignalType.SELL, (
            f"RSI crossed below {overbought:g} (overbought), now {last_rsi:.2f}"
        )
    return SignalType.NONE, f"RSI {last_rsi:.2f} inside {oversold:g}/{overbought:g}"


# ── Public API ───────────────────────────────────────────────────────────


def evaluate(
    strategy: ParsedStrategy,
    candles: list[Candle],
    custom_evaluator: Optional[CustomRuleEvaluator] = None,
) -> TradeSignal:
    """Decide BUY, SELL or NONE for the latest candle.

    Args:
        strategy: Parsed strategy descriptor.
        candles: History ordered oldest first.
        custom_evaluator: Handles CUSTOM rules; CUSTOM without one is NONE.

    Raises:
        InsufficientHistory: when *candles* is too short for the rule.
        StrategySyntaxError: when a CUSTOM strategy carries no rule.
    """
    if not candles:
        raise InsufficientHistory(2, 0, strategy.entry_type.value)

    closes = [c.close for c in candles]
    last = candles[-1]

    if strategy.entry_type is EntryType.RSI:
        signal_type, reason = _rsi(strategy, closes)
    elif strategy.entry_type in (EntryType.PRICE_ABOVE, EntryType.PRICE_BELOW):
        signal_type, reason = _price_threshold(strategy, closes)
    elif strategy.entry_type is EntryType.CUSTOM:
        if not strategy.custom_rule:
            raise StrategySyntaxError("customRule", "CUSTOM entry requires a rule")
        if custom_evaluator is None:
            signal_type, reason = SignalType.NONE, "No evaluator for custom rule"
        else:
            signal_type, reason = custom_evaluator(strategy.custom_rule, candles)
    else:
        signal_type, reason = _moving_average_cross(strategy, closes)

    return build_signal(signal_type, last.close, strategy, reason, last.open_time)
