"""Tests for pinebot.strategy.parser — script text to ParsedStrategy."""

import pytest

from pinebot.errors import StrategySyntaxError
from pinebot.strategy.models import EntryType, MAType, ParsedStrategy
from pinebot.strategy.parser import StrategyCache, content_hash, parse


EMA_CROSS_SCRIPT = """
//@version=5
strategy("EMA Cross", overlay=true)
fastLength = input.int(5, "Fast")
slowLength = input.int(20, "Slow")
stopLossPercent = input.float(1.5, "SL %")
takeProfitPercent = input.float(3.0, "TP %")
fast = ta.ema(close, fastLength)
slow = ta.ema(close, slowLength)
if ta.crossover(fast, slow)
    strategy.entry("Long", strategy.long)
"""

RSI_SCRIPT = """
rsiLength = input.int(7, "RSI")
overbought = 80
oversold = 20
r = ta.rsi(close, rsiLength)
if ta.crossover(r, oversold)
    strategy.entry("Long", strategy.long)
"""


class TestParseValues:
    def test_ema_crossover_script(self):
        strategy = parse(EMA_CROSS_SCRIPT)
        assert strategy.entry_type is EntryType.MA_CROSSOVER
        assert strategy.ma_type is MAType.EMA
        assert strategy.fast_period == 5
        assert strategy.slow_period == 20
        assert strategy.stop_loss_percent == 1.5
        assert strategy.take_profit_percent == 3.0

    def test_defaults(self):
        strategy = parse("// nothing configurable here\nplot(close)")
        assert strategy == ParsedStrategy()
        assert strategy.fast_period == 12
        assert strategy.slow_period == 26
        assert strategy.stop_loss_percent == 2.0
        assert strategy.take_profit_percent == 4.0

    def test_bare_literals_and_case_insensitive(self):
        strategy = parse("FASTLENGTH = 3\nslowperiod = 9")
        assert strategy.fast_period == 3
        assert strategy.slow_period == 9

    def test_sma_detected(self):
        strategy = parse("f = ta.sma(close, 10)\ns = ta.sma(close, 30)")
        assert strategy.ma_type is MAType.SMA

    def test_crossunder_detected(self):
        strategy = parse("if ta.crossunder(fast, slow)\n    strategy.close()")
        assert strategy.entry_type is EntryType.MA_CROSSUNDER

    def test_rsi_script(self):
        strategy = parse(RSI_SCRIPT)
        assert strategy.entry_type is EntryType.RSI
        assert strategy.rsi_period == 7
        assert strategy.rsi_overbought == 80.0
        assert strategy.rsi_oversold == 20.0

    def test_rsi_bounds_default(self):
        strategy = parse("rsiPeriod = 14")
        assert strategy.rsi_overbought == 70.0
        assert strategy.rsi_oversold == 30.0

    def test_explicit_entry_and_ma_type(self):
        strategy = parse('entryType = "price_above"\nthreshold = 105.5\nmaType = SMA')
        assert strategy.entry_type is EntryType.PRICE_ABOVE
        assert strategy.price_threshold == 105.5
        assert strategy.ma_type is MAType.SMA

    def test_custom_rule(self):
        strategy = parse('entryType = CUSTOM\ncustomRule = "close > open"')
        assert strategy.entry_type is EntryType.CUSTOM
        assert strategy.custom_rule == "close > open"

    def test_deterministic(self):
        assert parse(EMA_CROSS_SCRIPT) == parse(EMA_CROSS_SCRIPT)

    def test_to_dict_uses_camel_case(self):
        data = parse(RSI_SCRIPT).to_dict()
        assert data["entryType"] == "RSI"
        assert data["rsiPeriod"] == 7
        assert "priceThreshold" not in data


class TestParseErrors:
    @pytest.mark.parametrize("text", ["", "   \n\t"])
    def test_empty_script(self, text):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse(text)
        assert exc_info.value.field == "script"

    def test_slow_not_greater_than_fast(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("fastLength = 20\nslowLength = 20")
        assert exc_info.value.field == "slowPeriod"

    def test_negative_stop_loss(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("stopLoss = -1")
        assert exc_info.value.field == "stopLossPercent"

    def test_negative_take_profit(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("takeProfitPct = -0.5")
        assert exc_info.value.field == "takeProfitPercent"

    def test_non_integer_period(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("fastLength = 2.5")
        assert exc_info.value.field == "fastPeriod"

    def test_zero_period(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("fastLength = 0")
        assert exc_info.value.field == "fastPeriod"

    def test_non_numeric_value(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("slowLength = someVariable")
        assert exc_info.value.field == "slowPeriod"

    @pytest.mark.parametrize(
        "text,field",
        [
            ("fastLength = nan", "fastPeriod"),
            ("slowLength = inf", "slowPeriod"),
            ("fastLength = -Infinity", "fastPeriod"),
            ("stopLoss = nan", "stopLossPercent"),
            ("takeProfit = inf", "takeProfitPercent"),
            ("entryType = PRICE_ABOVE\nthreshold = nan", "priceThreshold"),
        ],
    )
    def test_non_finite_value(self, text, field):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse(text)
        assert exc_info.value.field == field

    def test_unknown_entry_type(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("entryType = MOON_PHASE")
        assert exc_info.value.field == "entryType"

    def test_unknown_ma_type(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("maType = WMA")
        assert exc_info.value.field == "maType"

    def test_rsi_bounds_inverted(self):
        with pytest.raises(StrategySyntaxError):
            parse("rsiLength = 14\noverbought = 30\noversold = 70")

    def test_rsi_bound_above_100(self):
        with pytest.raises(StrategySyntaxError):
            parse("rsiLength = 14\noverbought = 120")

    def test_price_entry_requires_threshold(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("entryType = PRICE_BELOW")
        assert exc_info.value.field == "priceThreshold"

    def test_custom_requires_rule(self):
        with pytest.raises(StrategySyntaxError) as exc_info:
            parse("entryType = CUSTOM")
        assert exc_info.value.field == "customRule"

    def test_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse("")


class TestStrategyCache:
    def test_hit_after_first_parse(self):
        cache = StrategyCache(max_size=4)
        first = cache.get("s1", EMA_CROSS_SCRIPT)
        second = cache.get("s1", EMA_CROSS_SCRIPT)
        assert first is second
        assert cache.hits == 1
        assert cache.misses == 1

    def test_edit_changes_key(self):
        cache = StrategyCache(max_size=4)
        cache.get("s1", "fastLength = 5\nslowLength = 20")
        edited = cache.get("s1", "fastLength = 6\nslowLength = 20")
        assert edited.fast_period == 6
        assert cache.misses == 2

    def test_evicts_least_recently_used(self):
        cache = StrategyCache(max_size=2)
        cache.get("a", "fastLength = 1\nslowLength = 2")
        cache.get("b", "fastLength = 2\nslowLength = 3")
        cache.get("a", "fastLength = 1\nslowLength = 2")
        cache.get("c", "fastLength = 3\nslowLength = 4")
        assert len(cache) == 2
        cache.get("a", "fastLength = 1\nslowLength = 2")
        assert cache.hits == 2  # "a" survived, "b" was evicted

    def test_errors_not_cached(self):
        cache = StrategyCache()
        for _ in range(2):
            with pytest.raises(StrategySyntaxError):
                cache.get("bad", "")
        assert len(cache) == 0

    def test_content_hash_is_sha256(self):
        assert len(content_hash("x")) == 64
        assert content_hash("x") != content_hash("y")
