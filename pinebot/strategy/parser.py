"""Strategy parser — script text to ``ParsedStrategy``.

Scripts are a small Pine-like dialect.  Only the assignments the engine
understands are read; everything else in the text is ignored.  Values may be
bare literals or wrapped in ``input(...)``, ``input.int(...)`` or
``input.float(...)``.

Example::

    fastLength = input.int(5, "Fast")
    slowLength = input.int(20, "Slow")
    fast = ta.ema(close, fastLength)
    slow = ta.ema(close, slowLength)
    if ta.crossover(fast, slow)
        strategy.entry("Long", strategy.long)
"""

import hashlib
import math
import re
from collections import OrderedDict
from typing import Optional

from pinebot.errors import StrategySyntaxError
from pinebot.strategy.models import (
    MA_ENTRY_TYPES,
    PRICE_ENTRY_TYPES,
    EntryType,
    MAType,
    ParsedStrategy,
)

# ── Assignment patterns ──────────────────────────────────────────────────

_VALUE = r"(?:input(?:\.int|\.float)?\s*\(\s*(?:defval\s*=\s*)?)?(-?[\w.]+)"


def _assignment(name_pattern: str) -> re.Pattern:
    return re.compile(
        rf"(?<![\w.])(?:{name_pattern})\s*=\s*{_VALUE}",
        re.IGNORECASE,
    )


_FAST = _assignment(r"fast(?:Length|MA|Period|_length|_period)")
_SLOW = _assignment(r"slow(?:Length|MA|Period|_length|_period)")
_STOP_LOSS = _assignment(r"stop(?:Loss|_loss)(?:Percent|Pct|_pct|_percent)?")
_TAKE_PROFIT = _assignment(r"take(?:Profit|_profit)(?:Percent|Pct|_pct|_percent)?")
_RSI_PERIOD = _assignment(r"rsi(?:Length|Period|_length|_period)")
_OVERBOUGHT = _assignment(r"(?:rsi_?)?overbought")
_OVERSOLD = _assignment(r"(?:rsi_?)?oversold")
_THRESHOLD = _assignment(r"price_?threshold|threshold")

_ENTRY_TYPE = re.compile(
    r"(?<![\w.])entry_?type\s*=\s*[\"']?([\w]+)[\"']?", re.IGNORECASE
)
_MA_TYPE = re.compile(r"(?<![\w.])ma_?type\s*=\s*[\"']?([\w]+)[\"']?", re.IGNORECASE)
_CUSTOM_RULE = re.compile(
    r"(?<![\w.])custom_?rule\s*=\s*[\"']([^\"']*)[\"']", re.IGNORECASE
)

_SMA_HINT = re.compile(r"ta\.sma|(?<![\w.])sma\s*\(", re.IGNORECASE)


def _first(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


def _as_float(field: str, raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise StrategySyntaxError(field, f"expected a number, got {raw!r}") from None
    if not math.isfinite(value):
        raise StrategySyntaxError(field, f"expected a finite number, got {raw!r}")
    return value


def _as_period(field: str, raw: Optional[str]) -> Optional[int]:
    value = _as_float(field, raw)
    if value is None:
        return None
    if value != int(value):
        raise StrategySyntaxError(field, f"period must be a whole number, got {raw}")
    if value < 1:
        raise StrategySyntaxError(field, f"period must be positive, got {raw}")
    return int(value)


def _as_percent(field: str, raw: Optional[str]) -> Optional[float]:
    value = _as_float(field, raw)
    if value is not None and value < 0:
        raise StrategySyntaxError(field, f"percentage must not be negative, got {raw}")
    return value


def _entry_type(text: str, has_rsi_period: bool) -> EntryType:
    explicit = _first(_ENTRY_TYPE, text)
    if explicit is not None:
        try:
            return EntryType(explicit.upper())
        except ValueError:
            raise StrategySyntaxError(
                "entryType", f"unknown entry type {explicit!r}"
            ) from None

    # An RSI period wins over crossover keywords; RSI scripts cross too.
    if has_rsi_period:
        return EntryType.RSI
    lowered = text.lower()
    if "crossunder" in lowered:
        return EntryType.MA_CROSSUNDER
    return EntryType.MA_CROSSOVER


def _ma_type(text: str) -> MAType:
    explicit = _first(_MA_TYPE, text)
    if explicit is not None:
        try:
            return MAType(explicit.upper())
        except ValueError:
            raise StrategySyntaxError("maType", f"unknown MA type {explicit!r}") from None
    return MAType.SMA if _SMA_HINT.search(text) else MAType.EMA


# ── Public API ───────────────────────────────────────────────────────────


def parse(script_text: str) -> ParsedStrategy:
    """Compile *script_text* into a ``ParsedStrategy``.

    Raises:
        StrategySyntaxError: when the script is empty or any recognised
            assignment holds an invalid value.
    """
    if not script_text or not script_text.strip():
        raise StrategySyntaxError("script", "script is empty")

    fast = _as_period("fastPeriod", _first(_FAST, script_text))
    slow = _as_period("slowPeriod", _first(_SLOW, script_text))
    stop_loss = _as_percent("stopLossPercent", _first(_STOP_LOSS, script_text))
    take_profit = _as_percent("takeProfitPercent", _first(_TAKE_PROFIT, script_text))
    rsi_period = _as_period("rsiPeriod", _first(_RSI_PERIOD, script_text))
    overbought = _as_float("rsiOverbought", _first(_OVERBOUGHT, script_text))
    oversold = _as_float("rsiOversold", _first(_OVERSOLD, script_text))
    threshold = _as_float("priceThreshold", _first(_THRESHOLD, script_text))
    custom_rule = _first(_CUSTOM_RULE, script_text)

    entry_type = _entry_type(script_text, rsi_period is not None)
    ma_type = _ma_type(script_text)

    fast = fast if fast is not None else 12
    slow = slow if slow is not None else 26
    if entry_type in MA_ENTRY_TYPES and slow <= fast:
        raise StrategySyntaxError(
            "slowPeriod",
            f"slow period ({slow}) must be greater than fast period ({fast})",
        )

    if entry_type is EntryType.RSI:
        rsi_period = rsi_period if rsi_period is not None else 14
        overbought = overbought if overbought is not None else 70.0
        oversold = oversold if oversold is not None else 30.0
    if overbought is not None or oversold is not None:
        ob = overbought if overbought is not None else 70.0
        os_ = oversold if oversold is not None else 30.0
        if not 0 <= os_ < ob <= 100:
            raise StrategySyntaxError(
                "rsiOversold",
                f"RSI bounds must satisfy 0 <= oversold < overbought <= 100, "
                f"got {os_}/{ob}",
            )

    if entry_type in PRICE_ENTRY_TYPES and threshold is None:
        raise StrategySyntaxError(
            "priceThreshold", f"{entry_type.value} requires a price threshold"
        )
    if entry_type is EntryType.CUSTOM and not (custom_rule and custom_rule.strip()):
        raise StrategySyntaxError("customRule", "CUSTOM entry requires a rule")

    return ParsedStrategy(
        entry_type=entry_type,
        ma_type=ma_type,
        fast_period=fast,
        slow_period=slow,
        stop_loss_percent=stop_loss if stop_loss is not None else 2.0,
        take_profit_percent=take_profit if take_profit is not None else 4.0,
        rsi_period=rsi_period,
        rsi_overbought=overbought,
        rsi_oversold=oversold,
        price_threshold=threshold,
        custom_rule=custom_rule,
    )


def content_hash(script_text: str) -> str:
    return hashlib.sha256(script_text.encode("utf-8")).hexdigest()


class StrategyCache:
    """Bounded LRU of parsed strategies keyed by ``(script_id, content hash)``.

    Editing a script changes its hash, so stale entries simply age out.
    Parse failures are not cached.

    Args:
        max_size: Entries kept before the least recently used is evicted.
    """

    def __init__(self, max_size: int = 256) -> None:
        self._max_size = max(1, max_size)
        self._entries: OrderedDict[tuple[str, str], ParsedStrategy] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, script_id: str, script_text: str) -> ParsedStrategy:
        key = (script_id, content_hash(script_text))
        cached = self._entries.get(key)
        if cached is not None:
            self._entries.move_to_end(key)
            self.hits += 1
            return cached

        self.misses += 1
        strategy = parse(script_text)
        self._entries[key] = strategy
        if len(self._entries) > self._max_size:
            self._entries.popitem(last=False)
        return strategy

    def clear(self) -> None:
        self._entries.clear()
