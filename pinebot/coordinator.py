"""Execution coordinator — turns one tuple's signal into at most one trade.

For a single (user, script, timeframe) tuple the coordinator checks the
gates, evaluates the strategy, rejects duplicates, reserves the trade and
debits a coin in one transaction, then places the order.  Runs for the same
tuple are serialised in-process by an ``asyncio.Lock``; across processes the
unique index on the trades table does the same job.
"""

import asyncio
import logging
import math
from typing import Callable, Optional

from pinebot.broker.exchange_client import BinanceClient, format_quantity
from pinebot.broker.market_data import MarketDataGateway
from pinebot.broker.models import Candle, ExchangeCredentials, OrderRequest
from pinebot.config import Config
from pinebot.errors import (
    DuplicateTrade,
    ExchangeError,
    InsufficientBudget,
    InsufficientHistory,
    MarketDataUnavailable,
    RateLimited,
    StrategySyntaxError,
    is_permission_error,
)
from pinebot.models.execution import (
    Activation,
    FeatureFlags,
    Outcome,
    ScriptEvaluationResult,
    TupleResult,
)
from pinebot.strategy.evaluator import CustomRuleEvaluator, evaluate
from pinebot.strategy.indicators import calculate_ema, calculate_rsi, calculate_sma
from pinebot.strategy.models import ParsedStrategy, SignalType, TradeSignal
from pinebot.strategy.parser import StrategyCache, parse

logger = logging.getLogger("pinebot.coordinator")

API_KEY_WARNING = (
    "Your exchange API key was rejected on the last {n} trades. "
    "Reconnect your API key to resume trading."
)


def api_key_warning(trades: list[dict], threshold: int = 3) -> Optional[str]:
    """Return a reconnect warning when the newest *threshold* trades all
    failed with a permission-classified provider message.

    *trades* must be ordered newest first.  Any non-failed trade among them
    clears the warning.
    """
    recent = trades[:threshold]
    if len(recent) < threshold:
        return None
    for trade in recent:
        if trade.get("status") != "FAILED":
            return None
        if not is_permission_error(trade.get("error_message")):
            return None
    return API_KEY_WARNING.format(n=threshold)


class ExecutionCoordinator:
    """Runs the gate → evaluate → reserve → order sequence for one tuple.

    Args:
        config: Application configuration.
        script_repo: ``ScriptRepo`` (or duck-type for tests).
        trade_repo: ``TradeRepo``.
        signal_repo: ``SignalRepo``.
        settings_repo: ``SettingsRepo`` for flags and exchange keys.
        coin_repo: ``CoinRepo`` for subscription state.
        gateway: Market data source; defaults to ``MarketDataGateway``.
        cache: Parsed strategy cache; defaults to a fresh ``StrategyCache``.
        exchange_factory: Builds an order client from credentials.
        custom_evaluator: Handler for CUSTOM strategies.
    """

    def __init__(
        self,
        config: Config,
        script_repo,
        trade_repo,
        signal_repo,
        settings_repo,
        coin_repo,
        gateway=None,
        cache: Optional[StrategyCache] = None,
        exchange_factory: Optional[Callable[[ExchangeCredentials], object]] = None,
        custom_evaluator: Optional[CustomRuleEvaluator] = None,
    ) -> None:
        self._config = config
        self._scripts = script_repo
        self._trades = trade_repo
        self._signals = signal_repo
        self._settings = settings_repo
        self._coins = coin_repo
        self._gateway = gateway or MarketDataGateway(config)
        self._cache = cache or StrategyCache(config.strategy_cache_size)
        self._exchange_factory = exchange_factory or (
            lambda creds: BinanceClient(creds, config)
        )
        self._custom_evaluator = custom_evaluator
        self._locks: dict[tuple[str, str, str], asyncio.Lock] = {}

    @property
    def cache(self) -> StrategyCache:
        return self._cache

    def _lock_for(self, key: tuple[str, str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ── Tuple execution ──────────────────────────────────────────────────

    async def run_tuple(
        self,
        activation: Activation,
        flags: Optional[FeatureFlags] = None,
        signal: Optional[TradeSignal] = None,
    ) -> TupleResult:
        """Run one tuple to a terminal outcome.

        Args:
            activation: The tuple to run.
            flags: Feature flag snapshot; read from the store when omitted.
            signal: A signal supplied by a webhook.  When given, the
                strategy is not evaluated.
        """
        async with self._lock_for(activation.key):
            result = await self._run_locked(activation, flags, signal)
        level = logging.ERROR if result.outcome in (
            Outcome.FAILED, Outcome.EXECUTION_FAILED,
        ) else logging.INFO
        logger.log(
            level, "%s/%s/%s → %s %s",
            activation.user_id, activation.script_id, activation.timeframe,
            result.outcome.value, result.reason,
        )
        return result

    async def _run_locked(
        self,
        activation: Activation,
        flags: Optional[FeatureFlags],
        signal: Optional[TradeSignal],
    ) -> TupleResult:
        def _result(outcome: Outcome, reason: str = "", **kwargs) -> TupleResult:
            return TupleResult(
                user_id=activation.user_id,
                script_id=activation.script_id,
                timeframe=activation.timeframe,
                outcome=outcome,
                reason=reason,
                **kwargs,
            )

        # 1. Gates. Nothing is written on any of these paths.
        if flags is None:
            flags = self._settings.get_feature_flags()
        if not flags.trading_enabled:
            return _result(Outcome.SKIPPED_GATED, "Trading is disabled")
        if flags.paid_mode:
            profile = self._coins.get_profile(activation.user_id)
            if not profile or not profile["subscription_active"]:
                return _result(Outcome.SKIPPED_GATED, "Subscription inactive")

        gate = self._scripts.get_gate(activation.user_id, activation.script_id)
        if gate is None or not gate.enabled:
            return _result(Outcome.SKIPPED_GATED, "Bot is disabled")

        # 2. Evaluate unless a signal was pushed in.
        if signal is None:
            try:
                strategy = self._cache.get(activation.script_id, activation.script_content)
            except StrategySyntaxError as exc:
                return _result(Outcome.FAILED, f"Invalid script: {exc}")
            limit = activation.settings.candle_limit_or(self._config.candle_limit)
            try:
                candles = await self._gateway.fetch_candles(
                    activation.symbol, activation.timeframe, limit,
                )
            except RateLimited as exc:
                return _result(Outcome.DEFERRED, str(exc))
            except MarketDataUnavailable as exc:
                return _result(Outcome.FAILED, str(exc))
            try:
                signal = evaluate(strategy, candles, self._custom_evaluator)
            except InsufficientHistory as exc:
                return _result(Outcome.SKIPPED_NO_SIGNAL, str(exc))
            except StrategySyntaxError as exc:
                return _result(Outcome.FAILED, f"Invalid script: {exc}")

        # 3. Nothing to do.
        if signal.type is SignalType.NONE:
            return _result(Outcome.SKIPPED_NO_SIGNAL, signal.reason)
        signal_dict = signal.to_dict()

        # 4. Stale signals from before the bot was (re)enabled.
        started_ms = gate.started_at_ms
        if started_ms is not None and signal.candle_time < started_ms:
            return _result(
                Outcome.SKIPPED_GATED,
                "Signal candle precedes bot start",
                signal=signal_dict,
            )

        # 5. Idempotency.
        if self._trades.exists_for_candle(
            activation.user_id, activation.script_id,
            activation.timeframe, signal.candle_time,
        ):
            return _result(Outcome.SKIPPED_DUPLICATE, "Trade exists for candle",
                           signal=signal_dict)
        if self._signals.is_processed(
            activation.script_id, activation.timeframe, signal.candle_time,
        ):
            return _result(Outcome.SKIPPED_DUPLICATE, "Signal already processed",
                           signal=signal_dict)

        # 6. Credentials, checked before anything is written.
        credentials = self._settings.get_exchange_credentials(activation.user_id)
        if credentials is None:
            return _result(Outcome.FAILED, "No exchange API key configured",
                           signal=signal_dict)

        # 7. Reserve the trade and debit one coin atomically.
        quote = activation.settings.quote_amount_or(self._config.order_quote_amount)
        quantity = format_quantity(quote, signal.price)
        try:
            trade_id = self._trades.reserve_trade(
                user_id=activation.user_id,
                script_id=activation.script_id,
                symbol=activation.symbol,
                timeframe=activation.timeframe,
                signal_type=signal.type.value,
                candle_open_time=signal.candle_time,
                entry_price=signal.price,
                stop_loss=signal.stop_loss,
                take_profit=signal.take_profit,
                reason=signal.reason,
                quantity=quantity,
            )
        except DuplicateTrade as exc:
            return _result(Outcome.SKIPPED_DUPLICATE, str(exc), signal=signal_dict)
        except InsufficientBudget as exc:
            return _result(Outcome.SKIPPED_NO_BUDGET, str(exc), signal=signal_dict)

        # 8. Place the order.  The coin stays spent whatever happens here.
        order = OrderRequest(
            symbol=activation.symbol,
            side=signal.type.value,
            quantity=quantity,
            stop_loss_price=signal.stop_loss,
            take_profit_price=signal.take_profit,
        )
        client = self._exchange_factory(credentials)
        timeout = self._config.order_timeout_seconds
        try:
            response = await asyncio.wait_for(client.place_market_order(order), timeout)
        except asyncio.TimeoutError:
            message = f"Order timed out after {timeout:g}s"
            self._trades.mark_failed(trade_id, message)
            return _result(Outcome.EXECUTION_FAILED, message,
                           trade_id=trade_id, signal=signal_dict)
        except RateLimited as exc:
            self._trades.mark_cancelled(trade_id, str(exc))
            logger.warning("Rate limited placing order for trade %d: %s", trade_id, exc)
            return _result(Outcome.DEFERRED, str(exc),
                           trade_id=trade_id, signal=signal_dict)
        except ExchangeError as exc:
            self._trades.mark_failed(trade_id, str(exc))
            return _result(Outcome.EXECUTION_FAILED, str(exc),
                           trade_id=trade_id, signal=signal_dict)
        except Exception as exc:
            # The coin is already spent; never leave the trade PENDING.
            logger.exception("Unexpected error placing order for trade %d", trade_id)
            message = str(exc) or type(exc).__name__
            self._trades.mark_failed(trade_id, message)
            return _result(Outcome.EXECUTION_FAILED, message,
                           trade_id=trade_id, signal=signal_dict)

        self._trades.mark_open(trade_id, response.order_id, response.price, quantity)
        placed = await client.place_protective_orders(order)
        return _result(
            Outcome.EXECUTED,
            f"Order {response.order_id} filled; protective legs: "
            f"{', '.join(placed) or 'none'}",
            trade_id=trade_id,
            signal=signal_dict,
        )

    # ── Dry run ──────────────────────────────────────────────────────────

    async def _current_price(self, symbol: str, candles: list[Candle]) -> float:
        try:
            ticker = await self._gateway.fetch_ticker(symbol)
            return ticker.last
        except (MarketDataUnavailable, RateLimited) as exc:
            logger.warning("Ticker unavailable for %s, using last close: %s",
                           symbol, exc)
            return candles[-1].close if candles else 0.0

    def _evaluate_quietly(self, strategy: ParsedStrategy, candles: list[Candle]) -> TradeSignal:
        last = candles[-1] if candles else None
        try:
            return evaluate(strategy, candles, self._custom_evaluator)
        except InsufficientHistory as exc:
            return TradeSignal(
                SignalType.NONE, last.close if last else 0.0, 0.0, 0.0,
                str(exc), last.open_time if last else 0,
            )

    async def evaluate_script(
        self,
        script_id: str,
        timeframe: str,
        user_id: Optional[str] = None,
    ) -> ScriptEvaluationResult:
        """Evaluate a saved script on live candles without writing anything.

        When *user_id* has an activation for this script and timeframe, its
        candle limit is used so the dry run sees what a live run would.

        Raises:
            KeyError: unknown script.
            StrategySyntaxError: the script does not parse.
            MarketDataUnavailable / RateLimited: candles could not be fetched.
        """
        script = self._scripts.get_script(script_id)
        if script is None:
            raise KeyError(script_id)

        limit = self._config.candle_limit
        if user_id is not None:
            activation = self._scripts.get_activation(user_id, script_id, timeframe)
            if activation is not None:
                limit = activation.settings.candle_limit_or(limit)

        strategy = self._cache.get(script_id, script["script_content"])
        candles = await self._gateway.fetch_candles(script["symbol"], timeframe, limit)
        signal = self._evaluate_quietly(strategy, candles)
        current_price = await self._current_price(script["symbol"], candles)
        last = candles[-1] if candles else None

        return ScriptEvaluationResult(
            script_id=script_id,
            script_name=script["name"],
            symbol=script["symbol"],
            timeframe=timeframe,
            strategy=strategy.to_dict(),
            signal=signal.to_dict(),
            current_price=current_price,
            last_candle=last.to_dict() if last else None,
        )

    async def evaluate_content(self, script_content: str, symbol: str, timeframe: str) -> dict:
        """Evaluate unsaved script text against live candles.  Writes nothing.

        Raises:
            StrategySyntaxError: the script does not parse.
            MarketDataUnavailable / RateLimited: candles could not be fetched.
        """
        strategy = parse(script_content)
        symbol = symbol.upper()
        candles = await self._gateway.fetch_candles(
            symbol, timeframe, self._config.candle_limit,
        )
        signal = self._evaluate_quietly(strategy, candles)
        closes = [c.close for c in candles]
        return {
            "symbol": symbol,
            "timeframe": timeframe,
            "strategy": strategy.to_dict(),
            "signal": signal.to_dict(),
            "currentPrice": await self._current_price(symbol, candles),
            "lastCandle": candles[-1].to_dict() if candles else None,
            "indicators": {
                "ema9": _tail(closes, 9, calculate_ema, 3),
                "ema21": _tail(closes, 21, calculate_ema, 3),
                "rsi": _tail(closes, 14, calculate_rsi, 3),
            },
        }

    async def indicator_snapshot(self, symbol: str, timeframe: str, tail: int = 5) -> dict:
        """Latest values of the engine's indicators for *symbol*.

        Series without enough history come back empty; undefined values
        are ``None``.
        """
        symbol = symbol.upper()
        candles = await self._gateway.fetch_candles(
            symbol, timeframe, self._config.candle_limit,
        )
        closes = [c.close for c in candles]
        return {
            "symbol": symbol,
            "timeframe": timeframe,
            "currentPrice": await self._current_price(symbol, candles),
            "lastCandle": candles[-1].to_dict() if candles else None,
            "indicators": {
                "ema": {str(p): _tail(closes, p, calculate_ema, tail) for p in (9, 21, 50)},
                "sma": {str(p): _tail(closes, p, calculate_sma, tail) for p in (20, 50)},
                "rsi": _tail(closes, 14, calculate_rsi, tail),
            },
        }


def _tail(closes: list[float], period: int, fn, count: int) -> list[Optional[float]]:
    """Last *count* values of ``fn(closes, period)``, NaN as ``None``."""
    try:
        series = fn(closes, period)
    except InsufficientHistory:
        return []
    return [None if math.isnan(v) else round(v, 8) for v in series[-count:]]
