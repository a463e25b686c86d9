"""Execution data models — activations, gates, flags and per-tuple outcomes."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pinebot.models.module_settings import ExecutionSettings


class Outcome(str, Enum):
    SKIPPED_GATED = "SKIPPED_GATED"
    SKIPPED_NO_SIGNAL = "SKIPPED_NO_SIGNAL"
    SKIPPED_NO_BUDGET = "SKIPPED_NO_BUDGET"
    SKIPPED_DUPLICATE = "SKIPPED_DUPLICATE"
    EXECUTED = "EXECUTED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    FAILED = "FAILED"
    DEFERRED = "DEFERRED"

    @property
    def is_skip(self) -> bool:
        return self.value.startswith("SKIPPED_")


@dataclass(frozen=True)
class Activation:
    """One (user, script, timeframe) tuple the sweep visits."""

    user_id: str
    script_id: str
    timeframe: str
    symbol: str
    script_content: str
    settings: ExecutionSettings = field(default_factory=ExecutionSettings)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.user_id, self.script_id, self.timeframe)


@dataclass(frozen=True)
class BotGate:
    """Enable switch plus cutover timestamp for one (user, script)."""

    user_id: str
    script_id: str
    enabled: bool
    bot_started_at: Optional[str] = None

    @property
    def started_at_ms(self) -> Optional[int]:
        if not self.bot_started_at:
            return None
        return int(datetime.fromisoformat(self.bot_started_at).timestamp() * 1000)


@dataclass(frozen=True)
class FeatureFlags:
    """Snapshot of global switches, read once per coordinator run."""

    trading_enabled: bool = True
    paid_mode: bool = False


@dataclass(frozen=True)
class TupleResult:
    """What happened to one tuple in one run."""

    user_id: str
    script_id: str
    timeframe: str
    outcome: Outcome
    reason: str = ""
    trade_id: Optional[int] = None
    signal: Optional[dict] = None

    def to_dict(self) -> dict:
        data = {
            "status": self.outcome.value,
            "userId": self.user_id,
            "scriptId": self.script_id,
            "timeframe": self.timeframe,
            "reason": self.reason,
        }
        if self.trade_id is not None:
            data["tradeId"] = self.trade_id
        if self.signal is not None:
            data["signal"] = self.signal
        return data


@dataclass
class SweepReport:
    """Aggregated results of one sweep."""

    started_at: str
    finished_at: Optional[str] = None
    results: list[TupleResult] = field(default_factory=list)

    def _count(self, *outcomes: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome in outcomes)

    @property
    def executed(self) -> int:
        return self._count(Outcome.EXECUTED)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAILED, Outcome.EXECUTION_FAILED)

    @property
    def deferred(self) -> int:
        return self._count(Outcome.DEFERRED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.outcome.is_skip)

    def counts(self) -> dict:
        return {
            "total": len(self.results),
            "executed": self.executed,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
        }

    def to_dict(self) -> dict:
        return {
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "counts": self.counts(),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class ScriptEvaluationResult:
    """Dry-run evaluation of one script on one timeframe."""

    script_id: str
    script_name: str
    symbol: str
    timeframe: str
    strategy: dict
    signal: dict
    current_price: float
    last_candle: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "script": {"id": self.script_id, "name": self.script_name},
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "strategy": self.strategy,
            "signal": self.signal,
            "currentPrice": self.current_price,
            "lastCandle": self.last_candle,
        }
