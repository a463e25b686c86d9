"""Sweep scheduler — visits every active tuple on a fixed cadence.

One tuple failing never stops the sweep: exceptions are turned into a
FAILED result for that tuple and the rest carry on.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from pinebot.config import Config
from pinebot.models.execution import Outcome, SweepReport, TupleResult
from pinebot.strategy.models import SignalType, TradeSignal

logger = logging.getLogger("pinebot.scheduler")


class SweepScheduler:
    """Drives the coordinator over all active activations.

    Args:
        config: Application configuration.
        coordinator: ``ExecutionCoordinator`` (or duck-type for tests).
        script_repo: ``ScriptRepo`` for enumerating activations.
        signal_repo: ``SignalRepo`` for webhook dispatch.
    """

    def __init__(self, config: Config, coordinator, script_repo, signal_repo) -> None:
        self._config = config
        self._coordinator = coordinator
        self._scripts = script_repo
        self._signals = signal_repo
        self._running = False
        self._sweep_count = 0
        self._last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def sweep_count(self) -> int:
        return self._sweep_count

    @property
    def last_report(self) -> Optional[SweepReport]:
        return self._last_report

    def stop(self) -> None:
        """Signal the loop to stop after the current sweep."""
        self._running = False

    # ── Single sweep ─────────────────────────────────────────────────────

    async def run_sweep(self) -> SweepReport:
        """Run every active tuple once, bounded by ``max_concurrent_tuples``."""
        report = SweepReport(started_at=datetime.now(timezone.utc).isoformat())
        activations = self._scripts.list_active_activations()
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrent_tuples))

        async def _bounded(activation):
            async with semaphore:
                return await self._coordinator.run_tuple(activation)

        outcomes = await asyncio.gather(
            *(_bounded(a) for a in activations),
            return_exceptions=True,
        )
        for activation, outcome in zip(activations, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Tuple %s/%s/%s crashed: %s",
                    activation.user_id, activation.script_id,
                    activation.timeframe, outcome,
                )
                outcome = TupleResult(
                    user_id=activation.user_id,
                    script_id=activation.script_id,
                    timeframe=activation.timeframe,
                    outcome=Outcome.FAILED,
                    reason=f"ERROR: {outcome}",
                )
            report.results.append(outcome)

        report.finished_at = datetime.now(timezone.utc).isoformat()
        self._sweep_count += 1
        self._last_report = report
        logger.info("Sweep %d: %s", self._sweep_count, report.counts())
        return report

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(
        self,
        poll_interval: int | None = None,
        max_cycles: int = 0,
    ) -> list[SweepReport]:
        """Run sweeps until stopped.

        Args:
            poll_interval: Seconds between sweeps. Defaults to
                           ``SWEEP_INTERVAL_SECONDS``.
            max_cycles: Stop after this many sweeps (0 = unlimited).

        Returns:
            The report of every sweep that ran.
        """
        if poll_interval is None:
            poll_interval = self._config.sweep_interval_seconds
        reports: list[SweepReport] = []
        cycle = 0
        self._running = True

        while self._running:
            cycle += 1
            try:
                reports.append(await self.run_sweep())
            except Exception as exc:
                logger.error("Sweep %d error: %s", cycle, exc)

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep — checks _running every second
            for _ in range(poll_interval):
                if not self._running:
                    break
                await asyncio.sleep(1)

        self._running = False
        return reports

    # ── Webhook signals ──────────────────────────────────────────────────

    async def dispatch_signal(self, signal_id: int) -> list[TupleResult]:
        """Fan a stored webhook signal out to every active tuple it targets.

        The signal is marked processed afterwards, so dispatching the same
        id twice does nothing the second time.
        """
        row = self._signals.get(signal_id)
        if row is None or row["processed"]:
            return []

        signal = TradeSignal(
            type=SignalType(row["signal_type"]),
            price=row["price"],
            stop_loss=row["stop_loss"],
            take_profit=row["take_profit"],
            reason=f"Webhook signal #{signal_id}",
            candle_time=row["candle_open_time"],
        )
        activations = self._scripts.list_active_activations(
            script_id=row["script_id"], timeframe=row["timeframe"],
        )
        outcomes = await asyncio.gather(
            *(self._coordinator.run_tuple(a, signal=signal) for a in activations),
            return_exceptions=True,
        )
        results: list[TupleResult] = []
        for activation, outcome in zip(activations, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Webhook signal %d crashed on %s: %s",
                             signal_id, activation.key, outcome)
                outcome = TupleResult(
                    user_id=activation.user_id,
                    script_id=activation.script_id,
                    timeframe=activation.timeframe,
                    outcome=Outcome.FAILED,
                    reason=f"ERROR: {outcome}",
                )
            results.append(outcome)

        self._signals.mark_processed(signal_id)
        return results
