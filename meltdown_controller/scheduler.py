"""
Meltdown Controller - Control Loop Scheduler.

============================================================
PURPOSE
============================================================
Drives the meltdown evaluation on a fixed cadence, under the
mutual-exclusion gate.

CYCLE STATE MACHINE:
    IDLE -> ACQUIRING -> EVALUATING -> TRANSITIONING -> IDLE
                 |
                 +-> SKIPPED (gate busy) -> IDLE

RULES:
- Cycles never overlap. A long cycle delays the next tick.
- Evaluation and transition share one hard budget. An overrun is
  cancelled, nothing is transitioned, the overrun is logged.
- Any failure aborts the current cycle only. The gate is
  always released and the next tick runs normally.
- Alerts are sent after the gate is released.

============================================================
"""

import asyncio
import logging
import time
import uuid
from typing import Optional, List, Tuple

from .alerting import AlertingService
from .clock import ClockProtocol, SystemClock
from .config import SchedulerConfig, DegradedCondition
from .evaluator import MeltdownEvaluator
from .gate import MutualExclusionGate
from .state_store import TradingStateStore
from .types import (
    Actor,
    CycleOutcome,
    CyclePhase,
    CycleReport,
    EvaluationContext,
    GateBusyError,
    LockToken,
    PauseOutcome,
    ScheduleOverrunError,
)


logger = logging.getLogger(__name__)


class ControlLoopScheduler:
    """
    Periodic driver of the meltdown evaluation.
    """

    def __init__(
        self,
        evaluator: MeltdownEvaluator,
        store: TradingStateStore,
        gate: MutualExclusionGate,
        alerting: Optional[AlertingService] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize scheduler.

        Args:
            evaluator: Meltdown evaluator
            store: Trading state store
            gate: Mutual-exclusion gate shared with admin overrides
            alerting: Admin alerting (optional)
            config: Scheduler configuration
            clock: Time source
        """
        self._evaluator = evaluator
        self._store = store
        self._gate = gate
        self._alerting = alerting
        self._config = config or SchedulerConfig()
        self._clock = clock or SystemClock()

        self._phase = CyclePhase.IDLE
        self._last_report: Optional[CycleReport] = None
        self._cycle_count = 0
        self._running = False
        self._stop_event = asyncio.Event()

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def phase(self) -> CyclePhase:
        return self._phase

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self._last_report

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def budget_seconds(self) -> float:
        """Hard wall-clock budget of the gated part of a cycle."""
        return self._evaluator.max_source_timeout_total + self._config.overrun_margin_seconds

    # --------------------------------------------------------
    # SINGLE CYCLE
    # --------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """
        Run one cycle: acquire, evaluate, transition, release.

        Never raises except on cancellation.

        Returns:
            CycleReport
        """
        cycle_id = uuid.uuid4().hex[:12]
        started_at = self._clock.now()
        start_time = time.monotonic()
        self._cycle_count += 1

        report = CycleReport(
            cycle_id=cycle_id,
            outcome=CycleOutcome.ABORTED,
            started_at=started_at,
        )
        pending: List[Tuple[str, object]] = []

        self._phase = CyclePhase.ACQUIRING
        try:
            async with self._gate.hold(timeout=0.0, holder=f"meltdown-cycle-{cycle_id}") as token:
                budget = self.budget_seconds
                try:
                    await asyncio.wait_for(
                        self._run_gated(
                            EvaluationContext(cycle_id=cycle_id, started_at=started_at),
                            token,
                            report,
                            pending,
                        ),
                        timeout=budget,
                    )
                except asyncio.TimeoutError:
                    raise ScheduleOverrunError(budget)

        except GateBusyError:
            self._phase = CyclePhase.SKIPPED
            report.outcome = CycleOutcome.SKIPPED
            logger.info(f"[{cycle_id}] meltdown cycle skipped: another evaluation holds the gate")

        except ScheduleOverrunError as e:
            report.outcome = CycleOutcome.OVERRUN
            report.error = str(e)
            logger.error(f"[{cycle_id}] meltdown cycle overrun: {e}")
            pending.append(("overrun", str(e)))

        except asyncio.CancelledError:
            logger.info(f"[{cycle_id}] meltdown cycle cancelled")
            raise

        except Exception as e:
            report.outcome = CycleOutcome.ABORTED
            report.error = f"{type(e).__name__}: {e}"
            logger.error(f"[{cycle_id}] meltdown cycle aborted: {e}", exc_info=True)
            pending.append(("aborted", report.error))

        finally:
            report.duration_seconds = time.monotonic() - start_time
            self._phase = CyclePhase.IDLE
            self._last_report = report

        await self._dispatch(pending)

        logger.info(
            f"[{cycle_id}] cycle complete | outcome={report.outcome.value} "
            f"duration={report.duration_seconds:.2f}s"
        )
        return report

    async def _run_gated(
        self,
        ctx: EvaluationContext,
        token: LockToken,
        report: CycleReport,
        pending: List[Tuple[str, object]],
    ) -> None:
        """Evaluate and transition while the gate is held."""
        self._phase = CyclePhase.EVALUATING
        decision = await self._evaluator.evaluate(ctx)
        report.decision = decision

        if decision.has_errors:
            pending.append(("source_errors", decision))

        if not decision.triggered:
            report.outcome = CycleOutcome.NO_MELTDOWN
            return

        self._phase = CyclePhase.TRANSITIONING
        report.pause_outcome = await self._store.pause(
            reason=f"Meltdown detected: {decision.summary()}",
            actor=Actor.system(),
            token=token,
        )
        report.outcome = CycleOutcome.MELTDOWN

        if report.pause_outcome == PauseOutcome.UNCHANGED:
            logger.warning(
                f"[{ctx.cycle_id}] meltdown not recorded, admin pause takes precedence"
            )
        elif report.pause_outcome == PauseOutcome.PAUSED:
            pending.append(("meltdown", decision))
        else:
            pending.append(("meltdown_update", decision))

    async def _dispatch(self, pending: List[Tuple[str, object]]) -> None:
        if self._alerting is None:
            return

        for kind, payload in pending:
            try:
                if kind == "meltdown":
                    await self._alerting.alert_meltdown(payload)
                elif kind == "meltdown_update":
                    await self._alerting.alert_meltdown(payload, deduplicate=True)
                elif kind == "source_errors":
                    errors = "; ".join(str(error) for _, error in payload.source_errors)
                    await self._alerting.alert_degraded(DegradedCondition.SOURCE_ERROR, errors)
                elif kind == "overrun":
                    await self._alerting.alert_degraded(DegradedCondition.CYCLE_OVERRUN, payload)
                elif kind == "aborted":
                    await self._alerting.alert_degraded(DegradedCondition.CYCLE_ABORTED, payload)
            except Exception as e:
                logger.error(f"Alert dispatch failed ({kind}): {e}")

    # --------------------------------------------------------
    # MAIN LOOP
    # --------------------------------------------------------

    async def run_forever(self) -> None:
        """
        Run one cycle per interval until stop() is called.

        The interval is measured start to start. No exception
        raised by a cycle ends the loop.
        """
        if self._running:
            logger.warning("Control loop already running")
            return

        self._running = True
        interval = self._config.interval_seconds

        logger.info(
            f"Starting meltdown control loop | interval={interval}s "
            f"budget={self.budget_seconds:.1f}s"
        )

        try:
            if not self._config.run_on_start:
                if await self._wait_or_stop(interval):
                    return

            while not self._stop_event.is_set():
                tick_start = time.monotonic()

                try:
                    await self.run_cycle()
                except asyncio.CancelledError:
                    logger.info("Control loop cancelled")
                    raise
                except Exception as e:
                    logger.error(f"Unexpected control loop error: {e}", exc_info=True)

                wait_seconds = max(0.0, interval - (time.monotonic() - tick_start))
                if wait_seconds == 0.0:
                    logger.warning("Meltdown cycle ran longer than the interval")
                if await self._wait_or_stop(wait_seconds):
                    break
        finally:
            self._running = False
            self._stop_event.clear()
            logger.info("Meltdown control loop stopped")

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._stop_event.set()

    async def _wait_or_stop(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return self._stop_event.is_set()
