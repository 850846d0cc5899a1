"""
Meltdown Controller - Meltdown Evaluator.

============================================================
PURPOSE
============================================================
Fans out to every signal source, then folds the verdicts
into one MeltdownDecision.

AGGREGATION RULES:
- triggered     = OR of all verdicts
- reasons       = reasons of triggering verdicts, in fixed
                  priority order (market, aggregator,
                  failure-burst)
- source_errors = every evaluation error, triggered or not

One source failing or timing out never aborts the others.

============================================================
"""

import asyncio
import logging
import uuid
from typing import List, Optional, Sequence

from .clock import ClockProtocol, SystemClock
from .signals.base import BaseSignalSource
from .types import (
    EvaluationContext,
    MeltdownDecision,
    SignalVerdict,
    SourceEvaluationError,
)


logger = logging.getLogger(__name__)


class MeltdownEvaluator:
    """
    Runs all signal sources concurrently and aggregates verdicts.
    """

    def __init__(
        self,
        sources: Sequence[BaseSignalSource],
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize evaluator.

        Args:
            sources: Signal sources to evaluate every cycle
            clock: Time source
        """
        if not sources:
            raise ValueError("MeltdownEvaluator needs at least one signal source")

        self._sources: List[BaseSignalSource] = list(sources)
        self._clock = clock or SystemClock()

    @property
    def sources(self) -> List[BaseSignalSource]:
        return list(self._sources)

    @property
    def max_source_timeout_total(self) -> float:
        """Sum of per-source timeouts."""
        return sum(source.timeout_seconds for source in self._sources)

    async def evaluate(self, ctx: Optional[EvaluationContext] = None) -> MeltdownDecision:
        """
        Evaluate all sources and decide meltdown-or-not for this cycle.

        Args:
            ctx: Cycle context (created if omitted)

        Returns:
            MeltdownDecision
        """
        if ctx is None:
            ctx = EvaluationContext(
                cycle_id=uuid.uuid4().hex[:12],
                started_at=self._clock.now(),
            )

        results = await asyncio.gather(
            *(source.evaluate(ctx) for source in self._sources),
            return_exceptions=True,
        )

        verdicts: List[SignalVerdict] = []
        for source, result in zip(self._sources, results):
            if isinstance(result, BaseException):
                # evaluate() does not raise; this only catches broken subclasses
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    f"Signal source {source.meta.name} escaped isolation: {result}"
                )
                verdicts.append(
                    SignalVerdict(
                        source=source.meta.kind,
                        triggered=False,
                        reason=f"{source.meta.name} unavailable: {result}",
                        evaluated_at=self._clock.now(),
                        eval_error=SourceEvaluationError(
                            source.meta.kind, str(result), result
                        ),
                    )
                )
            else:
                verdicts.append(result)

        decision = self.aggregate(verdicts)
        decision.evaluated_at = self._clock.now()

        for source_kind, error in decision.source_errors:
            logger.warning(f"[{ctx.cycle_id}] source {source_kind.value} degraded: {error}")

        if decision.triggered:
            logger.warning(
                f"[{ctx.cycle_id}] MELTDOWN DETECTED: {decision.summary()}"
            )
        else:
            logger.info(
                f"[{ctx.cycle_id}] no meltdown | errors={len(decision.source_errors)}"
            )

        return decision

    @staticmethod
    def aggregate(verdicts: Sequence[SignalVerdict]) -> MeltdownDecision:
        """
        Fold verdicts into a decision.

        Output ordering depends only on source priority, never on
        completion order.
        """
        ordered = sorted(verdicts, key=lambda v: v.source.priority)

        reasons = [v.reason for v in ordered if v.triggered]
        source_errors = [
            (v.source, v.eval_error) for v in ordered if v.eval_error is not None
        ]

        return MeltdownDecision(
            triggered=bool(reasons),
            reasons=reasons,
            source_errors=source_errors,
            verdicts=ordered,
        )
