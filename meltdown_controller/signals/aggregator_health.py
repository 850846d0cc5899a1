"""
Meltdown Controller - Aggregator Health Detector.

============================================================
PURPOSE
============================================================
Detects an unhealthy trade aggregator.

TRIGGERS WHEN:
- Windowed execution error rate >= error_rate_threshold
- The metrics collector raises its meltdown warning flag

Zero executions in the window means an error rate of 0.
Absence of activity is not evidence of failure.

============================================================
"""

from typing import Optional

from ..clock import ClockProtocol
from ..config import ThresholdConfig, SignalConfig
from ..interfaces import ExecutionMetricsCollector
from ..types import (
    EvaluationContext,
    SignalSourceKind,
    SignalVerdict,
)
from .base import BaseSignalSource, SignalSourceMeta


class AggregatorHealthDetector(BaseSignalSource):
    """
    Checks the execution error rate over a trailing window.
    """

    def __init__(
        self,
        metrics_collector: ExecutionMetricsCollector,
        thresholds: ThresholdConfig,
        signal_config: Optional[SignalConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        signal_config = signal_config or SignalConfig()
        super().__init__(
            timeout_seconds=signal_config.source_timeout_seconds,
            clock=clock,
        )
        self._metrics_collector = metrics_collector
        self._thresholds = thresholds
        self._window_seconds = signal_config.aggregator_window_seconds

    @property
    def meta(self) -> SignalSourceMeta:
        return SignalSourceMeta(
            name="AggregatorHealthDetector",
            kind=SignalSourceKind.AGGREGATOR,
            description=f"Execution error rate over {self._window_seconds}s",
        )

    async def _evaluate(self, ctx: EvaluationContext) -> SignalVerdict:
        stats = await self._metrics_collector.windowed_stats(self._window_seconds)

        error_rate = stats.error_rate
        threshold = self._thresholds.error_rate_threshold
        metrics = {
            "total": stats.total,
            "failed": stats.failed,
            "error_rate": error_rate,
            "meltdown_warning": stats.meltdown_warning,
            "threshold": threshold,
        }

        problems = []
        if error_rate >= threshold:
            problems.append(
                f"aggregator error rate {error_rate * 100:.1f}% "
                f"({stats.failed}/{stats.total} in {self._window_seconds}s) "
                f">= {threshold * 100:.1f}%"
            )
        if stats.meltdown_warning:
            problems.append("aggregator meltdown warning raised")

        if problems:
            return self._verdict(
                triggered=True,
                reason="; ".join(problems),
                metrics=metrics,
            )

        return self._verdict(
            triggered=False,
            reason=f"aggregator error rate {error_rate * 100:.1f}% within limits",
            metrics=metrics,
        )
