"""
Meltdown Controller - Failure Burst Detector.

============================================================
PURPOSE
============================================================
Circuit breaker on repeated execution failures.

TRIGGERS WHEN:
- FAILED executions in the burst window (default 2 minutes)
  >= consecutive_fail_threshold

============================================================
"""

from datetime import timedelta
from typing import Optional

from ..clock import ClockProtocol
from ..config import ThresholdConfig, SignalConfig
from ..interfaces import ExecutionLog
from ..types import (
    EvaluationContext,
    SignalSourceKind,
    SignalVerdict,
)
from .base import BaseSignalSource, SignalSourceMeta


class FailureBurstDetector(BaseSignalSource):
    """
    Counts failed executions in a short trailing window.
    """

    def __init__(
        self,
        execution_log: ExecutionLog,
        thresholds: ThresholdConfig,
        signal_config: Optional[SignalConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        signal_config = signal_config or SignalConfig()
        super().__init__(
            timeout_seconds=signal_config.source_timeout_seconds,
            clock=clock,
        )
        self._execution_log = execution_log
        self._thresholds = thresholds
        self._window = timedelta(seconds=signal_config.failure_burst_window_seconds)

    @property
    def meta(self) -> SignalSourceMeta:
        return SignalSourceMeta(
            name="FailureBurstDetector",
            kind=SignalSourceKind.FAILURE_BURST,
            description=f"Failed executions in the last {int(self._window.total_seconds())}s",
        )

    async def _evaluate(self, ctx: EvaluationContext) -> SignalVerdict:
        fail_count = await self._execution_log.count_failures_since(self._window)
        threshold = self._thresholds.consecutive_fail_threshold
        window_seconds = int(self._window.total_seconds())

        metrics = {
            "fail_count": fail_count,
            "window_seconds": window_seconds,
            "threshold": threshold,
        }

        if fail_count >= threshold:
            return self._verdict(
                triggered=True,
                reason=(
                    f"{fail_count} failed executions in the last {window_seconds}s "
                    f"(threshold {threshold})"
                ),
                metrics=metrics,
            )

        return self._verdict(
            triggered=False,
            reason=f"{fail_count} failed executions in the last {window_seconds}s",
            metrics=metrics,
        )
