"""
Meltdown Controller - Base Signal Source.

============================================================
PURPOSE
============================================================
Abstract base class for all meltdown signal sources.

Each source is responsible for one risk dimension.
Sources are:
- Bounded (per-source timeout)
- Side-effect free
- Isolated (errors become a non-triggering verdict)

A failing source is NOT treated as a meltdown. Its error is
attached to the verdict so operators can see it.

============================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any
import asyncio
import logging
import time

from ..clock import ClockProtocol, SystemClock
from ..types import (
    EvaluationContext,
    SignalSourceKind,
    SignalVerdict,
    SourceEvaluationError,
)


logger = logging.getLogger(__name__)


# ============================================================
# SOURCE METADATA
# ============================================================

@dataclass
class SignalSourceMeta:
    """
    Metadata about a signal source.
    """

    name: str
    """Source name."""

    kind: SignalSourceKind
    """Risk dimension this source covers."""

    description: str
    """What this source checks."""


# ============================================================
# BASE SIGNAL SOURCE
# ============================================================

class BaseSignalSource(ABC):
    """
    Abstract base class for signal sources.

    Subclasses implement _evaluate(). evaluate() wraps it with:
    - Timeout protection
    - Exception capture
    - Timing measurement

    evaluate() always returns a verdict and never raises.
    """

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        clock: Optional[ClockProtocol] = None,
    ):
        self._timeout_seconds = timeout_seconds
        self._clock = clock or SystemClock()

    @property
    @abstractmethod
    def meta(self) -> SignalSourceMeta:
        """Get source metadata."""
        pass

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    @abstractmethod
    async def _evaluate(self, ctx: EvaluationContext) -> SignalVerdict:
        """
        Internal evaluation logic.

        May raise; evaluate() converts failures to verdicts.
        """
        pass

    async def evaluate(self, ctx: EvaluationContext) -> SignalVerdict:
        """
        Evaluate this source with timeout and failure isolation.

        Args:
            ctx: Cycle context

        Returns:
            SignalVerdict (always returns, never throws)
        """
        start_time = time.perf_counter()

        try:
            verdict = await asyncio.wait_for(
                self._evaluate(ctx),
                timeout=self._timeout_seconds,
            )
            verdict.metrics.setdefault(
                "eval_time_ms", (time.perf_counter() - start_time) * 1000
            )
            return verdict

        except asyncio.TimeoutError as e:
            logger.error(
                f"Signal source {self.meta.name} timed out after {self._timeout_seconds}s"
            )
            return self._error_verdict(
                f"timed out after {self._timeout_seconds}s", e, start_time
            )

        except SourceEvaluationError as e:
            logger.error(f"Signal source {self.meta.name} failed: {e}")
            return self._error_verdict(str(e), e.cause or e, start_time, error=e)

        except Exception as e:
            logger.error(f"Unexpected error in {self.meta.name}: {e}", exc_info=True)
            return self._error_verdict(f"{type(e).__name__}: {e}", e, start_time)

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _verdict(
        self,
        triggered: bool,
        reason: str,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> SignalVerdict:
        """Create a verdict for this source."""
        return SignalVerdict(
            source=self.meta.kind,
            triggered=triggered,
            reason=reason,
            evaluated_at=self._clock.now(),
            metrics=metrics or {},
        )

    def _error_verdict(
        self,
        message: str,
        cause: BaseException,
        start_time: float,
        error: Optional[SourceEvaluationError] = None,
    ) -> SignalVerdict:
        """Create a non-triggering verdict carrying the evaluation error."""
        if error is None:
            error = SourceEvaluationError(self.meta.kind, message, cause)

        return SignalVerdict(
            source=self.meta.kind,
            triggered=False,
            reason=f"{self.meta.name} unavailable: {message}",
            evaluated_at=self._clock.now(),
            eval_error=error,
            metrics={"eval_time_ms": (time.perf_counter() - start_time) * 1000},
        )
