"""
Meltdown Controller - Aggregator Monitor.

============================================================
PURPOSE
============================================================
Periodically collects trade aggregator health stats and
alerts admins when they cross safe levels.

STATS:
- tps               trades per second over the last 60s
- error_rate        failed / total over the last 5 minutes
- avg_latency_ms    mean latency of successful trades (5 min)
- queue_length      trades waiting to execute
- vault_conflicts   vault lock collisions in the last minute
- rpc_healthy       chain RPC answers getLatestBlockhash
- meltdown_warning  vault conflicts at or above the warning level

ALERTS (subject to AlertingConfig.degraded_conditions):
- error_rate   > error_rate_alert_threshold   HIGH_ERROR_RATE
- queue_length > queue_length_threshold       QUEUE_BACKLOG
- RPC unhealthy                               RPC_UNHEALTHY

Stats are not persisted.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .alerting import AlertingService
from .clock import ClockProtocol, SystemClock
from .config import AggregatorMonitorConfig, DegradedCondition
from .interfaces import AggregatorStatsSource, RpcHealthCheck


logger = logging.getLogger(__name__)


TPS_WINDOW_SECONDS = 60
ERROR_RATE_WINDOW_SECONDS = 300
CONFLICT_WINDOW_SECONDS = 60


@dataclass
class AggregatorStats:
    """One aggregator stats snapshot."""

    tps: float
    error_rate: float
    avg_latency_ms: float
    queue_length: int
    vault_conflicts: int
    rpc_healthy: bool
    meltdown_warning: bool
    collected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tps": self.tps,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": self.avg_latency_ms,
            "queue_length": self.queue_length,
            "vault_conflicts": self.vault_conflicts,
            "rpc_healthy": self.rpc_healthy,
            "meltdown_warning": self.meltdown_warning,
            "collected_at": self.collected_at.isoformat(),
        }


class AggregatorMonitor:
    """
    Collects aggregator stats and raises degraded-condition alerts.
    """

    def __init__(
        self,
        stats_source: AggregatorStatsSource,
        rpc_check: Optional[RpcHealthCheck] = None,
        alerting: Optional[AlertingService] = None,
        config: Optional[AggregatorMonitorConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize monitor.

        Args:
            stats_source: Aggregator counters
            rpc_check: RPC liveness probe (skipped when None)
            alerting: Admin alerting (optional)
            config: Monitor thresholds and cadence
            clock: Time source
        """
        self._stats_source = stats_source
        self._rpc_check = rpc_check
        self._alerting = alerting
        self._config = config or AggregatorMonitorConfig()
        self._clock = clock or SystemClock()

        self._last_stats: Optional[AggregatorStats] = None
        self._stop_event = asyncio.Event()

    @property
    def last_stats(self) -> Optional[AggregatorStats]:
        return self._last_stats

    async def collect(self) -> Optional[AggregatorStats]:
        """
        Collect one stats snapshot.

        Returns:
            AggregatorStats, or None when the counters are unavailable
        """
        try:
            trades_60s = await self._stats_source.trades_since(TPS_WINDOW_SECONDS)
            counts = await self._stats_source.execution_counts(ERROR_RATE_WINDOW_SECONDS)
            avg_latency = await self._stats_source.avg_success_latency_ms(
                ERROR_RATE_WINDOW_SECONDS
            )
            queue_length = await self._stats_source.queue_length()
            conflicts = await self._stats_source.vault_conflicts_since(CONFLICT_WINDOW_SECONDS)
        except Exception as e:
            logger.error(f"Failed to collect aggregator stats: {e}")
            return None

        rpc_healthy = True
        if self._rpc_check is not None:
            rpc_healthy = await self._rpc_check.is_healthy()

        stats = AggregatorStats(
            tps=round(trades_60s / TPS_WINDOW_SECONDS, 2),
            error_rate=counts.error_rate,
            avg_latency_ms=avg_latency,
            queue_length=queue_length,
            vault_conflicts=conflicts,
            rpc_healthy=rpc_healthy,
            meltdown_warning=conflicts >= self._config.vault_conflict_warning_threshold,
            collected_at=self._clock.now(),
        )
        self._last_stats = stats
        return stats

    async def handle(self, stats: AggregatorStats) -> List[DegradedCondition]:
        """
        Check a snapshot against thresholds and alert.

        Returns:
            Conditions that were detected
        """
        detected: List[tuple] = []

        if stats.error_rate > self._config.error_rate_alert_threshold:
            detected.append((
                DegradedCondition.HIGH_ERROR_RATE,
                f"Aggregator error rate {stats.error_rate * 100:.1f}%\n"
                f"Check aggregator logs immediately.",
            ))

        if stats.queue_length > self._config.queue_length_threshold:
            detected.append((
                DegradedCondition.QUEUE_BACKLOG,
                f"{stats.queue_length} pending trades\n"
                f"Potential slowdown or concurrency issues.",
            ))

        if not stats.rpc_healthy:
            detected.append((
                DegradedCondition.RPC_UNHEALTHY,
                "Check node status or switch endpoints.",
            ))

        for condition, message in detected:
            logger.warning(f"Aggregator degraded: {condition.value} | {message.splitlines()[0]}")
            if self._alerting is not None:
                await self._alerting.alert_degraded(condition, message)

        return [condition for condition, _ in detected]

    async def run_once(self) -> Optional[AggregatorStats]:
        """Collect and handle one snapshot."""
        stats = await self.collect()
        if stats is None:
            return None

        logger.info(f"Aggregator stats: {stats.to_dict()}")
        await self.handle(stats)
        return stats

    async def run_forever(self) -> None:
        """Run one collection per interval until stop() is called."""
        interval = self._config.interval_seconds
        logger.info(f"Starting aggregator monitor | interval={interval}s")

        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Aggregator monitor error: {e}", exc_info=True)

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            self._stop_event.clear()
            logger.info("Aggregator monitor stopped")

    def stop(self) -> None:
        self._stop_event.set()
