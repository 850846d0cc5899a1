"""
Shared fixtures for Meltdown Controller tests.

Collaborators are replaced by small in-memory fakes whose
attributes tests change directly (price, stats, fail count).
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from meltdown_controller.alerting import Alert, AlertSender, AlertingService
from meltdown_controller.clock import MockClock
from meltdown_controller.config import (
    AlertingConfig,
    ResumePolicyConfig,
    SchedulerConfig,
    SignalConfig,
    ThresholdConfig,
    get_testing_config,
)
from meltdown_controller.engine import MeltdownController, reset_controller
from meltdown_controller.evaluator import MeltdownEvaluator
from meltdown_controller.gate import InProcessGate
from meltdown_controller.interfaces import (
    ExecutionLog,
    ExecutionMetricsCollector,
    PriceFeed,
    ReferencePriceStore,
    StaticAdminIdentity,
)
from meltdown_controller.repository import InMemoryTradingStatePersistence
from meltdown_controller.scheduler import ControlLoopScheduler
from meltdown_controller.signals import (
    AggregatorHealthDetector,
    FailureBurstDetector,
    MarketShockDetector,
)
from meltdown_controller.state_store import TradingStateStore
from meltdown_controller.types import ExecutionWindowStats, PrivilegeLevel


START_TIME = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================
# FAKE COLLABORATORS
# ============================================================

class FakePriceFeed(PriceFeed):
    """Price feed returning a settable price."""

    def __init__(self, price: Optional[float] = 100.0):
        self.price = price
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls = 0

    async def current_price(self, symbol: str) -> float:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.price


class FakeReferencePriceStore(ReferencePriceStore):
    """Reference prices keyed by symbol."""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = dict(prices if prices is not None else {"BTC": 100.0})
        self.error: Optional[Exception] = None

    async def last_price(self, symbol: str) -> Optional[float]:
        if self.error is not None:
            raise self.error
        return self.prices.get(symbol)


class FakeMetricsCollector(ExecutionMetricsCollector):
    """Windowed stats with settable values."""

    def __init__(self, total: int = 100, failed: int = 0, meltdown_warning: bool = False):
        self.stats = ExecutionWindowStats(
            total=total,
            failed=failed,
            meltdown_warning=meltdown_warning,
        )
        self.error: Optional[Exception] = None
        self.requested_windows: List[int] = []

    async def windowed_stats(self, window_seconds: int) -> ExecutionWindowStats:
        self.requested_windows.append(window_seconds)
        if self.error is not None:
            raise self.error
        return self.stats


class FakeExecutionLog(ExecutionLog):
    """Failure count with settable value."""

    def __init__(self, fail_count: int = 0):
        self.fail_count = fail_count
        self.error: Optional[Exception] = None
        self.requested_durations: List[timedelta] = []

    async def count_failures_since(self, duration: timedelta) -> int:
        self.requested_durations.append(duration)
        if self.error is not None:
            raise self.error
        return self.fail_count


class RecordingAlertSender(AlertSender):
    """Keeps every alert it is asked to send."""

    def __init__(self):
        self.alerts: List[Alert] = []

    async def send(self, alert: Alert) -> bool:
        self.alerts.append(alert)
        return True

    @property
    def titles(self) -> List[str]:
        return [alert.title for alert in self.alerts]


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Pinned clock."""
    return MockClock(START_TIME)


@pytest.fixture
def thresholds():
    """Production thresholds."""
    return ThresholdConfig(
        price_drop_threshold=0.10,
        error_rate_threshold=0.15,
        consecutive_fail_threshold=5,
    )


@pytest.fixture
def signal_config():
    """Signal config with a short timeout."""
    return SignalConfig(source_timeout_seconds=0.5)


@pytest.fixture
def price_feed():
    return FakePriceFeed(price=100.0)


@pytest.fixture
def reference_prices():
    return FakeReferencePriceStore({"BTC": 100.0})


@pytest.fixture
def metrics_collector():
    return FakeMetricsCollector(total=100, failed=0)


@pytest.fixture
def execution_log():
    return FakeExecutionLog(fail_count=0)


@pytest.fixture
def market_detector(price_feed, reference_prices, thresholds, signal_config, clock):
    return MarketShockDetector(
        price_feed=price_feed,
        reference_prices=reference_prices,
        thresholds=thresholds,
        signal_config=signal_config,
        clock=clock,
    )


@pytest.fixture
def aggregator_detector(metrics_collector, thresholds, signal_config, clock):
    return AggregatorHealthDetector(
        metrics_collector=metrics_collector,
        thresholds=thresholds,
        signal_config=signal_config,
        clock=clock,
    )


@pytest.fixture
def burst_detector(execution_log, thresholds, signal_config, clock):
    return FailureBurstDetector(
        execution_log=execution_log,
        thresholds=thresholds,
        signal_config=signal_config,
        clock=clock,
    )


@pytest.fixture
def evaluator(market_detector, aggregator_detector, burst_detector, clock):
    return MeltdownEvaluator(
        sources=[market_detector, aggregator_detector, burst_detector],
        clock=clock,
    )


@pytest.fixture
def admin_identity():
    """Admin "1" is a superadmin, everyone else a regular admin."""
    return StaticAdminIdentity({"1": PrivilegeLevel.SUPERADMIN})


@pytest.fixture
def persistence(clock):
    return InMemoryTradingStatePersistence(clock=clock)


@pytest.fixture
def store(persistence, admin_identity, clock):
    return TradingStateStore(
        persistence=persistence,
        admin_identity=admin_identity,
        policy=ResumePolicyConfig(enforce_admin_precedence=True),
        clock=clock,
    )


@pytest.fixture
def gate(clock):
    return InProcessGate(key=12345, clock=clock)


@pytest.fixture
def alert_sender():
    return RecordingAlertSender()


@pytest.fixture
def alerting(alert_sender, clock):
    return AlertingService(
        config=AlertingConfig(),
        senders=[alert_sender],
        clock=clock,
    )


@pytest.fixture
def scheduler_config():
    return SchedulerConfig(
        interval_seconds=0.05,
        overrun_margin_seconds=0.2,
        admin_gate_timeout_seconds=0.2,
    )


@pytest.fixture
def scheduler(evaluator, store, gate, alerting, scheduler_config, clock):
    return ControlLoopScheduler(
        evaluator=evaluator,
        store=store,
        gate=gate,
        alerting=alerting,
        config=scheduler_config,
        clock=clock,
    )


@pytest.fixture
def controller(
    persistence,
    price_feed,
    reference_prices,
    metrics_collector,
    execution_log,
    gate,
    admin_identity,
    alerting,
    clock,
):
    """Controller wired to in-memory fakes."""
    controller = MeltdownController(
        config=get_testing_config(),
        persistence=persistence,
        price_feed=price_feed,
        reference_prices=reference_prices,
        metrics_collector=metrics_collector,
        execution_log=execution_log,
        gate=gate,
        admin_identity=admin_identity,
        alerting=alerting,
        clock=clock,
    )
    yield controller
    reset_controller()
