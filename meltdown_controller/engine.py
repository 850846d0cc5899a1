"""
Meltdown Controller - Engine.

============================================================
PURPOSE
============================================================
The MAIN CONTROLLER. Wires signal sources, evaluator, state
store, gate, scheduler, admin override and aggregator monitor
into one object, and exposes the surface used by outer layers:

- run_cycle_now()      manual trigger
- force_pause()        admin pause
- force_resume()       admin resume
- current_state()      trading state read
- can_trade()          execution path check

CRITICAL PRINCIPLE:
    "If the controller cannot read the trading state,
     trading is not admitted."

============================================================
ARCHITECTURE
============================================================

                    ┌─────────────────────┐
                    │  MeltdownController │
                    └─────────┬───────────┘
                              │
        ┌─────────────────────┼─────────────────────┐
        │                     │                     │
        ▼                     ▼                     ▼
   ┌──────────┐        ┌────────────┐        ┌───────────┐
   │ Scheduler│        │   Admin    │        │ Aggregator│
   │  (loop)  │        │  Override  │        │  Monitor  │
   └────┬─────┘        └─────┬──────┘        └───────────┘
        │                    │
        └──────► Gate ◄──────┘
                  │
                  ▼
            State Store

============================================================
"""

import asyncio
import functools
import logging
from typing import Optional, Dict, Any, List

from sqlalchemy.ext.asyncio import AsyncEngine

from .admin import AdminOverride
from .aggregator_monitor import AggregatorMonitor
from .alerting import AlertingService, create_alerting_service
from .clock import ClockProtocol, SystemClock
from .config import MeltdownControllerConfig
from .evaluator import MeltdownEvaluator
from .feeds import CoinGeckoPriceFeed, SolanaRpcHealthCheck
from .gate import MutualExclusionGate, InProcessGate, create_gate
from .interfaces import (
    AdminIdentity,
    ExecutionLog,
    ExecutionMetricsCollector,
    PriceFeed,
    ReferencePriceStore,
    TradingStatePersistence,
)
from .repository import (
    SqlAggregatorStatsSource,
    SqlExecutionLog,
    SqlExecutionMetricsCollector,
    SqlReferencePriceStore,
    SqlTradingStatePersistence,
    create_session_factory,
)
from .scheduler import ControlLoopScheduler
from .signals import (
    AggregatorHealthDetector,
    FailureBurstDetector,
    MarketShockDetector,
)
from .state_store import TradingStateStore
from .types import (
    Actor,
    ConfigurationError,
    CycleReport,
    MeltdownControllerError,
    OverrideResult,
    TradingPausedError,
    TradingState,
)


logger = logging.getLogger(__name__)


# ============================================================
# MELTDOWN CONTROLLER
# ============================================================

class MeltdownController:
    """
    Meltdown detection and global trading control.

    Usage:
    ```python
    controller = build_controller(MeltdownControllerConfig.from_env())
    await controller.start()

    if await controller.can_trade():
        # OK to trade

    await controller.stop()
    ```
    """

    def __init__(
        self,
        config: MeltdownControllerConfig,
        persistence: TradingStatePersistence,
        price_feed: PriceFeed,
        reference_prices: ReferencePriceStore,
        metrics_collector: ExecutionMetricsCollector,
        execution_log: ExecutionLog,
        gate: Optional[MutualExclusionGate] = None,
        admin_identity: Optional[AdminIdentity] = None,
        alerting: Optional[AlertingService] = None,
        aggregator_monitor: Optional[AggregatorMonitor] = None,
        clock: Optional[ClockProtocol] = None,
        db_engine: Optional[AsyncEngine] = None,
    ):
        """
        Initialize controller.

        Args:
            config: Controller configuration
            persistence: Trading state storage
            price_feed: Live price source
            reference_prices: Recorded reference prices
            metrics_collector: Windowed execution stats
            execution_log: Failed execution counts
            gate: Mutual-exclusion gate (in-process if omitted)
            admin_identity: Privilege resolution
            alerting: Admin alerting
            aggregator_monitor: Aggregator stats monitor
            clock: Time source
            db_engine: Engine disposed on stop()
        """
        self._config = config
        self._clock = clock or SystemClock()
        self._alerting = alerting
        self._aggregator_monitor = aggregator_monitor
        self._db_engine = db_engine

        self._gate = gate or InProcessGate(key=config.gate.key, clock=self._clock)

        self._store = TradingStateStore(
            persistence=persistence,
            admin_identity=admin_identity,
            policy=config.resume,
            clock=self._clock,
        )

        self._evaluator = MeltdownEvaluator(
            sources=[
                MarketShockDetector(
                    price_feed=price_feed,
                    reference_prices=reference_prices,
                    thresholds=config.thresholds,
                    signal_config=config.signals,
                    clock=self._clock,
                ),
                AggregatorHealthDetector(
                    metrics_collector=metrics_collector,
                    thresholds=config.thresholds,
                    signal_config=config.signals,
                    clock=self._clock,
                ),
                FailureBurstDetector(
                    execution_log=execution_log,
                    thresholds=config.thresholds,
                    signal_config=config.signals,
                    clock=self._clock,
                ),
            ],
            clock=self._clock,
        )

        self._scheduler = ControlLoopScheduler(
            evaluator=self._evaluator,
            store=self._store,
            gate=self._gate,
            alerting=alerting,
            config=config.scheduler,
            clock=self._clock,
        )

        self._admin = AdminOverride(
            store=self._store,
            gate=self._gate,
            alerting=alerting,
            gate_timeout_seconds=config.scheduler.admin_gate_timeout_seconds,
        )

        self._tasks: List[asyncio.Task] = []
        self._running = False

        logger.info(f"MeltdownController initialized | {config.to_dict()}")

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def config(self) -> MeltdownControllerConfig:
        return self._config

    @property
    def scheduler(self) -> ControlLoopScheduler:
        return self._scheduler

    @property
    def store(self) -> TradingStateStore:
        return self._store

    @property
    def gate(self) -> MutualExclusionGate:
        return self._gate

    @property
    def db_engine(self) -> Optional[AsyncEngine]:
        return self._db_engine

    @property
    def is_running(self) -> bool:
        return self._running

    # --------------------------------------------------------
    # EXPOSED SURFACE
    # --------------------------------------------------------

    async def run_cycle_now(self) -> CycleReport:
        """Run one meltdown cycle immediately."""
        return await self._scheduler.run_cycle()

    async def force_pause(self, reason: str, actor: Actor) -> OverrideResult:
        """Pause trading on behalf of an admin."""
        return await self._admin.force_pause(reason, actor)

    async def force_resume(self, actor: Actor) -> OverrideResult:
        """Resume trading on behalf of an admin."""
        return await self._admin.force_resume(actor)

    async def current_state(self) -> TradingState:
        """Read the trading state."""
        return await self._store.current_state()

    async def can_trade(self) -> bool:
        """
        Check if new trades may be admitted.

        USE THIS BEFORE EVERY TRADING OPERATION.
        """
        try:
            return await self._store.is_trading_enabled()
        except MeltdownControllerError as e:
            logger.error(f"Trading state unreadable, not admitting trades: {e}")
            return False

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start the control loop and the aggregator monitor."""
        if self._running:
            logger.warning("MeltdownController already running")
            return

        self._running = True
        self._tasks.append(
            asyncio.create_task(self._scheduler.run_forever(), name="meltdown-control-loop")
        )

        if self._aggregator_monitor is not None and self._config.aggregator_monitor.enabled:
            self._tasks.append(
                asyncio.create_task(
                    self._aggregator_monitor.run_forever(),
                    name="aggregator-monitor",
                )
            )

        logger.info("=== MELTDOWN CONTROLLER STARTED ===")

    def request_stop(self) -> None:
        """Ask the background loops to exit after their current run."""
        self._scheduler.stop()
        if self._aggregator_monitor is not None:
            self._aggregator_monitor.stop()

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop background tasks and release resources."""
        if self._running:
            self.request_stop()

            if self._tasks:
                done, pending = await asyncio.wait(self._tasks, timeout=timeout)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*self._tasks, return_exceptions=True)

            self._tasks.clear()
            self._running = False
            logger.info("=== MELTDOWN CONTROLLER STOPPED ===")

        if self._db_engine is not None:
            await self._db_engine.dispose()
            self._db_engine = None

    async def run_forever(self) -> None:
        """Start and block until the background tasks end."""
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    async def get_status(self) -> Dict[str, Any]:
        """Get controller status."""
        report = self._scheduler.last_report
        try:
            state = (await self._store.current_state()).to_dict()
        except MeltdownControllerError as e:
            state = {"error": str(e)}

        status = {
            "running": self._running,
            "phase": self._scheduler.phase.value,
            "cycles": self._scheduler.cycle_count,
            "trading_state": state,
            "last_cycle": report.to_dict() if report else None,
        }
        if self._aggregator_monitor is not None and self._aggregator_monitor.last_stats:
            status["aggregator"] = self._aggregator_monitor.last_stats.to_dict()
        return status


# ============================================================
# FACTORY
# ============================================================

def build_controller(
    config: MeltdownControllerConfig,
    admin_identity: Optional[AdminIdentity] = None,
    clock: Optional[ClockProtocol] = None,
) -> MeltdownController:
    """
    Build a controller backed by the configured database,
    CoinGecko, the Solana RPC and admin alerting.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    errors = config.validate()
    if not config.database_url:
        errors.append("database_url is required")
    if errors:
        raise ConfigurationError("; ".join(errors))

    db_engine, session_factory = create_session_factory(config.database_url)
    alerting = create_alerting_service(config.alerting, clock=clock)

    aggregator_monitor = AggregatorMonitor(
        stats_source=SqlAggregatorStatsSource(session_factory, clock=clock),
        rpc_check=SolanaRpcHealthCheck(
            url=config.aggregator_monitor.rpc_url,
            timeout_seconds=config.aggregator_monitor.rpc_timeout_seconds,
        ),
        alerting=alerting,
        config=config.aggregator_monitor,
        clock=clock,
    )

    return MeltdownController(
        config=config,
        persistence=SqlTradingStatePersistence(session_factory, clock=clock),
        price_feed=CoinGeckoPriceFeed(
            url=config.price_feed_url,
            ids=config.price_feed_ids,
            timeout_seconds=config.signals.source_timeout_seconds,
        ),
        reference_prices=SqlReferencePriceStore(
            session_factory,
            metric_names={config.signals.reference_symbol: config.signals.reference_metric},
            clock=clock,
        ),
        metrics_collector=SqlExecutionMetricsCollector(
            session_factory,
            vault_conflict_warning_threshold=config.aggregator_monitor.vault_conflict_warning_threshold,
            clock=clock,
        ),
        execution_log=SqlExecutionLog(session_factory, clock=clock),
        gate=create_gate(config.gate, engine=db_engine, clock=clock),
        admin_identity=admin_identity,
        alerting=alerting,
        aggregator_monitor=aggregator_monitor,
        clock=clock,
        db_engine=db_engine,
    )


# ============================================================
# GLOBAL INSTANCE
# ============================================================

_controller: Optional[MeltdownController] = None


def get_controller() -> MeltdownController:
    """
    Get the global MeltdownController instance.

    Raises:
        MeltdownControllerError: If not initialized
    """
    if _controller is None:
        raise MeltdownControllerError("MeltdownController not initialized")
    return _controller


def init_controller(controller: MeltdownController) -> MeltdownController:
    """
    Register the global MeltdownController instance.

    Args:
        controller: Controller to register

    Returns:
        The registered controller
    """
    global _controller

    if _controller is not None:
        logger.warning("MeltdownController already initialized, replacing")

    _controller = controller
    return _controller


def reset_controller() -> None:
    """Forget the global instance."""
    global _controller
    _controller = None


# ============================================================
# DECORATOR FOR PROTECTED OPERATIONS
# ============================================================

def require_trading_enabled(func):
    """
    Decorator that requires trading to be enabled.

    Usage:
    ```python
    @require_trading_enabled
    async def execute_trade(...):
        ...
    ```
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        controller = get_controller()
        if not await controller.can_trade():
            raise TradingPausedError(
                f"Trading paused, {func.__name__} not allowed"
            )
        return await func(*args, **kwargs)
    return wrapper
