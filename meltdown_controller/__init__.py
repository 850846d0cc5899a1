"""
Meltdown Controller - Package.

============================================================
                    CRITICAL PRINCIPLE
============================================================

    A detected meltdown halts all new trades at once.
    Only an actor with enough privilege lifts the halt.

    An unreachable data source is not proof of a meltdown,
    and it is never silently ignored either.

============================================================
                      CONTROL LOOP
============================================================

Every interval (default 5 minutes):

1. Take the mutual-exclusion gate (skip the cycle if busy)
2. Evaluate all signal sources concurrently
3. On meltdown: pause trading, alert admins
4. Release the gate

============================================================
                     SIGNAL SOURCES
============================================================

MARKET:
    Reference asset price drop >= 10% versus the last
    recorded price

AGGREGATOR:
    Execution error rate >= 15% over 5 minutes, or the
    aggregator meltdown warning

FAILURE_BURST:
    >= 5 failed executions in the last 2 minutes

============================================================
                   PAUSE PRECEDENCE
============================================================

SYSTEM pauses never overwrite ADMIN pauses.
Resuming requires the privilege recorded on the pause.

============================================================
                        USAGE
============================================================

```python
from meltdown_controller import (
    Actor,
    MeltdownControllerConfig,
    build_controller,
    init_controller,
)

config = MeltdownControllerConfig.from_env()
controller = init_controller(build_controller(config))

await controller.start()

# Check before trading
if await controller.can_trade():
    # OK to trade

# Manual pause / resume
await controller.force_pause("exchange maintenance", Actor.admin("42"))
await controller.force_resume(Actor.admin("42"))

await controller.stop()
```

============================================================
"""

from .types import (
    # Actors
    Actor,
    ActorKind,
    PrivilegeLevel,
    # State
    TradingState,
    PauseOutcome,
    # Signals
    SignalSourceKind,
    EvaluationContext,
    SignalVerdict,
    MeltdownDecision,
    ExecutionWindowStats,
    # Gate
    LockToken,
    # Control loop
    CyclePhase,
    CycleOutcome,
    CycleReport,
    OverrideResult,
    # Errors
    MeltdownControllerError,
    ConfigurationError,
    SourceEvaluationError,
    GateBusyError,
    GateError,
    PermissionDeniedError,
    PersistenceError,
    ScheduleOverrunError,
    TradingPausedError,
)

from .config import (
    ThresholdConfig,
    SignalConfig,
    SchedulerConfig,
    GateBackend,
    GateConfig,
    DegradedCondition,
    AlertingConfig,
    AggregatorMonitorConfig,
    ResumePolicyConfig,
    MeltdownControllerConfig,
    get_default_config,
    get_testing_config,
    load_config_from_dict,
)

from .clock import (
    ClockProtocol,
    SystemClock,
    MockClock,
)

from .interfaces import (
    PriceFeed,
    ReferencePriceStore,
    ExecutionMetricsCollector,
    ExecutionLog,
    TradingStatePersistence,
    AlertDispatcher,
    AdminIdentity,
    StaticAdminIdentity,
    AggregatorStatsSource,
    RpcHealthCheck,
)

from .signals import (
    BaseSignalSource,
    SignalSourceMeta,
    MarketShockDetector,
    AggregatorHealthDetector,
    FailureBurstDetector,
)

from .evaluator import MeltdownEvaluator

from .state_store import TradingStateStore

from .gate import (
    MutualExclusionGate,
    InProcessGate,
    PostgresAdvisoryGate,
    create_gate,
)

from .scheduler import ControlLoopScheduler

from .admin import AdminOverride

from .alerting import (
    AlertPriority,
    Alert,
    AlertSender,
    TelegramAlertSender,
    ConsoleAlertSender,
    AlertingService,
    create_alerting_service,
)

from .aggregator_monitor import (
    AggregatorStats,
    AggregatorMonitor,
)

from .repository import (
    InMemoryTradingStatePersistence,
    SqlTradingStatePersistence,
    SqlExecutionLog,
    SqlExecutionMetricsCollector,
    SqlReferencePriceStore,
    SqlAggregatorStatsSource,
    create_session_factory,
    init_schema,
)

from .feeds import (
    CoinGeckoPriceFeed,
    SolanaRpcHealthCheck,
)

from .engine import (
    MeltdownController,
    build_controller,
    get_controller,
    init_controller,
    reset_controller,
    require_trading_enabled,
)


__all__ = [
    # Types
    "Actor",
    "ActorKind",
    "PrivilegeLevel",
    "TradingState",
    "PauseOutcome",
    "SignalSourceKind",
    "EvaluationContext",
    "SignalVerdict",
    "MeltdownDecision",
    "ExecutionWindowStats",
    "LockToken",
    "CyclePhase",
    "CycleOutcome",
    "CycleReport",
    "OverrideResult",
    # Errors
    "MeltdownControllerError",
    "ConfigurationError",
    "SourceEvaluationError",
    "GateBusyError",
    "GateError",
    "PermissionDeniedError",
    "PersistenceError",
    "ScheduleOverrunError",
    "TradingPausedError",
    # Config
    "ThresholdConfig",
    "SignalConfig",
    "SchedulerConfig",
    "GateBackend",
    "GateConfig",
    "DegradedCondition",
    "AlertingConfig",
    "AggregatorMonitorConfig",
    "ResumePolicyConfig",
    "MeltdownControllerConfig",
    "get_default_config",
    "get_testing_config",
    "load_config_from_dict",
    # Clock
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    # Interfaces
    "PriceFeed",
    "ReferencePriceStore",
    "ExecutionMetricsCollector",
    "ExecutionLog",
    "TradingStatePersistence",
    "AlertDispatcher",
    "AdminIdentity",
    "StaticAdminIdentity",
    "AggregatorStatsSource",
    "RpcHealthCheck",
    # Signals
    "BaseSignalSource",
    "SignalSourceMeta",
    "MarketShockDetector",
    "AggregatorHealthDetector",
    "FailureBurstDetector",
    # Core
    "MeltdownEvaluator",
    "TradingStateStore",
    "MutualExclusionGate",
    "InProcessGate",
    "PostgresAdvisoryGate",
    "create_gate",
    "ControlLoopScheduler",
    "AdminOverride",
    # Alerting
    "AlertPriority",
    "Alert",
    "AlertSender",
    "TelegramAlertSender",
    "ConsoleAlertSender",
    "AlertingService",
    "create_alerting_service",
    # Aggregator monitor
    "AggregatorStats",
    "AggregatorMonitor",
    # Persistence
    "InMemoryTradingStatePersistence",
    "SqlTradingStatePersistence",
    "SqlExecutionLog",
    "SqlExecutionMetricsCollector",
    "SqlReferencePriceStore",
    "SqlAggregatorStatsSource",
    "create_session_factory",
    "init_schema",
    # Feeds
    "CoinGeckoPriceFeed",
    "SolanaRpcHealthCheck",
    # Engine
    "MeltdownController",
    "build_controller",
    "get_controller",
    "init_controller",
    "reset_controller",
    "require_trading_enabled",
]
