"""
Meltdown Controller - Configuration.

============================================================
PURPOSE
============================================================
Configuration for meltdown thresholds and controller behavior.

Thresholds are loaded once at process start and are
immutable for the lifetime of the process.

============================================================
CONFIGURATION PHILOSOPHY
============================================================
1. All thresholds are explicit and documented
2. Invalid thresholds fail at startup, not mid-cycle
3. Environment variables override defaults (.env supported)
4. No auto-tuning

============================================================
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional, FrozenSet

from dotenv import load_dotenv

from .types import ConfigurationError


# ============================================================
# MELTDOWN THRESHOLDS
# ============================================================

@dataclass(frozen=True)
class ThresholdConfig:
    """
    Thresholds for the meltdown decision.
    """

    price_drop_threshold: float = 0.10
    """Relative drop of the reference asset that triggers meltdown (10%)."""

    error_rate_threshold: float = 0.15
    """Windowed execution error rate that triggers meltdown (15%)."""

    consecutive_fail_threshold: int = 5
    """Failed executions in the burst window that trigger meltdown."""

    def __post_init__(self):
        if not 0.0 < self.price_drop_threshold <= 1.0:
            raise ConfigurationError(
                f"price_drop_threshold must be in (0, 1], got {self.price_drop_threshold}"
            )
        if not 0.0 < self.error_rate_threshold <= 1.0:
            raise ConfigurationError(
                f"error_rate_threshold must be in (0, 1], got {self.error_rate_threshold}"
            )
        if self.consecutive_fail_threshold < 1:
            raise ConfigurationError(
                f"consecutive_fail_threshold must be >= 1, got {self.consecutive_fail_threshold}"
            )


# ============================================================
# SIGNAL SOURCES
# ============================================================

@dataclass
class SignalConfig:
    """
    Data windows and timeouts for signal sources.
    """

    reference_symbol: str = "BTC"
    """Tracked asset for the market shock check."""

    reference_metric: str = "btc_price"
    """Metric name of the recorded reference price."""

    aggregator_window_seconds: int = 300
    """Trailing window for the execution error rate (5 minutes)."""

    failure_burst_window_seconds: int = 120
    """Trailing window for the failure burst count (2 minutes)."""

    source_timeout_seconds: float = 10.0
    """Upper bound for a single source evaluation."""


# ============================================================
# SCHEDULER
# ============================================================

@dataclass
class SchedulerConfig:
    """
    Configuration for the control loop cadence.
    """

    interval_seconds: float = 300.0
    """Time between cycle starts (5 minutes)."""

    overrun_margin_seconds: float = 5.0
    """Margin added to the summed source timeouts to form the cycle budget."""

    admin_gate_timeout_seconds: float = 5.0
    """How long a manual pause/resume waits for an in-flight cycle."""

    run_on_start: bool = True
    """Run one cycle immediately when the loop starts."""


# ============================================================
# GATE
# ============================================================

class GateBackend(str, Enum):
    """Which lock primitive backs the mutual-exclusion gate."""

    MEMORY = "memory"
    """In-process lock (single instance)."""

    POSTGRES = "postgres"
    """Postgres advisory lock (cluster-wide)."""


@dataclass
class GateConfig:
    """
    Configuration for the mutual-exclusion gate.
    """

    backend: GateBackend = GateBackend.MEMORY
    """Lock primitive."""

    key: int = 12345
    """Fixed lock identifier, one per deployment."""

    poll_interval_seconds: float = 0.1
    """Polling interval while waiting for a busy lock."""


# ============================================================
# ALERTING
# ============================================================

class DegradedCondition(str, Enum):
    """Non-meltdown conditions that may be reported to admins."""

    SOURCE_ERROR = "SOURCE_ERROR"
    CYCLE_ABORTED = "CYCLE_ABORTED"
    CYCLE_OVERRUN = "CYCLE_OVERRUN"
    HIGH_ERROR_RATE = "HIGH_ERROR_RATE"
    QUEUE_BACKLOG = "QUEUE_BACKLOG"
    RPC_UNHEALTHY = "RPC_UNHEALTHY"


def _default_degraded_conditions() -> FrozenSet[DegradedCondition]:
    return frozenset({
        DegradedCondition.CYCLE_ABORTED,
        DegradedCondition.CYCLE_OVERRUN,
        DegradedCondition.HIGH_ERROR_RATE,
        DegradedCondition.QUEUE_BACKLOG,
        DegradedCondition.RPC_UNHEALTHY,
    })


@dataclass
class AlertingConfig:
    """
    Configuration for admin alerts.
    """

    enabled: bool = True
    """Whether alerting is enabled."""

    telegram_enabled: bool = False
    """Whether to send Telegram alerts."""

    telegram_bot_token: Optional[str] = None
    """Bot token for the Telegram sender."""

    telegram_chat_id: Optional[str] = None
    """Admin chat for the Telegram sender."""

    degraded_conditions: FrozenSet[DegradedCondition] = field(
        default_factory=_default_degraded_conditions
    )
    """Degraded conditions that produce admin alerts."""

    repeat_alert_minutes: int = 5
    """Identical alerts are suppressed for this long."""


# ============================================================
# AGGREGATOR MONITOR
# ============================================================

@dataclass
class AggregatorMonitorConfig:
    """
    Configuration for aggregator stats monitoring.
    """

    enabled: bool = True
    """Whether the aggregator monitor task runs."""

    interval_seconds: float = 300.0
    """Time between aggregator stat collections."""

    error_rate_alert_threshold: float = 0.10
    """Error rate above which admins are alerted."""

    queue_length_threshold: int = 20
    """Queue length above which admins are alerted."""

    vault_conflict_warning_threshold: int = 10
    """Vault lock collisions per minute that raise the meltdown warning."""

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    """RPC endpoint probed for health."""

    rpc_timeout_seconds: float = 5.0
    """Timeout for the RPC health probe."""


# ============================================================
# RESUME POLICY
# ============================================================

@dataclass
class ResumePolicyConfig:
    """
    Pause/resume precedence policy.
    """

    enforce_admin_precedence: bool = True
    """
    Admin pauses are never overwritten by automatic pauses and
    can only be lifted with the same or higher privilege.
    """


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class MeltdownControllerConfig:
    """
    Master configuration for the Meltdown Controller.
    """

    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    """Meltdown thresholds (immutable)."""

    signals: SignalConfig = field(default_factory=SignalConfig)
    """Signal source windows and timeouts."""

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    """Control loop cadence."""

    gate: GateConfig = field(default_factory=GateConfig)
    """Mutual-exclusion gate."""

    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    """Admin alerting."""

    aggregator_monitor: AggregatorMonitorConfig = field(
        default_factory=AggregatorMonitorConfig
    )
    """Aggregator stats monitoring."""

    resume: ResumePolicyConfig = field(default_factory=ResumePolicyConfig)
    """Pause/resume precedence."""

    database_url: Optional[str] = None
    """Async SQLAlchemy URL for state, execution log and metrics."""

    price_feed_url: str = "https://api.coingecko.com/api/v3/simple/price"
    """Live price endpoint."""

    price_feed_ids: Dict[str, str] = field(default_factory=lambda: {"BTC": "bitcoin"})
    """Symbol to feed id mapping."""

    log_level: str = "INFO"
    """Logging level."""

    @classmethod
    def from_env(cls) -> "MeltdownControllerConfig":
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls(
            thresholds=ThresholdConfig(
                price_drop_threshold=float(os.getenv("PRICE_DROP_THRESHOLD", "0.10")),
                error_rate_threshold=float(os.getenv("ERROR_RATE_THRESHOLD", "0.15")),
                consecutive_fail_threshold=int(os.getenv("CONSECUTIVE_FAIL_THRESHOLD", "5")),
            ),
            database_url=os.getenv("DATABASE_URL"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

        symbol = os.getenv("REFERENCE_SYMBOL", "BTC")
        config.signals.reference_symbol = symbol
        config.signals.reference_metric = os.getenv("REFERENCE_METRIC", f"{symbol.lower()}_price")
        feed_id = os.getenv("REFERENCE_FEED_ID")
        if feed_id:
            config.price_feed_ids[symbol] = feed_id
        config.signals.source_timeout_seconds = float(
            os.getenv("SOURCE_TIMEOUT_SECONDS", "10")
        )
        config.scheduler.interval_seconds = float(
            os.getenv("MELTDOWN_CHECK_INTERVAL_SECONDS", "300")
        )
        config.scheduler.admin_gate_timeout_seconds = float(
            os.getenv("ADMIN_GATE_TIMEOUT_SECONDS", "5")
        )
        config.gate.backend = GateBackend(os.getenv("MELTDOWN_GATE_BACKEND", "memory"))
        config.gate.key = int(os.getenv("MELTDOWN_GATE_KEY", "12345"))

        config.alerting.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN")
        config.alerting.telegram_chat_id = os.getenv("TELEGRAM_CHAT_ID")
        config.alerting.telegram_enabled = bool(
            config.alerting.telegram_bot_token and config.alerting.telegram_chat_id
        )

        config.aggregator_monitor.error_rate_alert_threshold = float(
            os.getenv("AGGREGATOR_ERROR_RATE_ALERT_THRESHOLD", "0.1")
        )
        config.aggregator_monitor.queue_length_threshold = int(
            os.getenv("QUEUE_LENGTH_THRESHOLD", "20")
        )
        config.aggregator_monitor.rpc_url = os.getenv(
            "SOLANA_RPC_URL", config.aggregator_monitor.rpc_url
        )

        return config

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.scheduler.interval_seconds <= 0:
            errors.append("scheduler.interval_seconds must be positive")

        if self.signals.source_timeout_seconds <= 0:
            errors.append("signals.source_timeout_seconds must be positive")

        if self.signals.reference_symbol not in self.price_feed_ids:
            errors.append(
                f"no price feed id for reference symbol {self.signals.reference_symbol} "
                f"(set REFERENCE_FEED_ID)"
            )

        if self.scheduler.admin_gate_timeout_seconds < 0:
            errors.append("scheduler.admin_gate_timeout_seconds must not be negative")

        monitor = self.aggregator_monitor
        if not 0.0 <= monitor.error_rate_alert_threshold <= 1.0:
            errors.append("aggregator_monitor.error_rate_alert_threshold must be between 0 and 1")
        if monitor.queue_length_threshold < 0:
            errors.append("aggregator_monitor.queue_length_threshold must not be negative")

        if self.gate.backend == GateBackend.POSTGRES and not self.database_url:
            errors.append("database_url is required for the postgres gate backend")

        if self.alerting.telegram_enabled and not (
            self.alerting.telegram_bot_token and self.alerting.telegram_chat_id
        ):
            errors.append("telegram alerts need both bot token and chat id")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "thresholds": {
                "price_drop_threshold": self.thresholds.price_drop_threshold,
                "error_rate_threshold": self.thresholds.error_rate_threshold,
                "consecutive_fail_threshold": self.thresholds.consecutive_fail_threshold,
            },
            "scheduler": {
                "interval_seconds": self.scheduler.interval_seconds,
            },
            "gate": {
                "backend": self.gate.backend.value,
                "key": self.gate.key,
            },
        }


# ============================================================
# PRESET FACTORIES
# ============================================================

def get_default_config() -> MeltdownControllerConfig:
    """
    Get default configuration.

    Matches the production thresholds (10% drop, 15% error rate,
    5 failures in 2 minutes, every 5 minutes).
    """
    return MeltdownControllerConfig()


def get_testing_config() -> MeltdownControllerConfig:
    """
    Get testing configuration.

    Short timeouts, no external alerting.
    NOT FOR PRODUCTION.
    """
    config = MeltdownControllerConfig()

    config.signals.source_timeout_seconds = 1.0
    config.scheduler.interval_seconds = 0.05
    config.scheduler.overrun_margin_seconds = 0.5
    config.scheduler.admin_gate_timeout_seconds = 0.2
    config.gate.poll_interval_seconds = 0.01
    config.aggregator_monitor.enabled = False
    config.alerting.telegram_enabled = False

    return config


def load_config_from_dict(data: Dict[str, Any]) -> MeltdownControllerConfig:
    """
    Load configuration from dictionary.

    Args:
        data: Configuration dictionary

    Returns:
        MeltdownControllerConfig instance

    Raises:
        ConfigurationError: If a threshold is out of range
    """
    config = get_default_config()

    if "thresholds" in data:
        th = data["thresholds"]
        config.thresholds = ThresholdConfig(
            price_drop_threshold=th.get(
                "price_drop_threshold",
                config.thresholds.price_drop_threshold,
            ),
            error_rate_threshold=th.get(
                "error_rate_threshold",
                config.thresholds.error_rate_threshold,
            ),
            consecutive_fail_threshold=th.get(
                "consecutive_fail_threshold",
                config.thresholds.consecutive_fail_threshold,
            ),
        )

    if "scheduler" in data:
        sch = data["scheduler"]
        config.scheduler.interval_seconds = sch.get(
            "interval_seconds",
            config.scheduler.interval_seconds,
        )
        config.scheduler.admin_gate_timeout_seconds = sch.get(
            "admin_gate_timeout_seconds",
            config.scheduler.admin_gate_timeout_seconds,
        )

    if "signals" in data:
        sig = data["signals"]
        if "reference_symbol" in sig:
            config.signals.reference_symbol = sig["reference_symbol"]
            config.signals.reference_metric = f"{sig['reference_symbol'].lower()}_price"
        config.signals.reference_metric = sig.get(
            "reference_metric",
            config.signals.reference_metric,
        )
        config.signals.source_timeout_seconds = sig.get(
            "source_timeout_seconds",
            config.signals.source_timeout_seconds,
        )

    if "gate" in data:
        gate = data["gate"]
        config.gate.backend = GateBackend(gate.get("backend", config.gate.backend.value))
        config.gate.key = gate.get("key", config.gate.key)

    if "alerting" in data and "degraded_conditions" in data["alerting"]:
        config.alerting.degraded_conditions = frozenset(
            DegradedCondition(c) for c in data["alerting"]["degraded_conditions"]
        )

    if "price_feed_ids" in data:
        config.price_feed_ids.update(data["price_feed_ids"])

    if "database_url" in data:
        config.database_url = data["database_url"]

    return config
