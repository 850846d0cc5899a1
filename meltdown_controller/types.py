"""
Meltdown Controller - Type Definitions.

============================================================
AUTHORITY
============================================================
The trading state defined here is the single flag the
execution path consults before admitting any new trade.

When the controller pauses trading, nothing new is admitted
until an actor with enough privilege resumes it.

============================================================
CORE PRINCIPLE
============================================================
An unreachable data source is not proof of a meltdown,
and it is never silently ignored either.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional, List, Dict, Any, Tuple


# ============================================================
# ACTORS & PRIVILEGE
# ============================================================

class ActorKind(str, Enum):
    """Who initiated a state change."""

    SYSTEM = "SYSTEM"
    """The automatic meltdown scanner."""

    ADMIN = "ADMIN"
    """A human administrator."""


class PrivilegeLevel(IntEnum):
    """
    Privilege ranking used by the pause/resume precedence rule.

    Lifting a pause requires the same or a higher level than the
    level recorded when the pause was set.
    """

    NONE = 0
    """Unknown or unauthorized actor."""

    SYSTEM = 1
    """Automatic scanner."""

    ADMIN = 2
    """Regular administrator."""

    SUPERADMIN = 3
    """Super administrator."""


@dataclass(frozen=True)
class Actor:
    """An actor driving a trading state transition."""

    kind: ActorKind
    admin_id: Optional[str] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(kind=ActorKind.SYSTEM)

    @classmethod
    def admin(cls, admin_id: str) -> "Actor":
        return cls(kind=ActorKind.ADMIN, admin_id=str(admin_id))

    @property
    def is_admin(self) -> bool:
        return self.kind == ActorKind.ADMIN

    def __str__(self) -> str:
        if self.is_admin:
            return f"ADMIN({self.admin_id})"
        return self.kind.value


# ============================================================
# TRADING STATE
# ============================================================

@dataclass(frozen=True)
class TradingState:
    """
    The global trading-enabled record.

    Exactly one live instance exists. It is only replaced through
    the TradingStateStore transition protocol.
    """

    enabled: bool
    """Whether new trades may be admitted."""

    reason: str
    """Reason for the last transition."""

    changed_at: datetime
    """When the last transition happened (UTC, non-decreasing)."""

    changed_by: Actor
    """Actor behind the last transition."""

    privilege: PrivilegeLevel = PrivilegeLevel.SYSTEM
    """Privilege of the actor behind the last transition."""

    version: int = 0
    """Compare-and-set counter, incremented on every write."""

    @classmethod
    def initial(cls, now: Optional[datetime] = None) -> "TradingState":
        """State used when no record has been persisted yet."""
        return cls(
            enabled=True,
            reason="Initial state",
            changed_at=now or datetime.now(timezone.utc),
            changed_by=Actor.system(),
            privilege=PrivilegeLevel.SYSTEM,
            version=0,
        )

    @property
    def is_paused(self) -> bool:
        return not self.enabled

    @property
    def paused_by_admin(self) -> bool:
        return self.is_paused and self.changed_by.is_admin

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enabled": self.enabled,
            "reason": self.reason,
            "changed_at": self.changed_at.isoformat(),
            "changed_by": str(self.changed_by),
            "privilege": self.privilege.name,
            "version": self.version,
        }


class PauseOutcome(str, Enum):
    """What a pause request did to the trading state."""

    PAUSED = "PAUSED"
    """Trading went from enabled to disabled."""

    REASON_UPDATED = "REASON_UPDATED"
    """Already paused; reason and actor were replaced."""

    UNCHANGED = "UNCHANGED"
    """Already paused by a higher-privilege actor; nothing written."""


# ============================================================
# SIGNALS
# ============================================================

class SignalSourceKind(str, Enum):
    """
    Risk dimensions feeding the meltdown decision.

    Declaration order is the reason priority order.
    """

    MARKET = "MARKET"
    """Reference asset price shock."""

    AGGREGATOR = "AGGREGATOR"
    """Execution error rate and aggregator warnings."""

    FAILURE_BURST = "FAILURE_BURST"
    """Burst of failed executions in a short window."""

    @property
    def priority(self) -> int:
        return list(SignalSourceKind).index(self)


@dataclass
class EvaluationContext:
    """Per-cycle context handed to every signal source."""

    cycle_id: str
    started_at: datetime


@dataclass
class SignalVerdict:
    """
    Verdict of one signal source for one cycle.

    Never persisted. A source that failed to evaluate reports
    triggered=False with eval_error set.
    """

    source: SignalSourceKind
    triggered: bool
    reason: str
    evaluated_at: datetime
    eval_error: Optional["SourceEvaluationError"] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "triggered": self.triggered,
            "reason": self.reason,
            "evaluated_at": self.evaluated_at.isoformat(),
            "error": str(self.eval_error) if self.eval_error else None,
            "metrics": self.metrics,
        }


@dataclass
class MeltdownDecision:
    """Aggregate of all verdicts for one cycle."""

    triggered: bool
    reasons: List[str]
    source_errors: List[Tuple[SignalSourceKind, "SourceEvaluationError"]]
    verdicts: List[SignalVerdict] = field(default_factory=list)
    evaluated_at: Optional[datetime] = None

    @property
    def has_errors(self) -> bool:
        return bool(self.source_errors)

    def summary(self) -> str:
        """One-line reason text used for the pause record."""
        return "; ".join(self.reasons)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "reasons": list(self.reasons),
            "source_errors": [
                {"source": source.value, "error": str(error)}
                for source, error in self.source_errors
            ],
            "verdicts": [v.to_dict() for v in self.verdicts],
        }


@dataclass
class ExecutionWindowStats:
    """Execution counts over a trailing window."""

    total: int
    failed: int
    meltdown_warning: bool = False

    @property
    def error_rate(self) -> float:
        # No executions is not evidence of failure
        if self.total <= 0:
            return 0.0
        return self.failed / self.total


# ============================================================
# GATE
# ============================================================

@dataclass(frozen=True)
class LockToken:
    """Proof of exclusive ownership of the mutual-exclusion gate."""

    gate_key: int
    token_id: str
    holder: str
    acquired_at: datetime


# ============================================================
# CONTROL LOOP
# ============================================================

class CyclePhase(str, Enum):
    """Control loop state machine phases."""

    IDLE = "IDLE"
    ACQUIRING = "ACQUIRING"
    EVALUATING = "EVALUATING"
    TRANSITIONING = "TRANSITIONING"
    SKIPPED = "SKIPPED"


class CycleOutcome(str, Enum):
    """How one control loop cycle ended."""

    NO_MELTDOWN = "NO_MELTDOWN"
    MELTDOWN = "MELTDOWN"
    SKIPPED = "SKIPPED"
    ABORTED = "ABORTED"
    OVERRUN = "OVERRUN"


@dataclass
class CycleReport:
    """Result of one control loop cycle."""

    cycle_id: str
    outcome: CycleOutcome
    started_at: datetime
    duration_seconds: float = 0.0
    decision: Optional[MeltdownDecision] = None
    pause_outcome: Optional[PauseOutcome] = None
    error: Optional[str] = None

    @property
    def transitioned(self) -> bool:
        return self.pause_outcome in (PauseOutcome.PAUSED, PauseOutcome.REASON_UPDATED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "decision": self.decision.to_dict() if self.decision else None,
            "pause_outcome": self.pause_outcome.value if self.pause_outcome else None,
            "error": self.error,
        }


# ============================================================
# ADMIN OVERRIDE RESULT
# ============================================================

@dataclass
class OverrideResult:
    """Explicit result of a manual pause/resume."""

    success: bool
    state: Optional[TradingState] = None
    error: Optional["MeltdownControllerError"] = None

    @property
    def message(self) -> str:
        if self.success:
            return "OK"
        return str(self.error) if self.error else "Unknown error"


# ============================================================
# ERRORS
# ============================================================

class MeltdownControllerError(Exception):
    """Base exception for the Meltdown Controller."""
    pass


class ConfigurationError(MeltdownControllerError):
    """Raised when configuration values are out of range."""
    pass


class SourceEvaluationError(MeltdownControllerError):
    """A signal source failed to evaluate."""

    def __init__(self, source: SignalSourceKind, message: str, cause: Optional[BaseException] = None):
        self.source = source
        self.cause = cause
        super().__init__(f"{source.value} evaluation failed: {message}")


class GateBusyError(MeltdownControllerError):
    """The mutual-exclusion gate is held by someone else."""

    def __init__(self, gate_key: int, holder: str = ""):
        self.gate_key = gate_key
        self.holder = holder
        super().__init__(f"Gate {gate_key} is busy")


class GateError(MeltdownControllerError):
    """Gate misuse (releasing a token that is not the holder) or lock backend failure."""
    pass


class PermissionDeniedError(MeltdownControllerError):
    """Resume attempted with insufficient privilege."""

    def __init__(self, actor: Actor, required: PrivilegeLevel, actual: PrivilegeLevel):
        self.actor = actor
        self.required = required
        self.actual = actual
        super().__init__(
            f"{actor} has {actual.name} privilege, {required.name} required"
        )


class PersistenceError(MeltdownControllerError):
    """Trading state read/write failed; previous state stays authoritative."""
    pass


class ScheduleOverrunError(MeltdownControllerError):
    """A cycle exceeded its wall-clock budget."""

    def __init__(self, budget_seconds: float):
        self.budget_seconds = budget_seconds
        super().__init__(f"Cycle exceeded its {budget_seconds:.1f}s budget")


class TradingPausedError(MeltdownControllerError):
    """A protected operation was called while trading is paused."""
    pass
