"""
Meltdown Controller - Collaborator Interfaces.

============================================================
PURPOSE
============================================================
Abstract contracts for everything the control loop consumes
but does not own:

- PriceFeed:                 live price of the tracked asset
- ReferencePriceStore:       last recorded reference price
- ExecutionMetricsCollector: windowed execution stats
- ExecutionLog:              failed execution counts
- TradingStatePersistence:   durable trading state record
- AlertDispatcher:           admin notifications
- AdminIdentity:             privilege resolution
- AggregatorStatsSource:     raw aggregator counters
- RpcHealthCheck:            chain RPC liveness

Concrete implementations live in repository.py, feeds.py
and alerting.py.

============================================================
"""

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

from .types import (
    Actor,
    ExecutionWindowStats,
    PrivilegeLevel,
    TradingState,
)


class PriceFeed(ABC):
    """Live price source."""

    @abstractmethod
    async def current_price(self, symbol: str) -> float:
        """
        Get the current price of an asset.

        Raises on any fetch failure.
        """
        pass


class ReferencePriceStore(ABC):
    """Recorded reference prices."""

    @abstractmethod
    async def last_price(self, symbol: str) -> Optional[float]:
        """Get the last recorded price, or None when nothing is recorded."""
        pass


class ExecutionMetricsCollector(ABC):
    """Execution statistics over a trailing window."""

    @abstractmethod
    async def windowed_stats(self, window_seconds: int) -> ExecutionWindowStats:
        """Get total/failed execution counts and the meltdown warning flag."""
        pass


class ExecutionLog(ABC):
    """Execution history."""

    @abstractmethod
    async def count_failures_since(self, duration: timedelta) -> int:
        """Count FAILED executions within the trailing duration."""
        pass


class TradingStatePersistence(ABC):
    """
    Durable storage of the single trading state record.

    Writes are compare-and-set on the record version so that
    several processes can share one store.
    """

    @abstractmethod
    async def load(self) -> TradingState:
        """
        Load the trading state.

        Returns the initial (enabled) state when nothing is stored.
        Raises PersistenceError on storage failure.
        """
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        expected_version: int,
        new_state: TradingState,
    ) -> bool:
        """
        Replace the record if its version still equals expected_version.

        Returns False when another writer got there first.
        Raises PersistenceError on storage failure.
        """
        pass


class AlertDispatcher(ABC):
    """Admin notification channel (best effort)."""

    @abstractmethod
    async def notify_admins(self, title: str, message: str, priority: str = "high") -> None:
        """Send a message to admins. Must not raise."""
        pass


class AdminIdentity(ABC):
    """Resolves actor privilege for the pause/resume precedence rule."""

    @abstractmethod
    async def privilege_of(self, actor: Actor) -> PrivilegeLevel:
        """Get the privilege level of an actor."""
        pass


class StaticAdminIdentity(AdminIdentity):
    """
    AdminIdentity backed by a fixed mapping.

    Admin ids not in the mapping resolve to the default level.
    """

    def __init__(
        self,
        privileges: Optional[dict] = None,
        default: PrivilegeLevel = PrivilegeLevel.ADMIN,
    ):
        self._privileges = {str(k): v for k, v in (privileges or {}).items()}
        self._default = default

    async def privilege_of(self, actor: Actor) -> PrivilegeLevel:
        if not actor.is_admin:
            return PrivilegeLevel.SYSTEM
        return self._privileges.get(actor.admin_id, self._default)


class AggregatorStatsSource(ABC):
    """Raw aggregator counters for the aggregator monitor."""

    @abstractmethod
    async def trades_since(self, seconds: int) -> int:
        """Count executions in the trailing window."""
        pass

    @abstractmethod
    async def execution_counts(self, seconds: int) -> ExecutionWindowStats:
        """Get total and failed executions in the trailing window."""
        pass

    @abstractmethod
    async def avg_success_latency_ms(self, seconds: int) -> float:
        """Average latency of successful executions (0 when none)."""
        pass

    @abstractmethod
    async def queue_length(self) -> int:
        """Trades waiting to be executed."""
        pass

    @abstractmethod
    async def vault_conflicts_since(self, seconds: int) -> int:
        """Vault lock collisions in the trailing window."""
        pass


class RpcHealthCheck(ABC):
    """Chain RPC liveness probe."""

    @abstractmethod
    async def is_healthy(self) -> bool:
        """True when the RPC endpoint answers. Must not raise."""
        pass
