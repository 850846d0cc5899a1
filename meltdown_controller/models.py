"""
Meltdown Controller - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for:
- The single trading state record (written by the controller)
- Trade executions (read: error rate, failure bursts, latency)
- Global metrics (read: recorded reference prices)
- Aggregator conflicts (read: vault lock collisions)

All timestamps are stored as UTC.

============================================================
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column


Base = declarative_base()


TRADING_STATE_ROW_ID = 1


# ============================================================
# TRADING STATE MODEL
# ============================================================

class TradingStateModel(Base):
    """
    Persisted global trading state.

    Exactly one row (id = 1). Every write bumps `version`.
    """

    __tablename__ = "trading_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )
    """Whether new trades may be admitted."""

    reason: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    """Reason for the last transition."""

    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    """When the last transition happened."""

    changed_by_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    """SYSTEM or ADMIN."""

    changed_by_admin_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    """Admin id when changed_by_kind is ADMIN."""

    privilege: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    """Privilege level of the actor behind the last transition."""

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    """Compare-and-set counter."""


# ============================================================
# TRADE EXECUTION MODEL
# ============================================================

class TradeExecutionModel(Base):
    """
    One executed (or attempted) trade.

    Written by the execution path, read here.
    """

    __tablename__ = "trade_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    from_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    to_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    """SUCCESS, FAILED or PENDING."""

    slippage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    latency_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    """Execution start to success."""

    tx_signature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_trade_executions_status_executed_at", "status", "executed_at"),
        Index("ix_trade_executions_executed_at", "executed_at"),
    )


# ============================================================
# GLOBAL METRIC MODEL
# ============================================================

class GlobalMetricModel(Base):
    """
    Recorded global metric sample (e.g. btc_price).
    """

    __tablename__ = "global_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    metric: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    """Metric name."""

    value: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_global_metrics_metric_timestamp", "metric", "timestamp"),
    )


# ============================================================
# AGGREGATOR CONFLICT MODEL
# ============================================================

class AggregatorConflictModel(Base):
    """
    One vault lock collision seen by the trade aggregator.
    """

    __tablename__ = "aggregator_conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    vault_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
