"""
Meltdown Controller - Signal Sources Package.

============================================================
PURPOSE
============================================================
Provides all signal source implementations.

SOURCES (in reason priority order):
- MarketShockDetector: reference asset price drop
- AggregatorHealthDetector: windowed execution error rate
- FailureBurstDetector: failed executions in a short window

============================================================
"""

from .base import (
    BaseSignalSource,
    SignalSourceMeta,
)
from .market_shock import MarketShockDetector
from .aggregator_health import AggregatorHealthDetector
from .failure_burst import FailureBurstDetector


__all__ = [
    "BaseSignalSource",
    "SignalSourceMeta",
    "MarketShockDetector",
    "AggregatorHealthDetector",
    "FailureBurstDetector",
]
