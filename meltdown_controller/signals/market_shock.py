"""
Meltdown Controller - Market Shock Detector.

============================================================
PURPOSE
============================================================
Detects a flash crash in the tracked reference asset.

    drop = (reference_price - current_price) / reference_price

TRIGGERS WHEN:
- drop >= price_drop_threshold

NOT TRIGGERED (insufficient data, no error):
- No recorded reference price
- Reference price <= 0

NOT TRIGGERED (error attached):
- Live price feed failure

============================================================
"""

from typing import Optional

from ..clock import ClockProtocol
from ..config import ThresholdConfig, SignalConfig
from ..interfaces import PriceFeed, ReferencePriceStore
from ..types import (
    EvaluationContext,
    SignalSourceKind,
    SignalVerdict,
    SourceEvaluationError,
)
from .base import BaseSignalSource, SignalSourceMeta


class MarketShockDetector(BaseSignalSource):
    """
    Compares the last recorded reference price with the live price.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        reference_prices: ReferencePriceStore,
        thresholds: ThresholdConfig,
        signal_config: Optional[SignalConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        signal_config = signal_config or SignalConfig()
        super().__init__(
            timeout_seconds=signal_config.source_timeout_seconds,
            clock=clock,
        )
        self._price_feed = price_feed
        self._reference_prices = reference_prices
        self._thresholds = thresholds
        self._symbol = signal_config.reference_symbol

    @property
    def meta(self) -> SignalSourceMeta:
        return SignalSourceMeta(
            name="MarketShockDetector",
            kind=SignalSourceKind.MARKET,
            description=f"{self._symbol} price drop versus last recorded price",
        )

    async def _evaluate(self, ctx: EvaluationContext) -> SignalVerdict:
        old_price = await self._reference_prices.last_price(self._symbol)

        if old_price is None or old_price <= 0:
            return self._verdict(
                triggered=False,
                reason=f"No usable reference price for {self._symbol}",
                metrics={"reference_price": old_price},
            )

        try:
            current_price = await self._price_feed.current_price(self._symbol)
        except Exception as e:
            raise SourceEvaluationError(
                SignalSourceKind.MARKET,
                f"price feed failed for {self._symbol}: {e}",
                e,
            ) from e

        if current_price is None:
            raise SourceEvaluationError(
                SignalSourceKind.MARKET,
                f"price feed returned no price for {self._symbol}",
            )

        drop = (old_price - current_price) / old_price
        metrics = {
            "reference_price": old_price,
            "current_price": current_price,
            "drop": drop,
            "threshold": self._thresholds.price_drop_threshold,
        }

        if drop >= self._thresholds.price_drop_threshold:
            return self._verdict(
                triggered=True,
                reason=(
                    f"{self._symbol} price dropped {drop * 100:.2f}% "
                    f"({old_price:,.2f} -> {current_price:,.2f})"
                ),
                metrics=metrics,
            )

        return self._verdict(
            triggered=False,
            reason=f"{self._symbol} price change {-drop * 100:+.2f}% within limits",
            metrics=metrics,
        )
