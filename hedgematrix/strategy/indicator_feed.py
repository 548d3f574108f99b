"""Indicator feed — trend-stop reference and ATR for the dynamic stop-loss.

Defines the interface the exit monitor consumes, plus a feed that derives
the values from broker candles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from hedgematrix.strategy.indicators import calculate_atr, calculate_supertrend
from hedgematrix.strategy.models import CandleData

logger = logging.getLogger("hedgematrix")


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Inputs to the dynamic stop: a trend-following reference level and ATR."""

    trend_stop_reference: float
    atr: float


@runtime_checkable
class IndicatorFeed(Protocol):
    """Source of per-instrument indicator snapshots."""

    async def get_indicators(
        self, instrument: str, timeframe: str
    ) -> Optional[IndicatorSnapshot]:
        """Return the latest snapshot, or ``None`` when unavailable."""
        ...


class CandleIndicatorFeed:
    """Computes Supertrend(10, 3) and ATR(14) from broker candles.

    Args:
        broker: Anything with an async ``fetch_candles`` (``OandaClient``
            or a test double).
        count: Candles requested per lookup.
    """

    def __init__(self, broker, count: int = 60) -> None:
        self._broker = broker
        self._count = count

    async def get_indicators(
        self, instrument: str, timeframe: str = "M15"
    ) -> Optional[IndicatorSnapshot]:
        try:
            raw = await self._broker.fetch_candles(instrument, timeframe, count=self._count)
        except Exception as exc:
            logger.warning("Indicator fetch failed for %s %s: %s", instrument, timeframe, exc)
            return None

        candles = [
            CandleData(c.time, c.open, c.high, c.low, c.close, c.volume)
            for c in raw
            if c.complete
        ]
        try:
            supertrend, _side = calculate_supertrend(candles)
            atr = calculate_atr(candles)
        except ValueError as exc:
            logger.debug("Indicators unavailable for %s: %s", instrument, exc)
            return None
        return IndicatorSnapshot(trend_stop_reference=supertrend, atr=atr)
