"""Stop-loss and take-profit calculation — pure math, no I/O.

Entry risk (used by backtest and live entries):
    stop distance = max(2 × ATR(14), leg minimum stop in price units)
    TP distance   = stop distance × leg reward ratio

Dynamic stop (used by the exit monitor on every tick):
    LONG:  stop = trend reference − max(5 pips, 25 % of ATR)
    SHORT: stop = trend reference + max(5 pips, 25 % of ATR)
    A stop on the wrong side of entry is replaced by a fixed 12-pip stop.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from hedgematrix.errors import SanityViolation
from hedgematrix.strategy.indicator_feed import IndicatorSnapshot
from hedgematrix.strategy.models import HIGH_VOL_PAIRS, MED_VOL_PAIRS, HedgeLeg, pip_value

logger = logging.getLogger("hedgematrix.risk")

ATR_STOP_MULTIPLIER = 2.0
SANITY_FALLBACK_PIPS = 12.0
MIN_BUFFER_PIPS = 5.0
ATR_BUFFER_FRACTION = 0.25


@dataclass(frozen=True)
class RiskLevels:
    """Computed stop-loss and take-profit for an entry."""

    sl: float
    tp: float
    stop_distance: float  # price units
    tp_distance: float  # price units

    def stop_pips(self, pip: float) -> float:
        return self.stop_distance / pip


@dataclass(frozen=True)
class DynamicStop:
    """A recomputed stop level and where it came from."""

    price: float
    distance_pips: float
    source: str  # "trend+atr", "fallback" or "sanity_fallback"


def calculate_hedge_risk(
    entry_price: float,
    direction: str,
    atr: float,
    leg: HedgeLeg,
    pip: float = 0.0001,
) -> RiskLevels:
    """Calculate stop and target prices for a leg entry.

    Args:
        entry_price: Trade entry (or limit) price.
        direction: ``"long"`` or ``"short"``.
        atr: Current ATR(14) of the instrument.
        leg: Leg descriptor supplying the stop floor and reward ratio.
        pip: Pip size of the instrument.

    Raises:
        ValueError: If *direction* is not ``"long"`` or ``"short"``.
    """
    stop_distance = max(ATR_STOP_MULTIPLIER * atr, leg.min_stop_pips * pip)
    tp_distance = stop_distance * leg.tp_ratio

    if direction == "long":
        sl = entry_price - stop_distance
        tp = entry_price + tp_distance
    elif direction == "short":
        sl = entry_price + stop_distance
        tp = entry_price - tp_distance
    else:
        raise ValueError(f"direction must be 'long' or 'short', got '{direction}'")

    return RiskLevels(sl=sl, tp=tp, stop_distance=stop_distance, tp_distance=tp_distance)


def fallback_stop_pips(instrument: str) -> float:
    """Stop distance used when no indicator data is available."""
    if instrument in HIGH_VOL_PAIRS:
        return 12.0
    if instrument in MED_VOL_PAIRS:
        return 9.0
    return 7.0


def compute_dynamic_stop(
    direction: str,
    entry_price: float,
    instrument: str,
    indicators: Optional[IndicatorSnapshot],
) -> DynamicStop:
    """Recompute the stop from the trend reference and ATR buffer.

    Never raises for a bad level: a stop on the wrong side of entry is
    logged as a ``SanityViolation`` and replaced by a 12-pip stop.
    """
    pip = pip_value(instrument)
    sign = -1.0 if direction == "long" else 1.0

    if indicators is None:
        pips = fallback_stop_pips(instrument)
        return DynamicStop(entry_price + sign * pips * pip, pips, "fallback")

    buffer = max(MIN_BUFFER_PIPS * pip, ATR_BUFFER_FRACTION * indicators.atr)
    stop = indicators.trend_stop_reference + sign * buffer

    wrong_side = stop >= entry_price if direction == "long" else stop <= entry_price
    if wrong_side:
        violation = SanityViolation(
            f"{instrument} {direction}: stop {stop:.5f} on wrong side of entry {entry_price:.5f}"
        )
        logger.warning("%s — using %.0f-pip fallback", violation, SANITY_FALLBACK_PIPS)
        return DynamicStop(
            entry_price + sign * SANITY_FALLBACK_PIPS * pip,
            SANITY_FALLBACK_PIPS,
            "sanity_fallback",
        )

    return DynamicStop(stop, abs(entry_price - stop) / pip, "trend+atr")
