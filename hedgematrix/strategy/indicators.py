"""Technical indicators — ATR, regression slope, volume efficiency, Supertrend.

Pure functions, no I/O.
"""

import numpy as np

from hedgematrix.strategy.models import CandleData


def _true_ranges(candles: list[CandleData]) -> list[float]:
    """True range for every candle after the first."""
    true_ranges: list[float] = []
    for i in range(1, len(candles)):
        high = candles[i].high
        low = candles[i].low
        prev_close = candles[i - 1].close
        true_ranges.append(
            max(high - low, abs(high - prev_close), abs(low - prev_close))
        )
    return true_ranges


def calculate_atr(candles: list[CandleData], period: int = 14) -> float:
    """Calculate the Average True Range over *period* candles.

    Uses the standard True Range definition:
        TR = max(high - low, |high - prev_close|, |low - prev_close|)

    Requires at least ``period + 1`` candles (need a previous close for TR).
    Returns the simple average of the last *period* true ranges.

    Raises ``ValueError`` if insufficient data.
    """
    if len(candles) < period + 1:
        raise ValueError(
            f"Need at least {period + 1} candles for ATR({period}), "
            f"got {len(candles)}"
        )
    recent = _true_ranges(candles)[-period:]
    return sum(recent) / len(recent)


def calculate_regression_slope(closes: list[float]) -> float:
    """Ordinary least-squares slope of *closes* against their index.

    Raises ``ValueError`` for fewer than 2 values.
    """
    if len(closes) < 2:
        raise ValueError(f"Need at least 2 closes for a slope, got {len(closes)}")
    x = np.arange(len(closes), dtype=float)
    y = np.asarray(closes, dtype=float)
    x_mean = x.mean()
    return float(((x - x_mean) * (y - y.mean())).sum() / ((x - x_mean) ** 2).sum())


def volume_efficiency(candle: CandleData) -> float:
    """Volume traded per unit of price range; 0 for a zero-range bar."""
    price_range = candle.high - candle.low
    if price_range == 0:
        return 0.0
    return candle.volume / price_range


def calculate_supertrend(
    candles: list[CandleData],
    period: int = 10,
    multiplier: float = 3.0,
) -> tuple[float, str]:
    """Calculate the latest Supertrend line value and its side.

    Bands are ``hl2 ± multiplier × ATR(period)``; the final bands only
    tighten while price stays inside them, and the line flips sides when
    the close crosses it.

    Returns:
        ``(value, side)`` where *side* is ``"bullish"`` when the line sits
        below price and ``"bearish"`` when it sits above.

    Raises ``ValueError`` if fewer than ``period + 1`` candles are provided.
    """
    if len(candles) < period + 1:
        raise ValueError(
            f"Need at least {period + 1} candles for Supertrend({period}), "
            f"got {len(candles)}"
        )

    trs = _true_ranges(candles)
    final_upper = final_lower = supertrend = float("nan")
    side = "bullish"

    for i in range(period, len(candles)):
        atr = sum(trs[i - period : i]) / period
        hl2 = (candles[i].high + candles[i].low) / 2.0
        basic_upper = hl2 + multiplier * atr
        basic_lower = hl2 - multiplier * atr
        prev_close = candles[i - 1].close
        close = candles[i].close

        if i == period:
            final_upper, final_lower = basic_upper, basic_lower
            side = "bullish" if close >= hl2 else "bearish"
        else:
            if basic_upper < final_upper or prev_close > final_upper:
                final_upper = basic_upper
            if basic_lower > final_lower or prev_close < final_lower:
                final_lower = basic_lower
            if side == "bearish" and close > final_upper:
                side = "bullish"
            elif side == "bullish" and close < final_lower:
                side = "bearish"

        supertrend = final_lower if side == "bullish" else final_upper

    return supertrend, side
