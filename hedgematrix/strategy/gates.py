"""Entry gates — rank divergence, breakout and trend slope.

Each gate is a pure boolean check.  ``evaluate_gates`` runs all three and
decides pass/fail from the required subset only, so the full check map
is always available for logging.
"""

from dataclasses import dataclass

from hedgematrix.strategy.indicators import calculate_regression_slope
from hedgematrix.strategy.models import CandleData, CurrencyRank, TradeCandidate
from hedgematrix.strategy.ranking import rank_of

RANK_DIVERGENCE = "rank_divergence"
BREAKOUT = "breakout"
TREND_SLOPE = "trend_slope"

ALL_GATES: tuple[str, ...] = (RANK_DIVERGENCE, BREAKOUT, TREND_SLOPE)

GATE_MODE_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "all": ALL_GATES,
    "rank_only": (RANK_DIVERGENCE,),
}


@dataclass(frozen=True)
class GateResult:
    """Outcome of a gate evaluation."""

    passed: bool
    checks: dict[str, bool]
    required: tuple[str, ...]

    @property
    def failed(self) -> list[str]:
        """Required gates that did not pass."""
        return [g for g in self.required if not self.checks.get(g, False)]

    @property
    def label(self) -> str:
        """Short tag for the ledger, e.g. ``"G1+G2+G3"`` or ``"G1-RAW"``."""
        if self.required == (RANK_DIVERGENCE,):
            return "G1-RAW"
        return "+".join(f"G{ALL_GATES.index(g) + 1}" for g in self.required)


def required_gates(mode: str) -> tuple[str, ...]:
    """Gate names required by a deployment *mode* (``"all"`` or ``"rank_only"``).

    Raises ``KeyError`` for an unknown mode.
    """
    if mode not in GATE_MODE_REQUIREMENTS:
        raise KeyError(
            f"Unknown gate mode '{mode}'. "
            f"Available: {', '.join(GATE_MODE_REQUIREMENTS)}"
        )
    return GATE_MODE_REQUIREMENTS[mode]


def rank_divergence_gate(candidate: TradeCandidate, ranks: list[CurrencyRank]) -> bool:
    """Strong and weak currencies still hold the leg's rank slots."""
    return (
        rank_of(ranks, candidate.strong_currency) == candidate.leg.strong_rank
        and rank_of(ranks, candidate.weak_currency) == candidate.leg.weak_rank
    )


def breakout_gate(bars: list[CandleData], direction: str, lookback: int = 20) -> bool:
    """The last bar's close breaks the prior *lookback* bars' range.

    Needs ``lookback + 1`` bars; the current bar is excluded from the range.
    """
    if len(bars) < lookback + 1:
        return False
    prior = bars[-(lookback + 1) : -1]
    close = bars[-1].close
    if direction == "long":
        return close > max(b.high for b in prior)
    return close < min(b.low for b in prior)


def trend_slope_gate(bars: list[CandleData], direction: str, period: int = 20) -> bool:
    """OLS slope of the last *period* closes agrees with *direction*."""
    closes = [b.close for b in bars[-period:]]
    if len(closes) < 2:
        return False
    slope = calculate_regression_slope(closes)
    return slope > 0 if direction == "long" else slope < 0


def evaluate_gates(
    candidate: TradeCandidate,
    bars: list[CandleData],
    ranks: list[CurrencyRank],
    required: tuple[str, ...] = ALL_GATES,
    lookback: int = 20,
) -> GateResult:
    """Run every gate for *candidate* on *bars* (oldest-first, last = current)."""
    checks = {
        RANK_DIVERGENCE: rank_divergence_gate(candidate, ranks),
        BREAKOUT: breakout_gate(bars, candidate.direction, lookback),
        TREND_SLOPE: trend_slope_gate(bars, candidate.direction, lookback),
    }
    passed = all(checks[g] for g in required)
    return GateResult(passed=passed, checks=checks, required=tuple(required))
