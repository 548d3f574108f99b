"""Equity and drawdown tracking — pure math, no I/O.

One ``EquityState`` per risk variant: the backtest feeds every variant
the same trade stream so conservative and aggressive capital curves can
be compared from a single replay.
"""


class EquityState:
    """Tracks running equity, its peak and the worst drawdown seen.

    Args:
        initial_equity: Starting equity.
        risk_fraction: Equity fraction risked per trade by this variant.
    """

    def __init__(self, initial_equity: float, risk_fraction: float) -> None:
        if initial_equity <= 0:
            raise ValueError(
                f"initial_equity must be positive, got {initial_equity}"
            )
        self.initial_equity: float = initial_equity
        self.risk_fraction: float = risk_fraction
        self._equity: float = initial_equity
        self._peak_equity: float = initial_equity
        self._max_drawdown_pct: float = 0.0
        self.curve: list[float] = []

    # ── Mutation ─────────────────────────────────────────────────────────

    def apply(self, pnl: float) -> None:
        """Book a realised P&L and update peak and max drawdown."""
        self._equity += pnl
        if self._equity > self._peak_equity:
            self._peak_equity = self._equity
        if self.drawdown_pct > self._max_drawdown_pct:
            self._max_drawdown_pct = self.drawdown_pct

    def record_point(self) -> None:
        """Append the current equity (rounded to cents) to the curve."""
        self.curve.append(round(self._equity, 2))

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def equity(self) -> float:
        """Current equity."""
        return self._equity

    @property
    def peak_equity(self) -> float:
        """Highest equity recorded."""
        return self._peak_equity

    @property
    def drawdown_pct(self) -> float:
        """Current drawdown as a percentage of peak equity."""
        if self._peak_equity == 0:
            return 0.0
        return ((self._peak_equity - self._equity) / self._peak_equity) * 100.0

    @property
    def max_drawdown_pct(self) -> float:
        """Largest peak-to-trough drawdown percentage so far."""
        return self._max_drawdown_pct

    @property
    def return_pct(self) -> float:
        """Total return relative to the starting equity, in percent."""
        return ((self._equity - self.initial_equity) / self.initial_equity) * 100.0

    def summary(self) -> dict:
        return {
            "risk_fraction": self.risk_fraction,
            "final": round(self._equity, 2),
            "return_pct": round(self.return_pct, 1),
            "max_drawdown_pct": round(self._max_drawdown_pct, 1),
            "curve": list(self.curve),
        }
