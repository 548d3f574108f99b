"""Trailing stop — breakeven lock once a trade has made most of its target.

Rule:
  - Progress toward TP ≥ trigger ratio (0.60, or 0.40 under an early
    regime warning) → stop moves to breakeven + 1 pip.
  - The stop only ever tightens.
"""

DEFAULT_TRIGGER = 0.60
EARLY_WARNING_TRIGGER = 0.40
BREAKEVEN_OFFSET_PIPS = 1.0


class TrailingStop:
    """Tracks the breakeven lock for a single position.

    Args:
        entry_price: Original entry price.
        take_profit: Take-profit price.
        direction: ``"long"`` or ``"short"``.
        pip: Pip size of the instrument.
    """

    def __init__(
        self,
        entry_price: float,
        take_profit: float,
        direction: str,
        pip: float = 0.0001,
    ) -> None:
        self.entry_price = entry_price
        self.take_profit = take_profit
        self.direction = direction
        self.pip = pip
        self._target = abs(take_profit - entry_price)

    @property
    def breakeven_stop(self) -> float:
        """Breakeven + 1 pip on the profit side of entry."""
        offset = BREAKEVEN_OFFSET_PIPS * self.pip
        if self.direction == "long":
            return self.entry_price + offset
        return self.entry_price - offset

    def progress(self, price: float) -> float:
        """Fraction of the TP distance covered at *price* (negative when losing)."""
        if self._target == 0:
            return 0.0
        if self.direction == "long":
            return (price - self.entry_price) / self._target
        return (self.entry_price - price) / self._target

    def update(
        self,
        price: float,
        current_sl: float,
        early_warning: bool = False,
    ) -> float | None:
        """Return the new stop if *price* arms the trail, ``None`` if no change."""
        trigger = EARLY_WARNING_TRIGGER if early_warning else DEFAULT_TRIGGER
        if self.progress(price) < trigger:
            return None

        new_sl = self.breakeven_stop
        if self.direction == "long" and new_sl > current_sl:
            return new_sl
        if self.direction == "short" and new_sl < current_sl:
            return new_sl
        return None

    def is_hit(self, price: float, stop: float) -> bool:
        """``True`` when *price* sits at or through *stop*."""
        if self.direction == "long":
            return price <= stop
        return price >= stop
