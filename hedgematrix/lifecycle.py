"""Trade lifecycle — the open → closed state machine shared by backtest and live.

Owns every open position (at most one per leg, at most ``MAX_POSITIONS``
overall), the exit-rule priority order, friction-adjusted results and the
per-leg cooldown that follows a close.

Time is an opaque, monotonically increasing number supplied by the
caller: the bar index in a backtest, epoch seconds in live trading.
"""

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from hedgematrix.errors import SlotOccupied
from hedgematrix.risk.sl_tp import DynamicStop, RiskLevels
from hedgematrix.risk.trailing_stop import TrailingStop
from hedgematrix.strategy.models import MAX_POSITIONS, CandleData, TradeCandidate, pip_value

logger = logging.getLogger("hedgematrix.lifecycle")

FRICTION_PIPS = 1.5


class PositionState(str, Enum):
    CANDIDATE = "candidate"
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


class ExitReason(str, Enum):
    TP = "TP"
    TRAILING = "TRAILING"
    SL = "SL"
    TIME = "TIME"
    EXTERNAL = "EXTERNAL"
    END_OF_DATA = "END_OF_DATA"


@dataclass
class OpenPosition:
    """A live or simulated position owned by the lifecycle manager."""

    leg_id: str
    instrument: str
    direction: str
    entry_price: float
    stop_price: float
    take_profit: float
    entry_marker: float
    units: dict[str, int]
    entry_time: str = ""
    state: PositionState = PositionState.OPEN
    trailing_active: bool = False
    ledger_id: Optional[int] = None

    @property
    def pip(self) -> float:
        return pip_value(self.instrument)

    def pips_at(self, price: float) -> float:
        """Direction-adjusted unrealised pips at *price* (before friction)."""
        if self.direction == "long":
            return (price - self.entry_price) / self.pip
        return (self.entry_price - price) / self.pip

    @property
    def target_pips(self) -> float:
        return abs(self.take_profit - self.entry_price) / self.pip


@dataclass(frozen=True)
class ClosedTrade:
    """Immutable record of a finished trade."""

    leg_id: str
    instrument: str
    direction: str
    entry_price: float
    exit_price: float
    entry_marker: float
    exit_marker: float
    reason: ExitReason
    pips: float
    pnl: dict[str, float] = field(default_factory=dict)
    entry_time: str = ""
    exit_time: str = ""

    @property
    def is_win(self) -> bool:
        return self.pips > 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["reason"] = self.reason.value
        data["result"] = "win" if self.is_win else "loss"
        return data


@dataclass(frozen=True)
class ExitDecision:
    """Result of one exit evaluation."""

    reason: Optional[ExitReason]
    exit_price: float
    pnl_pips: float
    detail: str = ""

    @property
    def should_close(self) -> bool:
        return self.reason is not None


class TradeLifecycleManager:
    """Open-position bookkeeping and exit rules.

    Args:
        max_positions: Concurrent position cap across all legs.
        cooldown: Time units a leg waits after a close before re-entering.
        friction_pips: Round-trip cost subtracted from every result.
        max_hold: Optional time stop; ``None`` disables it.
    """

    def __init__(
        self,
        max_positions: int = MAX_POSITIONS,
        cooldown: float = 2,
        friction_pips: float = FRICTION_PIPS,
        max_hold: Optional[float] = None,
    ) -> None:
        self._max_positions = max_positions
        self._cooldown = cooldown
        self._friction_pips = friction_pips
        self._max_hold = max_hold
        self._positions: dict[str, OpenPosition] = {}
        self._cooldown_until: dict[str, float] = {}

    # ── Slot queries ─────────────────────────────────────────────────────

    @property
    def positions(self) -> list[OpenPosition]:
        """Open positions in the order they were opened."""
        return list(self._positions.values())

    @property
    def open_count(self) -> int:
        return len(self._positions)

    def is_open(self, leg_id: str) -> bool:
        return leg_id in self._positions

    def in_cooldown(self, leg_id: str, now: float) -> bool:
        until = self._cooldown_until.get(leg_id)
        return until is not None and now < until

    def is_eligible(self, leg_id: str, now: float) -> bool:
        """A leg may produce a candidate: unopened and out of cooldown."""
        return not self.is_open(leg_id) and not self.in_cooldown(leg_id, now)

    def can_open(self) -> bool:
        return len(self._positions) < self._max_positions

    def start_cooldown(self, leg_id: str, now: float) -> None:
        self._cooldown_until[leg_id] = now + self._cooldown

    # ── Transitions ──────────────────────────────────────────────────────

    def open_position(
        self,
        candidate: TradeCandidate,
        entry_price: float,
        risk: RiskLevels,
        units: dict[str, int],
        now: float,
        time: str = "",
        state: PositionState = PositionState.OPEN,
    ) -> OpenPosition:
        """Promote a gated candidate to a position.

        Raises:
            SlotOccupied: If the leg is already held or the cap is reached.
        """
        leg_id = candidate.leg.id
        if leg_id in self._positions:
            raise SlotOccupied(f"{leg_id} already holds {self._positions[leg_id].instrument}")
        if not self.can_open():
            raise SlotOccupied(f"position cap of {self._max_positions} reached")

        position = OpenPosition(
            leg_id=leg_id,
            instrument=candidate.instrument,
            direction=candidate.direction,
            entry_price=entry_price,
            stop_price=risk.sl,
            take_profit=risk.tp,
            entry_marker=now,
            units=dict(units),
            entry_time=time,
            state=state,
        )
        self._positions[leg_id] = position
        logger.debug(
            "Opened %s %s %s @ %.5f SL=%.5f TP=%.5f",
            leg_id, candidate.instrument, candidate.direction,
            entry_price, risk.sl, risk.tp,
        )
        return position

    def adopt(self, position: OpenPosition) -> None:
        """Track a position restored from the ledger (live restart)."""
        self._positions[position.leg_id] = position

    def close_position(
        self,
        position: OpenPosition,
        exit_price: float,
        reason: ExitReason,
        now: float,
        time: str = "",
    ) -> ClosedTrade:
        """Close *position* exactly once and start its leg's cooldown."""
        if position.state is PositionState.CLOSED:
            raise ValueError(f"{position.leg_id} position is already closed")

        pips = position.pips_at(exit_price) - self._friction_pips
        pnl = {
            variant: pips * position.pip * units
            for variant, units in position.units.items()
        }
        position.state = PositionState.CLOSED
        self._positions.pop(position.leg_id, None)
        self.start_cooldown(position.leg_id, now)

        return ClosedTrade(
            leg_id=position.leg_id,
            instrument=position.instrument,
            direction=position.direction,
            entry_price=position.entry_price,
            exit_price=exit_price,
            entry_marker=position.entry_marker,
            exit_marker=now,
            reason=reason,
            pips=pips,
            pnl=pnl,
            entry_time=position.entry_time,
            exit_time=time,
        )

    # ── Exit rules ───────────────────────────────────────────────────────

    def _time_stop_hit(self, position: OpenPosition, now: Optional[float]) -> bool:
        if self._max_hold is None or now is None:
            return False
        return now - position.entry_marker > self._max_hold

    def evaluate_exit(
        self,
        position: OpenPosition,
        price: float,
        dynamic_stop: Optional[DynamicStop] = None,
        early_warning: bool = False,
        now: Optional[float] = None,
    ) -> ExitDecision:
        """Check a live price against the exit rules, first match wins.

        1. Take-profit reached.
        2. Trailing stop armed (breakeven + 1 pip) and price back through it.
        3. Dynamic stop-loss breached (recomputed stop, else stored stop).
        4. Time stop, only when ``max_hold`` is configured.

        Arming the trail mutates ``position.stop_price``.
        """
        pips = position.pips_at(price)

        if pips >= position.target_pips:
            return ExitDecision(ExitReason.TP, price, pips, f"TP hit: +{pips:.1f}p")

        trail = TrailingStop(
            position.entry_price, position.take_profit, position.direction, position.pip
        )
        new_sl = trail.update(price, position.stop_price, early_warning)
        if new_sl is not None:
            position.stop_price = new_sl
            position.trailing_active = True
            logger.info(
                "%s %s trail armed — stop to breakeven+1 @ %.5f%s",
                position.leg_id, position.instrument, new_sl,
                " (early warning)" if early_warning else "",
            )
        if position.trailing_active and trail.is_hit(price, position.stop_price):
            return ExitDecision(
                ExitReason.TRAILING, price, pips,
                f"Trailing stop hit @ {position.stop_price:.5f}: {pips:.1f}p",
            )

        stop = dynamic_stop.price if dynamic_stop is not None else position.stop_price
        if trail.is_hit(price, stop):
            source = dynamic_stop.source if dynamic_stop is not None else "fixed"
            return ExitDecision(
                ExitReason.SL, price, pips, f"SL hit ({source}) @ {stop:.5f}: {pips:.1f}p"
            )

        if self._time_stop_hit(position, now):
            return ExitDecision(ExitReason.TIME, price, pips, "Max holding duration reached")

        return ExitDecision(None, price, pips, f"Holding: {pips:.1f}p")

    def settle_bar(
        self,
        position: OpenPosition,
        bar: CandleData,
        now: float,
        trailing: bool = True,
    ) -> Optional[ExitDecision]:
        """Intrabar settlement for the backtest.

        The stop is checked against the bar's extreme before the target, so
        a bar that spans both settles at the stop.  Survivors may then arm
        the trailing stop from the bar close, effective from the next bar.
        """
        if position.direction == "long":
            sl_hit = bar.low <= position.stop_price
            tp_hit = bar.high >= position.take_profit
        else:
            sl_hit = bar.high >= position.stop_price
            tp_hit = bar.low <= position.take_profit

        if sl_hit:
            reason = ExitReason.TRAILING if position.trailing_active else ExitReason.SL
            price = position.stop_price
            return ExitDecision(reason, price, position.pips_at(price), "stop touched intrabar")
        if tp_hit:
            price = position.take_profit
            return ExitDecision(ExitReason.TP, price, position.pips_at(price), "target touched intrabar")
        if self._time_stop_hit(position, now):
            return ExitDecision(ExitReason.TIME, bar.close, position.pips_at(bar.close), "time stop")

        if trailing:
            trail = TrailingStop(
                position.entry_price, position.take_profit, position.direction, position.pip
            )
            new_sl = trail.update(bar.close, position.stop_price)
            if new_sl is not None:
                position.stop_price = new_sl
                position.trailing_active = True
        return None
