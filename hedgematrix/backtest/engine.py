"""Backtest engine — replays multi-pair history through rank, gates, risk and exits.

Iterates the common bar range of every loaded pair chronologically,
re-ranking currencies at each bar and simulating the hedge legs with one
virtual equity curve per risk variant.  No real orders are placed.
Single-threaded and deterministic: identical input yields identical output.
"""

import logging
from dataclasses import dataclass, field

from hedgematrix.backtest.stats import calculate_stats
from hedgematrix.config import BacktestConfig
from hedgematrix.errors import DataUnavailable, InstrumentUnresolvable, SlotOccupied
from hedgematrix.lifecycle import ClosedTrade, ExitReason, TradeLifecycleManager
from hedgematrix.risk.drawdown import EquityState
from hedgematrix.risk.position_sizer import calculate_units
from hedgematrix.risk.sl_tp import calculate_hedge_risk
from hedgematrix.strategy.gates import evaluate_gates, required_gates
from hedgematrix.strategy.indicators import calculate_atr
from hedgematrix.strategy.instruments import build_candidate
from hedgematrix.strategy.models import HEDGE_LEGS, MAX_POSITIONS, CandleData, HedgeLeg, pip_value
from hedgematrix.strategy.ranking import align_recent, compute_rankings

logger = logging.getLogger("hedgematrix.backtest")

ATR_PERIOD = 14


@dataclass
class BacktestResult:
    """Everything a replay produces."""

    trades: list[ClosedTrade]
    equity: dict[str, EquityState]
    total_bars: int
    pairs_loaded: int
    start_time: str = ""
    end_time: str = ""
    stats: dict = field(default_factory=dict)

    def trade_dicts(self) -> list[dict]:
        return [t.to_dict() for t in self.trades]

    def equity_curves(self) -> dict[str, list[float]]:
        return {name: list(state.curve) for name, state in self.equity.items()}


class HedgeBacktestEngine:
    """Simulates the hedge legs on historical candles of every pair.

    Args:
        config: Backtest parameters (risk variants, lookback, friction …).
        legs: Hedge leg descriptors, defaults to the three standard legs.
    """

    def __init__(
        self,
        config: BacktestConfig | None = None,
        legs: tuple[HedgeLeg, ...] = HEDGE_LEGS,
    ) -> None:
        self._config = config or BacktestConfig()
        self._legs = legs
        self._required = required_gates(self._config.gate_mode)

    # ── Public API ───────────────────────────────────────────────────────

    def run(self, pair_bars: dict[str, list[CandleData]]) -> BacktestResult:
        """Execute a full backtest.

        Args:
            pair_bars: Candles per instrument, oldest-first, complete only.

        Returns:
            ``BacktestResult`` with closed trades, per-variant equity and stats.

        Raises:
            DataUnavailable: If fewer than ``min_pairs`` pairs are supplied.
        """
        cfg = self._config
        if len(pair_bars) < cfg.min_pairs:
            raise DataUnavailable(
                f"Only {len(pair_bars)} pairs loaded, need at least {cfg.min_pairs}"
            )

        # Index i must be the same moment for every pair
        pair_bars = align_recent(pair_bars)
        total_bars = min(len(bars) for bars in pair_bars.values())
        start_bar = cfg.lookback + cfg.warmup_extra_bars

        lifecycle = TradeLifecycleManager(
            max_positions=MAX_POSITIONS,
            cooldown=cfg.cooldown_bars,
            friction_pips=cfg.friction_pips,
            max_hold=cfg.max_hold_bars,
        )
        equity = {
            name: EquityState(cfg.starting_equity, fraction)
            for name, fraction in cfg.risk_variants.items()
        }
        trades: list[ClosedTrade] = []

        for bar in range(start_bar, total_bars):
            # 1 — Settle open positions intrabar
            for position in lifecycle.positions:
                candle = pair_bars[position.instrument][bar]
                decision = lifecycle.settle_bar(position, candle, bar, trailing=cfg.trailing_stop)
                if decision is not None and decision.should_close:
                    trade = lifecycle.close_position(
                        position, decision.exit_price, decision.reason, bar, candle.time,
                    )
                    self._book(trade, equity)
                    trades.append(trade)

            # 2 — Equity curve sampling
            if bar % cfg.curve_every == 0:
                for state in equity.values():
                    state.record_point()

            # 3 — Entries only while a slot is free
            if not lifecycle.can_open():
                continue

            ranks = compute_rankings(pair_bars, bar, cfg.lookback)

            for leg in self._legs:
                if not lifecycle.can_open():
                    break
                if not lifecycle.is_eligible(leg.id, bar):
                    continue
                try:
                    candidate = build_candidate(leg, ranks)
                except InstrumentUnresolvable:
                    continue

                bars = pair_bars.get(candidate.instrument)
                if bars is None or bar >= len(bars):
                    continue
                history = bars[: bar + 1]

                gates = evaluate_gates(candidate, history, ranks, self._required, cfg.lookback)
                if not gates.passed:
                    continue

                entry = history[-1].close
                pip = pip_value(candidate.instrument)
                atr = calculate_atr(history, ATR_PERIOD)
                risk = calculate_hedge_risk(entry, candidate.direction, atr, leg, pip)
                units = {
                    name: calculate_units(state.equity, state.risk_fraction, leg.weight, risk.stop_distance)
                    for name, state in equity.items()
                }
                try:
                    lifecycle.open_position(candidate, entry, risk, units, bar, history[-1].time)
                except SlotOccupied:
                    continue

        # Close any remaining positions at the last common bar's close
        if total_bars > 0:
            final_bar = total_bars - 1
            for position in lifecycle.positions:
                last = pair_bars[position.instrument][final_bar]
                trade = lifecycle.close_position(
                    position, last.close, ExitReason.END_OF_DATA, final_bar, last.time,
                )
                self._book(trade, equity)
                trades.append(trade)

        first_pair = pair_bars[sorted(pair_bars)[0]]
        result = BacktestResult(
            trades=trades,
            equity=equity,
            total_bars=total_bars,
            pairs_loaded=len(pair_bars),
            start_time=first_pair[start_bar].time if start_bar < total_bars else "",
            end_time=first_pair[total_bars - 1].time if total_bars else "",
        )
        result.stats = calculate_stats(
            [t.to_dict() for t in trades], equity, oos_fraction=cfg.oos_fraction,
        )
        logger.info(
            "Backtest complete: %d trades over %d bars, %.1f%% WR, %.1f pips, PF=%s",
            result.stats["total_trades"], total_bars,
            result.stats["win_rate"], result.stats["total_pips"],
            result.stats["profit_factor"],
        )
        return result

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _book(trade: ClosedTrade, equity: dict[str, EquityState]) -> None:
        for name, pnl in trade.pnl.items():
            equity[name].apply(pnl)
