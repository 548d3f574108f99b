"""Tests for the trade lifecycle manager — slots, cooldown and exit priority."""

import pytest

from hedgematrix.errors import SlotOccupied
from hedgematrix.lifecycle import (
    ExitReason,
    PositionState,
    TradeLifecycleManager,
)
from hedgematrix.risk.sl_tp import DynamicStop, RiskLevels
from hedgematrix.strategy.models import CandleData, TradeCandidate, get_leg


def _candidate(leg_id: str = "leg1", instrument: str = "EUR_USD", direction: str = "long"):
    return TradeCandidate(get_leg(leg_id), instrument, direction, "EUR", "USD")


def _risk() -> RiskLevels:
    return RiskLevels(sl=1.0970, tp=1.1060, stop_distance=0.0030, tp_distance=0.0060)


def _bar(o: float, h: float, l: float, c: float) -> CandleData:
    return CandleData(time="2025-01-01T00:00:00Z", open=o, high=h, low=l, close=c, volume=0)


def _open(manager: TradeLifecycleManager, leg_id: str = "leg1", now: float = 0):
    return manager.open_position(
        _candidate(leg_id), 1.1000, _risk(), {"1pct": 1000}, now=now
    )


# ── Slots and cooldown ───────────────────────────────────────────────────


class TestSlots:
    def test_one_position_per_leg(self):
        manager = TradeLifecycleManager()
        _open(manager)
        assert manager.is_open("leg1")
        with pytest.raises(SlotOccupied, match="leg1"):
            _open(manager)

    def test_position_cap(self):
        manager = TradeLifecycleManager(max_positions=2)
        _open(manager, "leg1")
        _open(manager, "leg2")
        assert manager.can_open() is False
        with pytest.raises(SlotOccupied, match="cap"):
            _open(manager, "leg3")
        assert manager.open_count == 2

    def test_cooldown_after_close(self):
        manager = TradeLifecycleManager(cooldown=2)
        position = _open(manager, now=5)
        manager.close_position(position, 1.0970, ExitReason.SL, now=10)
        assert manager.is_open("leg1") is False
        assert manager.is_eligible("leg1", 10) is False
        assert manager.is_eligible("leg1", 11) is False
        assert manager.is_eligible("leg1", 12) is True
        assert manager.is_eligible("leg2", 10) is True

    def test_close_exactly_once(self):
        manager = TradeLifecycleManager()
        position = _open(manager)
        manager.close_position(position, 1.1060, ExitReason.TP, now=1)
        assert position.state is PositionState.CLOSED
        with pytest.raises(ValueError, match="already closed"):
            manager.close_position(position, 1.1060, ExitReason.TP, now=2)

    def test_friction_applied_to_result(self):
        manager = TradeLifecycleManager(friction_pips=1.5)
        position = _open(manager)
        trade = manager.close_position(position, 1.1060, ExitReason.TP, now=3)
        assert trade.pips == pytest.approx(58.5)
        assert trade.pnl["1pct"] == pytest.approx(5.85)
        assert trade.is_win
        data = trade.to_dict()
        assert data["reason"] == "TP"
        assert data["result"] == "win"

    def test_adopt_restores_position(self):
        source = TradeLifecycleManager()
        position = _open(source)
        restored = TradeLifecycleManager()
        restored.adopt(position)
        assert restored.positions == [position]
        assert restored.is_eligible("leg1", 0) is False


# ── Exit rules ───────────────────────────────────────────────────────────


class TestEvaluateExit:
    def test_take_profit_wins(self):
        manager = TradeLifecycleManager()
        position = _open(manager)
        decision = manager.evaluate_exit(position, 1.1070)
        assert decision.reason is ExitReason.TP
        assert decision.should_close

    def test_trail_arms_then_closes_at_breakeven(self):
        manager = TradeLifecycleManager()
        position = _open(manager)

        holding = manager.evaluate_exit(position, 1.1040)
        assert holding.should_close is False
        assert position.trailing_active is True
        assert position.stop_price == pytest.approx(1.1001)

        decision = manager.evaluate_exit(position, 1.1000)
        assert decision.reason is ExitReason.TRAILING

    def test_early_warning_arms_sooner(self):
        manager = TradeLifecycleManager()
        position = _open(manager)
        manager.evaluate_exit(position, 1.1030)
        assert position.trailing_active is False
        manager.evaluate_exit(position, 1.1030, early_warning=True)
        assert position.trailing_active is True

    def test_dynamic_stop_breach(self):
        manager = TradeLifecycleManager()
        position = _open(manager)
        stop = DynamicStop(price=1.0990, distance_pips=10.0, source="trend+atr")
        decision = manager.evaluate_exit(position, 1.0985, dynamic_stop=stop)
        assert decision.reason is ExitReason.SL
        assert "trend+atr" in decision.detail

    def test_stored_stop_without_dynamic_stop(self):
        manager = TradeLifecycleManager()
        position = _open(manager)
        assert manager.evaluate_exit(position, 1.0975).should_close is False
        assert manager.evaluate_exit(position, 1.0970).reason is ExitReason.SL

    def test_time_stop_only_when_configured(self):
        unlimited = TradeLifecycleManager()
        position = _open(unlimited)
        assert unlimited.evaluate_exit(position, 1.1010, now=10_000).should_close is False

        timed = TradeLifecycleManager(max_hold=10)
        position = _open(timed)
        assert timed.evaluate_exit(position, 1.1010, now=10).should_close is False
        assert timed.evaluate_exit(position, 1.1010, now=11).reason is ExitReason.TIME


# ── Intrabar settlement ──────────────────────────────────────────────────


class TestSettleBar:
    def test_stop_checked_before_target(self):
        manager = TradeLifecycleManager()
        position = _open(manager)
        decision = manager.settle_bar(position, _bar(1.1000, 1.1070, 1.0960, 1.1050), now=1)
        assert decision.reason is ExitReason.SL
        assert decision.exit_price == pytest.approx(1.0970)
        assert decision.pnl_pips == pytest.approx(-30.0)

    def test_target_touched(self):
        manager = TradeLifecycleManager()
        position = _open(manager)
        decision = manager.settle_bar(position, _bar(1.1000, 1.1065, 1.0990, 1.1050), now=1)
        assert decision.reason is ExitReason.TP
        assert decision.exit_price == pytest.approx(1.1060)

    def test_close_arms_trail_for_next_bar(self):
        manager = TradeLifecycleManager()
        position = _open(manager)
        assert manager.settle_bar(position, _bar(1.1030, 1.1045, 1.1030, 1.1040), now=1) is None
        assert position.trailing_active is True
        assert position.stop_price == pytest.approx(1.1001)

        decision = manager.settle_bar(position, _bar(1.1020, 1.1025, 1.0995, 1.1000), now=2)
        assert decision.reason is ExitReason.TRAILING
        assert decision.exit_price == pytest.approx(1.1001)

    def test_short_settlement(self):
        manager = TradeLifecycleManager()
        risk = RiskLevels(sl=1.1030, tp=1.0940, stop_distance=0.0030, tp_distance=0.0060)
        position = manager.open_position(
            _candidate(direction="short"), 1.1000, risk, {"1pct": 1000}, now=0
        )
        decision = manager.settle_bar(position, _bar(1.1000, 1.1035, 1.0990, 1.1020), now=1)
        assert decision.reason is ExitReason.SL
        assert decision.pnl_pips == pytest.approx(-30.0)
