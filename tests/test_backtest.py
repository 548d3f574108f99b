"""Tests for the backtest driver — replay, stats, history loading and persistence."""

import random

import pytest

from hedgematrix.backtest.engine import HedgeBacktestEngine
from hedgematrix.backtest.loader import load_pair_history
from hedgematrix.backtest.stats import calculate_stats, leg_breakdown, out_of_sample_split
from hedgematrix.broker.models import Candle
from hedgematrix.cli.report import format_backtest_report
from hedgematrix.config import BacktestConfig
from hedgematrix.errors import DataUnavailable
from hedgematrix.repos.backtest_repo import BacktestRepo
from hedgematrix.repos.db import init_db
from hedgematrix.strategy.models import SUPPORTED_INSTRUMENTS, CandleData, get_leg


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_candle(i, o, h, l, c, vol=0):
    return CandleData(time=f"2025-01-01T{i:05d}", open=o, high=h, low=l, close=c, volume=vol)


def _single_entry_fixture() -> list[CandleData]:
    """EUR_JPY bars giving one leg1 breakout at bar 25 and a stop-out at bar 26.

    Zero volume everywhere leaves every currency on score 0, so the default
    order puts EUR at #1 and JPY at #8.
    """
    bars = []
    for i in range(25):
        close = 150.0 + 0.001 * i
        bars.append(_make_candle(i, close, close + 0.01, close - 0.01, close))
    bars.append(_make_candle(25, 150.025, 150.11, 150.02, 150.10))
    bars.append(_make_candle(26, 150.10, 150.12, 149.80, 149.90))
    for i in range(27, 30):
        bars.append(_make_candle(i, 149.90, 149.91, 149.89, 149.90))
    return bars


def _random_walk(seed: int, n: int = 150) -> list[CandleData]:
    rng = random.Random(seed)
    price = 100.0 if seed % 4 == 0 else 1.0 + rng.random()
    scale = 0.2 if price > 50 else 0.002
    bars = []
    for i in range(n):
        o = price
        price += rng.uniform(-scale, scale)
        h = max(o, price) + rng.uniform(0, scale / 2)
        l = min(o, price) - rng.uniform(0, scale / 2)
        bars.append(_make_candle(i, o, h, l, price, vol=rng.randint(100, 5000)))
    return bars


def _universe() -> dict[str, list[CandleData]]:
    return {pair: _random_walk(i) for i, pair in enumerate(sorted(SUPPORTED_INSTRUMENTS))}


# ── Engine ───────────────────────────────────────────────────────────────


class TestHedgeBacktestEngine:
    def test_single_entry_and_stop_out(self):
        config = BacktestConfig(min_pairs=1)
        engine = HedgeBacktestEngine(config, legs=(get_leg("leg1"),))
        result = engine.run({"EUR_JPY": _single_entry_fixture()})

        assert result.total_bars == 30
        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.leg_id == "leg1"
        assert trade.direction == "long"
        assert trade.entry_price == pytest.approx(150.10)
        assert trade.exit_price == pytest.approx(149.85)
        assert trade.reason.value == "SL"
        assert trade.pips == pytest.approx(-26.5)
        assert trade.entry_marker == 25
        assert trade.exit_marker == 26

        # 1 % of 1000 × 0.5 weight over a 25-pip (0.25) stop → 20 units
        assert trade.pnl["1pct"] == pytest.approx(-26.5 * 0.01 * 20)
        assert trade.pnl["5pct"] == pytest.approx(-26.5 * 0.01 * 100)
        assert result.equity["1pct"].equity == pytest.approx(1000 - 5.3)
        assert result.stats["total_trades"] == 1
        assert result.stats["losing_trades"] == 1

    def test_rank_only_mode_trades_without_breakout(self):
        bars = [_make_candle(i, 150.0, 150.01, 149.99, 150.0) for i in range(30)]
        config = BacktestConfig(min_pairs=1, gate_mode="rank_only")
        result = HedgeBacktestEngine(config, legs=(get_leg("leg1"),)).run({"EUR_JPY": bars})
        assert len(result.trades) == 1
        assert result.trades[0].reason.value == "END_OF_DATA"
        assert result.trades[0].pips == pytest.approx(-1.5)

    def test_deterministic(self):
        pair_bars = _universe()
        first = HedgeBacktestEngine().run(pair_bars)
        second = HedgeBacktestEngine().run(pair_bars)
        assert first.trade_dicts() == second.trade_dicts()
        assert first.equity_curves() == second.equity_curves()
        assert first.stats == second.stats

    def test_longer_history_aligned_on_recent_bars(self):
        pair_bars = _universe()
        padded = dict(pair_bars)
        padded["EUR_USD"] = _random_walk(99, 40) + pair_bars["EUR_USD"]

        baseline = HedgeBacktestEngine(BacktestConfig(gate_mode="rank_only")).run(pair_bars)
        result = HedgeBacktestEngine(BacktestConfig(gate_mode="rank_only")).run(padded)
        assert result.total_bars == 150
        assert result.trade_dicts() == baseline.trade_dicts()
        assert result.equity_curves() == baseline.equity_curves()

    def test_position_and_leg_limits(self):
        result = HedgeBacktestEngine(BacktestConfig(gate_mode="rank_only")).run(_universe())
        assert result.trades
        open_at: dict[int, list[str]] = {}
        for trade in result.trades:
            for bar in range(int(trade.entry_marker), int(trade.exit_marker)):
                open_at.setdefault(bar, []).append(trade.leg_id)
        for legs in open_at.values():
            assert len(legs) <= 3
            assert len(legs) == len(set(legs))

    def test_rejects_too_few_pairs(self):
        with pytest.raises(DataUnavailable, match="pairs"):
            HedgeBacktestEngine().run({"EUR_USD": _random_walk(1)})

    def test_equity_curve_sampled(self):
        result = HedgeBacktestEngine().run(_universe())
        curves = result.equity_curves()
        assert set(curves) == {"1pct", "5pct"}
        # Bars 25..149 sampled every 10th bar → 30, 40, …, 140
        assert len(curves["1pct"]) == 12


# ── Stats ────────────────────────────────────────────────────────────────


class TestStats:
    def test_empty(self):
        stats = calculate_stats([])
        assert stats["total_trades"] == 0
        assert stats["win_rate"] == 0.0
        assert stats["profit_factor"] == 0.0
        assert stats["oos"]["oos_trades"] == 0

    def test_headline_metrics(self):
        trades = [
            {"leg_id": "leg1", "pips": 50.0},
            {"leg_id": "leg1", "pips": -25.0},
            {"leg_id": "leg2", "pips": 30.0},
            {"leg_id": "leg3", "pips": 0.0},
        ]
        stats = calculate_stats(trades)
        assert stats["winning_trades"] == 2
        assert stats["losing_trades"] == 2
        assert stats["win_rate"] == 50.0
        assert stats["total_pips"] == 55.0
        assert stats["profit_factor"] == pytest.approx(3.2)
        # avg win 40 / avg loss 12.5 → R 3.2; 0.5 × 3.2 − 0.5 = 1.1
        assert stats["r_ratio"] == pytest.approx(3.2)
        assert stats["expectancy_r"] == pytest.approx(1.1)
        assert stats["legs"]["leg1"]["trades"] == 2

    def test_no_losses_caps_profit_factor(self):
        stats = calculate_stats([{"leg_id": "leg1", "pips": 10.0}])
        assert stats["profit_factor"] == 99.0
        assert stats["r_ratio"] == 99.0

    def test_out_of_sample_split(self):
        pips = [1.0] * 70 + [-1.0] * 30
        split = out_of_sample_split(pips)
        assert split["is_trades"] == 70
        assert split["oos_trades"] == 30
        assert split["is_win_rate"] == 100.0
        assert split["oos_win_rate"] == 0.0
        assert split["oos_pips"] == -30.0

    def test_out_of_sample_rounds_down(self):
        split = out_of_sample_split([1.0] * 9)
        assert split["is_trades"] == 6
        assert split["oos_trades"] == 3

    def test_bad_fraction(self):
        with pytest.raises(ValueError):
            out_of_sample_split([1.0], 1.5)

    def test_leg_breakdown(self):
        legs = leg_breakdown([
            {"leg_id": "leg2", "pips": 10.0},
            {"leg_id": "leg2", "pips": -5.0},
        ])
        assert legs["leg2"] == {
            "trades": 2, "wins": 1, "losses": 1, "total_pips": 5.0, "win_rate": 50.0,
        }

    def test_report_renders(self, capsys):
        stats = calculate_stats([{"leg_id": "leg1", "pips": 12.0}])
        text = format_backtest_report(stats, pairs_loaded=28, total_bars=500)
        assert "28 / 500" in text
        assert "leg1" in text
        assert "HedgeMatrix Backtest" in capsys.readouterr().out


# ── History loader ───────────────────────────────────────────────────────


class MockHistoryBroker:
    """Duck-typed broker serving fixed candle counts per instrument."""

    def __init__(self, counts: dict[str, int], failing: tuple[str, ...] = ()) -> None:
        self._counts = counts
        self._failing = failing
        self.requests: list[tuple[str, str, int]] = []

    async def fetch_candles(self, instrument: str, granularity: str, count: int = 50):
        self.requests.append((instrument, granularity, count))
        if instrument in self._failing:
            raise RuntimeError("boom")
        n = self._counts.get(instrument, 0)
        candles = [
            Candle(f"t{i}", 1.0, 1.001, 0.999, 1.0, 10, True) for i in range(n)
        ]
        # The still-forming bar
        candles.append(Candle(f"t{n}", 1.0, 1.001, 0.999, 1.0, 10, False))
        return candles


class TestLoader:
    @pytest.mark.asyncio
    async def test_drops_short_and_failed_pairs(self):
        broker = MockHistoryBroker(
            {"EUR_USD": 150, "GBP_USD": 100, "USD_JPY": 150},
            failing=("USD_JPY",),
        )
        loaded = await load_pair_history(
            broker, ["USD_JPY", "GBP_USD", "EUR_USD"], granularity="M30", count=150,
        )
        assert list(loaded) == ["EUR_USD"]
        assert len(loaded["EUR_USD"]) == 150
        assert all(isinstance(b, CandleData) for b in loaded["EUR_USD"])
        assert ("EUR_USD", "M30", 150) in broker.requests

    @pytest.mark.asyncio
    async def test_loads_every_supported_pair_by_default(self):
        broker = MockHistoryBroker({p: 120 for p in SUPPORTED_INSTRUMENTS})
        loaded = await load_pair_history(broker)
        assert len(loaded) == 28
        assert list(loaded) == sorted(SUPPORTED_INSTRUMENTS)


# ── Persistence ──────────────────────────────────────────────────────────


class TestBacktestPersistence:
    def test_run_round_trip(self, tmp_path):
        db_path = str(tmp_path / "bt.db")
        init_db(db_path)
        repo = BacktestRepo(db_path)
        result = HedgeBacktestEngine(
            BacktestConfig(min_pairs=1), legs=(get_leg("leg1"),)
        ).run({"EUR_JPY": _single_entry_fixture()})

        run_id = repo.insert_run(
            granularity="M30",
            start_date=result.start_time,
            end_date=result.end_time,
            pairs_loaded=result.pairs_loaded,
            total_bars=result.total_bars,
            gate_mode="all",
            stats=result.stats,
        )
        runs = repo.get_runs()
        assert runs[0]["id"] == run_id
        assert runs[0]["total_trades"] == 1
        assert runs[0]["stats"]["legs"]["leg1"]["losses"] == 1
