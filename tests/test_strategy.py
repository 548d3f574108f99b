"""Deterministic tests for ranking, instrument resolution, gates and indicators.

All tests use fixed candle fixtures. Same input = same output, always.
"""

import random

import pytest

from hedgematrix.errors import InstrumentUnresolvable
from hedgematrix.strategy.gates import (
    ALL_GATES,
    BREAKOUT,
    RANK_DIVERGENCE,
    TREND_SLOPE,
    breakout_gate,
    evaluate_gates,
    required_gates,
    trend_slope_gate,
)
from hedgematrix.strategy.indicators import (
    calculate_atr,
    calculate_regression_slope,
    calculate_supertrend,
    volume_efficiency,
)
from hedgematrix.strategy.instruments import build_candidate, resolve_instrument
from hedgematrix.strategy.models import (
    CURRENCIES,
    HEDGE_LEGS,
    SUPPORTED_INSTRUMENTS,
    CandleData,
    CurrencyRank,
    get_leg,
    pip_value,
    price_precision,
    split_pair,
)
from hedgematrix.strategy.ranking import (
    align_recent,
    compute_rankings,
    currency_at,
    pair_block_score,
    rank_of,
)


# ── Candle fixtures ──────────────────────────────────────────────────────


def _make_candle(i: int, o: float, h: float, l: float, c: float, vol: int = 0) -> CandleData:
    return CandleData(time=f"2025-01-01T{i:05d}", open=o, high=h, low=l, close=c, volume=vol)


def _flat_bars(n: int, price: float = 1.1000, step: float = 0.0) -> list[CandleData]:
    """*n* zero-volume bars drifting by *step* per bar."""
    bars = []
    for i in range(n):
        close = price + step * i
        bars.append(_make_candle(i, close, close + 0.0005, close - 0.0005, close))
    return bars


def _random_walk(seed: int, n: int = 60) -> list[CandleData]:
    rng = random.Random(seed)
    price = 1.0 + rng.random()
    bars = []
    for i in range(n):
        o = price
        price += rng.uniform(-0.002, 0.002)
        h = max(o, price) + rng.uniform(0, 0.001)
        l = min(o, price) - rng.uniform(0, 0.001)
        bars.append(_make_candle(i, o, h, l, price, vol=rng.randint(100, 5000)))
    return bars


def _ranks(order: list[str]) -> list[CurrencyRank]:
    return [CurrencyRank(c, 0, i + 1) for i, c in enumerate(order)]


# ── Models ───────────────────────────────────────────────────────────────


class TestModels:
    def test_universe(self):
        assert len(CURRENCIES) == 8
        assert len(SUPPORTED_INSTRUMENTS) == 28

    def test_pip_value_and_precision(self):
        assert pip_value("USD_JPY") == 0.01
        assert pip_value("EUR_USD") == 0.0001
        assert price_precision("GBP_JPY") == 3
        assert price_precision("AUD_NZD") == 5

    def test_split_pair(self):
        assert split_pair("EUR_USD") == ("EUR", "USD")
        with pytest.raises(ValueError):
            split_pair("EURUSD")

    def test_legs(self):
        assert [leg.id for leg in HEDGE_LEGS] == ["leg1", "leg2", "leg3"]
        assert sum(leg.weight for leg in HEDGE_LEGS) == pytest.approx(1.0)
        assert get_leg("leg3").min_stop_pips == 30.0
        with pytest.raises(KeyError, match="leg9"):
            get_leg("leg9")


# ── Rank Engine ──────────────────────────────────────────────────────────


class TestRanking:
    def _spike_window(self) -> list[CandleData]:
        """20 quiet bars with one high-efficiency bar, then a close above it."""
        bars = _flat_bars(20)
        bars[10] = _make_candle(10, 1.1000, 1.1010, 1.0995, 1.1005, vol=1000)
        bars.append(_make_candle(20, 1.1005, 1.1025, 1.1000, 1.1020))
        return bars

    def test_upward_break_credits_base(self):
        assert pair_block_score(self._spike_window(), 20) == 1

    def test_downward_break_debits_base(self):
        bars = self._spike_window()
        bars[20] = _make_candle(20, 1.0995, 1.0996, 1.0980, 1.0985)
        assert pair_block_score(bars, 20) == -1

    def test_insufficient_history_contributes_zero(self):
        bars = self._spike_window()
        assert pair_block_score(bars, 19) == 0
        assert pair_block_score(bars, 21) == 0

    def test_scores_and_ranks(self):
        ranks = compute_rankings({"EUR_USD": self._spike_window()}, 20)
        assert ranks[0] == CurrencyRank("EUR", 1, 1)
        assert ranks[-1] == CurrencyRank("USD", -1, 8)
        # Ties keep the fixed currency order
        assert [r.currency for r in ranks[1:7]] == ["GBP", "AUD", "NZD", "CAD", "CHF", "JPY"]

    def test_rankings_total_for_random_history(self):
        pair_bars = {pair: _random_walk(i) for i, pair in enumerate(sorted(SUPPORTED_INSTRUMENTS))}
        for index in (0, 19, 20, 35, 59, 80):
            ranks = compute_rankings(pair_bars, index)
            assert sorted(r.currency for r in ranks) == sorted(CURRENCIES)
            assert [r.rank for r in ranks] == list(range(1, 9))
            scores = [r.score for r in ranks]
            assert scores == sorted(scores, reverse=True)

    def test_rankings_pure(self):
        pair_bars = {pair: _random_walk(i) for i, pair in enumerate(sorted(SUPPORTED_INSTRUMENTS))}
        assert compute_rankings(pair_bars, 40) == compute_rankings(pair_bars, 40)

    def test_empty_history_keeps_default_order(self):
        ranks = compute_rankings({}, 25)
        assert [r.currency for r in ranks] == list(CURRENCIES)

    def test_align_recent_keeps_common_tail(self):
        short = _random_walk(1, 30)
        long = _random_walk(2, 45)
        aligned = align_recent({"EUR_USD": long, "GBP_USD": short})
        assert len(aligned["EUR_USD"]) == len(aligned["GBP_USD"]) == 30
        assert aligned["EUR_USD"][0] is long[15]
        assert aligned["EUR_USD"][-1] is long[-1]
        assert aligned["GBP_USD"] == short
        assert align_recent({}) == {}

    def test_rank_lookups(self):
        ranks = _ranks(list(CURRENCIES))
        assert currency_at(ranks, 8) == "JPY"
        assert rank_of(ranks, "USD") == 5
        assert rank_of(ranks, "XAU") is None
        with pytest.raises(ValueError):
            currency_at(ranks, 9)


# ── Instrument Resolver ──────────────────────────────────────────────────


class TestInstrumentResolver:
    def test_direct_quote_goes_long(self):
        resolved = resolve_instrument("EUR", "USD")
        assert resolved.instrument == "EUR_USD"
        assert resolved.inverted is False
        assert resolved.direction == "long"

    def test_inverse_quote_goes_short(self):
        resolved = resolve_instrument("USD", "EUR")
        assert resolved.instrument == "EUR_USD"
        assert resolved.inverted is True
        assert resolved.direction == "short"

    def test_unknown_pair(self):
        assert resolve_instrument("EUR", "XAU") is None

    def test_build_candidate(self):
        ranks = _ranks(["JPY", "GBP", "AUD", "NZD", "USD", "CAD", "CHF", "EUR"])
        candidate = build_candidate(get_leg("leg1"), ranks)
        assert candidate.instrument == "EUR_JPY"
        assert candidate.direction == "short"
        assert candidate.strong_currency == "JPY"
        assert candidate.weak_currency == "EUR"

    def test_build_candidate_unresolvable(self):
        ranks = _ranks(list(CURRENCIES))
        with pytest.raises(InstrumentUnresolvable):
            build_candidate(get_leg("leg1"), ranks, supported=frozenset({"EUR_USD"}))


# ── Gate Evaluator ───────────────────────────────────────────────────────


class TestGates:
    def _breakout_bars(self, prior: int) -> list[CandleData]:
        bars = _flat_bars(prior, step=0.0001)
        last = bars[-1].close
        bars.append(_make_candle(prior, last, last + 0.0030, last, last + 0.0025))
        return bars

    def test_breakout_needs_21_bars(self):
        assert breakout_gate(self._breakout_bars(19), "long") is False
        assert breakout_gate(self._breakout_bars(20), "long") is True

    def test_breakout_short(self):
        bars = _flat_bars(20, step=-0.0001)
        last = bars[-1].close
        bars.append(_make_candle(20, last, last, last - 0.0030, last - 0.0025))
        assert breakout_gate(bars, "short") is True
        assert breakout_gate(bars, "long") is False

    def test_no_breakout_inside_range(self):
        bars = _flat_bars(21)
        assert breakout_gate(bars, "long") is False
        assert breakout_gate(bars, "short") is False

    def test_trend_slope(self):
        rising = _flat_bars(20, step=0.0002)
        assert trend_slope_gate(rising, "long") is True
        assert trend_slope_gate(rising, "short") is False
        assert trend_slope_gate(rising[:1], "long") is False

    def test_required_gates(self):
        assert required_gates("all") == ALL_GATES
        assert required_gates("rank_only") == (RANK_DIVERGENCE,)
        with pytest.raises(KeyError):
            required_gates("none")

    def test_evaluate_all_gates(self):
        ranks = _ranks(list(CURRENCIES))
        candidate = build_candidate(get_leg("leg1"), ranks)
        result = evaluate_gates(candidate, self._breakout_bars(20), ranks)
        assert result.passed is True
        assert result.checks == {RANK_DIVERGENCE: True, BREAKOUT: True, TREND_SLOPE: True}
        assert result.label == "G1+G2+G3"

    def test_rank_only_ignores_price_gates(self):
        ranks = _ranks(list(CURRENCIES))
        candidate = build_candidate(get_leg("leg1"), ranks)
        flat = _flat_bars(21)
        strict = evaluate_gates(candidate, flat, ranks)
        raw = evaluate_gates(candidate, flat, ranks, required_gates("rank_only"))
        assert strict.passed is False
        assert strict.failed == [BREAKOUT, TREND_SLOPE]
        assert raw.passed is True
        assert raw.label == "G1-RAW"

    def test_stale_ranks_fail_divergence(self):
        ranks = _ranks(list(CURRENCIES))
        candidate = build_candidate(get_leg("leg1"), ranks)
        shuffled = _ranks(["GBP", "EUR", "AUD", "NZD", "USD", "CAD", "CHF", "JPY"])
        result = evaluate_gates(candidate, self._breakout_bars(20), shuffled)
        assert result.checks[RANK_DIVERGENCE] is False
        assert result.passed is False


# ── Indicators ───────────────────────────────────────────────────────────


class TestIndicators:
    def test_atr_constant_range(self):
        bars = _flat_bars(15)
        assert calculate_atr(bars) == pytest.approx(0.0010)

    def test_atr_insufficient_data(self):
        with pytest.raises(ValueError, match="ATR"):
            calculate_atr(_flat_bars(14))

    def test_regression_slope(self):
        assert calculate_regression_slope([1.0, 2.0, 3.0, 4.0]) == pytest.approx(1.0)
        with pytest.raises(ValueError):
            calculate_regression_slope([1.0])

    def test_volume_efficiency(self):
        assert volume_efficiency(_make_candle(0, 1.0, 1.002, 1.0, 1.001, vol=100)) == pytest.approx(50_000)
        assert volume_efficiency(_make_candle(0, 1.0, 1.0, 1.0, 1.0, vol=100)) == 0.0

    def test_supertrend_uptrend_sits_below_price(self):
        bars = _flat_bars(40, step=0.0010)
        value, side = calculate_supertrend(bars)
        assert side == "bullish"
        assert value < bars[-1].close

    def test_supertrend_downtrend_sits_above_price(self):
        bars = _flat_bars(40, step=-0.0010)
        value, side = calculate_supertrend(bars)
        assert side == "bearish"
        assert value > bars[-1].close
