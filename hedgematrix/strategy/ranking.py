"""Currency strength ranking from structural breaks of high-efficiency bars.

For each pair, bars inside the lookback window whose volume efficiency is
an outlier (mean + 1.5σ) mark structural blocks.  The evaluation bar's
close breaking such a block's high credits the base currency and debits
the quote; breaking its low does the opposite.  Summing over every pair a
currency appears in gives its score.

Pure functions of ``(history, index, lookback)`` — no I/O, no state.
"""

import numpy as np

from hedgematrix.strategy.indicators import volume_efficiency
from hedgematrix.strategy.models import CURRENCIES, CandleData, CurrencyRank, split_pair

_BREAKOUT_SIGMA = 1.5


def pair_block_score(bars: list[CandleData], index: int, lookback: int = 20) -> int:
    """Net structural breaks of *bars* at *index*, from the base currency's view.

    Returns 0 when the pair has insufficient history at *index*.
    """
    if index < lookback or index >= len(bars):
        return 0

    window = bars[index - lookback : index]
    current_close = bars[index].close

    veffs = np.array([volume_efficiency(b) for b in window], dtype=float)
    std = float(veffs.std()) or 1.0
    threshold = float(veffs.mean()) + _BREAKOUT_SIGMA * std

    score = 0
    for bar, veff in zip(window, veffs):
        if veff > threshold:
            if current_close > bar.high:
                score += 1
            elif current_close < bar.low:
                score -= 1
    return score


def align_recent(pair_bars: dict[str, list[CandleData]]) -> dict[str, list[CandleData]]:
    """Trim every pair to the common tail length so index *i* is one moment in time."""
    if not pair_bars:
        return {}
    common = min(len(bars) for bars in pair_bars.values())
    return {pair: bars[len(bars) - common :] for pair, bars in pair_bars.items()}


def score_currencies(
    pair_bars: dict[str, list[CandleData]],
    index: int,
    lookback: int = 20,
    currencies: tuple[str, ...] = CURRENCIES,
) -> dict[str, int]:
    """Aggregate block scores per currency across all pairs."""
    scores = {c: 0 for c in currencies}
    for pair in sorted(pair_bars):
        base, quote = split_pair(pair)
        if base not in scores or quote not in scores:
            continue
        pair_score = pair_block_score(pair_bars[pair], index, lookback)
        scores[base] += pair_score
        scores[quote] -= pair_score
    return scores


def compute_rankings(
    pair_bars: dict[str, list[CandleData]],
    index: int,
    lookback: int = 20,
    currencies: tuple[str, ...] = CURRENCIES,
) -> list[CurrencyRank]:
    """Rank *currencies* strongest-first at bar *index*.

    Ties on score keep the order of *currencies*, so the result is always
    a permutation of exactly that set.
    """
    scores = score_currencies(pair_bars, index, lookback, currencies)
    order = {c: i for i, c in enumerate(currencies)}
    ranked = sorted(currencies, key=lambda c: (-scores[c], order[c]))
    return [
        CurrencyRank(currency=c, score=scores[c], rank=i + 1)
        for i, c in enumerate(ranked)
    ]


def currency_at(ranks: list[CurrencyRank], rank: int) -> str:
    """Return the currency holding 1-based *rank*."""
    for r in ranks:
        if r.rank == rank:
            return r.currency
    raise ValueError(f"rank {rank} not present in a {len(ranks)}-currency ranking")


def rank_of(ranks: list[CurrencyRank], currency: str) -> int | None:
    """Return the 1-based rank of *currency*, or ``None`` if unranked."""
    for r in ranks:
        if r.currency == currency:
            return r.rank
    return None
