"""Strategy data models — bars, ranks, hedge legs and trade candidates."""

from dataclasses import dataclass
from typing import Literal

Direction = Literal["long", "short"]


@dataclass(frozen=True)
class CandleData:
    """A single candlestick bar for strategy consumption."""

    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int


@dataclass(frozen=True)
class CurrencyRank:
    """Aggregate strength score and 1-based rank of one currency."""

    currency: str
    score: int
    rank: int


@dataclass(frozen=True)
class HedgeLeg:
    """Static descriptor of one rank-divergence leg.

    The leg goes long the currency at ``strong_rank`` against the currency
    at ``weak_rank``.
    """

    id: str
    strong_rank: int
    weak_rank: int
    weight: float
    label: str
    min_stop_pips: float
    tp_ratio: float


@dataclass(frozen=True)
class TradeCandidate:
    """A leg resolved to a tradable instrument for one evaluation cycle."""

    leg: HedgeLeg
    instrument: str
    direction: Direction
    strong_currency: str
    weak_currency: str


# ── Universe ─────────────────────────────────────────────────────────────

CURRENCIES: tuple[str, ...] = ("EUR", "GBP", "AUD", "NZD", "USD", "CAD", "CHF", "JPY")

SUPPORTED_INSTRUMENTS: frozenset[str] = frozenset({
    "EUR_USD", "EUR_GBP", "EUR_AUD", "EUR_NZD", "EUR_CAD", "EUR_CHF", "EUR_JPY",
    "GBP_USD", "GBP_AUD", "GBP_NZD", "GBP_CAD", "GBP_CHF", "GBP_JPY",
    "AUD_USD", "AUD_NZD", "AUD_CAD", "AUD_CHF", "AUD_JPY",
    "NZD_USD", "NZD_CAD", "NZD_CHF", "NZD_JPY",
    "USD_CAD", "USD_CHF", "USD_JPY",
    "CAD_CHF", "CAD_JPY", "CHF_JPY",
})

HEDGE_LEGS: tuple[HedgeLeg, ...] = (
    HedgeLeg("leg1", 1, 8, 0.50, "#1 vs #8 — Primary Divergence", 25.0, 2.0),
    HedgeLeg("leg2", 2, 7, 0.30, "#2 vs #7 — Secondary Spread", 25.0, 2.0),
    HedgeLeg("leg3", 3, 6, 0.20, "#3 vs #6 — Tertiary Dampener", 30.0, 1.8),
)

MAX_POSITIONS = 3

# Pair volatility classes used for fallback stop distances
HIGH_VOL_PAIRS: frozenset[str] = frozenset({"GBP_JPY", "GBP_AUD", "EUR_AUD", "AUD_NZD"})
MED_VOL_PAIRS: frozenset[str] = frozenset({
    "GBP_USD", "EUR_JPY", "AUD_JPY", "USD_CAD", "EUR_GBP", "USD_JPY",
})


def pip_value(instrument: str) -> float:
    """Price size of one pip: 0.01 for JPY crosses, 0.0001 otherwise."""
    return 0.01 if "JPY" in instrument else 0.0001


def price_precision(instrument: str) -> int:
    """Decimal places the broker accepts for *instrument* prices."""
    return 3 if "JPY" in instrument else 5


def split_pair(instrument: str) -> tuple[str, str]:
    """Return ``(base, quote)`` for an instrument like ``"EUR_USD"``."""
    base, _, quote = instrument.partition("_")
    if not base or not quote:
        raise ValueError(f"instrument must look like 'BASE_QUOTE', got '{instrument}'")
    return base, quote


def get_leg(leg_id: str) -> HedgeLeg:
    """Look up a configured leg by id.

    Raises ``KeyError`` if the leg id is not configured.
    """
    for leg in HEDGE_LEGS:
        if leg.id == leg_id:
            return leg
    raise KeyError(
        f"Unknown leg '{leg_id}'. "
        f"Available: {', '.join(l.id for l in HEDGE_LEGS)}"
    )
