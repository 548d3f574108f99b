"""Instrument resolution — map a strong/weak currency pair to a tradable instrument."""

from dataclasses import dataclass
from typing import Optional

from hedgematrix.errors import InstrumentUnresolvable
from hedgematrix.strategy.models import (
    SUPPORTED_INSTRUMENTS,
    CurrencyRank,
    HedgeLeg,
    TradeCandidate,
)
from hedgematrix.strategy.ranking import currency_at


@dataclass(frozen=True)
class ResolvedInstrument:
    """A tradable instrument and whether it quotes the pair inverted."""

    instrument: str
    inverted: bool

    @property
    def direction(self) -> str:
        """Going long the strong currency means shorting an inverted quote."""
        return "short" if self.inverted else "long"


def resolve_instrument(
    strong: str,
    weak: str,
    supported: frozenset[str] = SUPPORTED_INSTRUMENTS,
) -> Optional[ResolvedInstrument]:
    """Return the instrument for *strong* vs *weak*, preferring the direct quote.

    Returns ``None`` when neither ``STRONG_WEAK`` nor ``WEAK_STRONG`` is
    in *supported*.
    """
    direct = f"{strong}_{weak}"
    if direct in supported:
        return ResolvedInstrument(direct, inverted=False)
    inverse = f"{weak}_{strong}"
    if inverse in supported:
        return ResolvedInstrument(inverse, inverted=True)
    return None


def build_candidate(
    leg: HedgeLeg,
    ranks: list[CurrencyRank],
    supported: frozenset[str] = SUPPORTED_INSTRUMENTS,
) -> TradeCandidate:
    """Turn *leg*'s rank slots into a concrete trade candidate.

    Raises:
        InstrumentUnresolvable: If the slot currencies have no tradable quote.
    """
    strong = currency_at(ranks, leg.strong_rank)
    weak = currency_at(ranks, leg.weak_rank)
    resolved = resolve_instrument(strong, weak, supported)
    if resolved is None:
        raise InstrumentUnresolvable(f"No tradable instrument for {strong}/{weak}")
    return TradeCandidate(
        leg=leg,
        instrument=resolved.instrument,
        direction=resolved.direction,
        strong_currency=strong,
        weak_currency=weak,
    )
