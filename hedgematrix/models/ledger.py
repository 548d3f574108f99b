"""Ledger dataclasses — order drafts and the typed event stored with each row.

``LedgerEvent`` records why an order row exists.  It is serialised to JSON
in the ``event_json`` column so the dashboard and other processes read the
same schema instead of parsing free-text reasons.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Optional

OPEN_STATUSES: tuple[str, ...] = ("filled", "open", "submitted")


@dataclass(frozen=True)
class LedgerEvent:
    """Why an order was placed (or refused) for one hedge leg."""

    leg_id: str
    leg_label: str
    strong_currency: str
    strong_rank: int
    weak_currency: str
    weak_rank: int
    gate_result: str
    gate_checks: dict[str, bool] = field(default_factory=dict)
    limit_price: Optional[float] = None
    expires_at: Optional[str] = None
    stop_pips: Optional[float] = None
    tp_ratio: Optional[float] = None
    rejection_reason: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "LedgerEvent":
        return cls(**json.loads(raw))


@dataclass(frozen=True)
class OrderDraft:
    """A ledger row about to be written in ``submitted`` state."""

    agent_id: str
    environment: str
    leg_id: str
    instrument: str
    direction: str
    units: int
    requested_price: float
    stop_loss: float
    take_profit: float
    event: Optional[LedgerEvent] = None
