"""Broker data models — typed representations of OANDA v20 API objects."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar."""

    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int
    complete: bool


@dataclass(frozen=True)
class AccountSummary:
    """Summary of an OANDA account."""

    account_id: str
    balance: float
    equity: float
    open_position_count: int
    currency: str


@dataclass(frozen=True)
class PriceQuote:
    """Best bid/ask for one instrument."""

    instrument: str
    bid: float
    ask: float
    time: str = ""

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2


@dataclass(frozen=True)
class LimitOrderRequest:
    """A good-till-date limit order with stop-loss and take-profit on fill."""

    instrument: str
    units: int  # positive=buy, negative=sell
    price: float
    stop_loss_price: float
    take_profit_price: float
    gtd_time: str  # RFC 3339 expiry


@dataclass(frozen=True)
class LimitOrderResult:
    """Outcome of a limit order submission.

    ``fill_price`` and ``trade_id`` are set only when the order filled
    immediately; otherwise the order rests on the book under ``order_id``.
    """

    order_id: Optional[str]
    trade_id: Optional[str] = None
    fill_price: Optional[float] = None
    time: str = ""

    @property
    def filled(self) -> bool:
        return self.fill_price is not None


@dataclass(frozen=True)
class Trade:
    """A broker trade with SL/TP details."""

    trade_id: str
    instrument: str
    units: float
    price: float
    state: str = "OPEN"  # "OPEN" or "CLOSED"
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    average_close_price: Optional[float] = None
    open_time: str = ""
    close_time: str = ""

    @property
    def is_open(self) -> bool:
        return self.state == "OPEN"


@dataclass(frozen=True)
class OrderState:
    """Current state of a previously submitted order."""

    order_id: str
    state: str  # "PENDING", "FILLED", "CANCELLED" or "TRIGGERED"
    trade_id: Optional[str] = None
    cancel_reason: str = ""
