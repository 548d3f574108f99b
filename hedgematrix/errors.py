"""Error taxonomy for the hedge decision core.

None of these abort a live cycle or a backtest run on their own; callers
catch them per leg (or per pair) and record the outcome.
"""


class HedgeMatrixError(RuntimeError):
    pass


class DataUnavailable(HedgeMatrixError):
    """Not enough bar history to evaluate a pair or leg."""


class InstrumentUnresolvable(HedgeMatrixError):
    """Neither ordering of a currency pair is a tradable instrument."""


class SlotOccupied(HedgeMatrixError):
    """The leg or instrument already holds an open position."""


class BrokerRejected(HedgeMatrixError):
    """The broker refused or cancelled an order.

    Args:
        reason: Broker-supplied reject reason or error message.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SanityViolation(HedgeMatrixError):
    """A computed stop sat on the wrong side of entry.

    Never propagated past the risk sizer: the stop is replaced by a
    fallback distance and the violation is logged.
    """
