"""Historical data loader — fetches bars for every supported pair.

Requests go out concurrently in small batches to stay under the broker's
rate limit.  A pair that fails to load or returns too little history is
dropped; the backtest engine decides whether enough pairs remain.
"""

import asyncio
import logging

from hedgematrix.broker.oanda_client import complete_candles
from hedgematrix.strategy.models import SUPPORTED_INSTRUMENTS, CandleData

logger = logging.getLogger("hedgematrix.backtest")

BATCH_SIZE = 7
MIN_BARS = 100


async def load_pair_history(
    broker,
    instruments: list[str] | None = None,
    granularity: str = "M30",
    count: int = 5000,
    min_bars: int = MIN_BARS,
) -> dict[str, list[CandleData]]:
    """Fetch complete bars for each instrument.

    Args:
        broker: Anything with an async ``fetch_candles`` (``OandaClient``
            or a test double).
        instruments: Pairs to load, defaults to every supported instrument.
        granularity: Candle granularity, e.g. ``"M30"``.
        count: Candles requested per pair.
        min_bars: Pairs with this many complete bars or fewer are dropped.

    Returns:
        ``{instrument: bars}`` in sorted instrument order, oldest bar first.
    """
    names = sorted(instruments if instruments is not None else SUPPORTED_INSTRUMENTS)
    loaded: dict[str, list[CandleData]] = {}

    for start in range(0, len(names), BATCH_SIZE):
        batch = names[start:start + BATCH_SIZE]
        results = await asyncio.gather(
            *(broker.fetch_candles(name, granularity, count=count) for name in batch),
            return_exceptions=True,
        )
        for name, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.warning("History fetch failed for %s: %s", name, result)
                continue
            bars = complete_candles(result)
            if len(bars) <= min_bars:
                logger.info("Dropping %s: only %d complete bars", name, len(bars))
                continue
            loaded[name] = bars

    logger.info("Loaded %d/%d pairs at %s", len(loaded), len(names), granularity)
    return loaded
