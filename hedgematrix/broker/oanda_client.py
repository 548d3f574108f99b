"""OANDA v20 REST API async client.

Handles all communication with OANDA: candle fetching, account and
pricing queries, limit-order placement and trade management.
"""

import asyncio
import logging
from typing import Optional

import httpx

from hedgematrix.broker.models import (
    AccountSummary,
    Candle,
    LimitOrderRequest,
    LimitOrderResult,
    OrderState,
    PriceQuote,
    Trade,
)
from hedgematrix.config import Config
from hedgematrix.errors import BrokerRejected
from hedgematrix.strategy.models import CandleData, price_precision

logger = logging.getLogger("hedgematrix")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}


def complete_candles(candles: list[Candle]) -> list[CandleData]:
    """Drop the still-forming candle(s) and convert to strategy bars."""
    return [
        CandleData(c.time, c.open, c.high, c.low, c.close, c.volume)
        for c in candles
        if c.complete
    ]


class OandaClient:
    """Async client wrapping OANDA v20 REST API."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._base_url = config.oanda_base_url
        self._account_id = config.oanda_account_id
        self._headers = {
            "Authorization": f"Bearer {config.oanda_api_token}",
            "Content-Type": "application/json",
        }

    @property
    def _account_url(self) -> str:
        return f"{self._base_url}/v3/accounts/{self._account_id}"

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        retry: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.  With
        ``retry=False`` the request is sent exactly once and transient
        errors are raised as-is.
        """
        last_exc: Optional[Exception] = None
        attempts = _MAX_RETRIES if retry else 1

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=30.0,
                        **kwargs,
                    )

                if retry and resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "OANDA %s %s returned %d — retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                if not retry:
                    raise
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "OANDA %s %s transport error (%s) — retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        # All retries exhausted — raise the last error
        raise last_exc  # type: ignore[misc]

    # ── Candle data ──────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        instrument: str,
        granularity: str,
        count: int = 50,
    ) -> list[Candle]:
        """Fetch candlestick data from OANDA.

        Args:
            instrument: e.g. ``"EUR_USD"``
            granularity: e.g. ``"M30"``, ``"M15"``
            count: number of candles to request (max 5000)

        Returns:
            List of ``Candle`` objects ordered oldest-first.  The last one
            may be incomplete; see ``complete_candles``.
        """
        url = f"{self._base_url}/v3/instruments/{instrument}/candles"
        params = {
            "granularity": granularity,
            "count": count,
            "price": "M",  # mid prices
        }

        resp = await self._request_with_retry("get", url, params=params)

        candles: list[Candle] = []
        for c in resp.json().get("candles", []):
            mid = c["mid"]
            candles.append(
                Candle(
                    time=c["time"],
                    open=float(mid["o"]),
                    high=float(mid["h"]),
                    low=float(mid["l"]),
                    close=float(mid["c"]),
                    volume=int(c["volume"]),
                    complete=bool(c["complete"]),
                )
            )
        return candles

    # ── Account ──────────────────────────────────────────────────────────

    async def get_account_summary(self) -> AccountSummary:
        """Query OANDA for account balance, equity, and open position count."""
        resp = await self._request_with_retry("get", f"{self._account_url}/summary")

        acct = resp.json()["account"]
        return AccountSummary(
            account_id=acct["id"],
            balance=float(acct["balance"]),
            equity=float(acct["NAV"]),
            open_position_count=int(acct["openPositionCount"]),
            currency=acct["currency"],
        )

    async def get_equity(self) -> float:
        """Current account NAV."""
        summary = await self.get_account_summary()
        return summary.equity

    # ── Pricing ──────────────────────────────────────────────────────────

    async def get_price(self, instrument: str) -> PriceQuote:
        """Best bid/ask for *instrument*.

        Raises:
            ValueError: If OANDA returns no price for the instrument.
        """
        resp = await self._request_with_retry(
            "get", f"{self._account_url}/pricing", params={"instruments": instrument},
        )
        prices = resp.json().get("prices", [])
        if not prices:
            raise ValueError(f"No price returned for {instrument}")

        p = prices[0]
        bids = p.get("bids") or [{"price": p.get("closeoutBid", "0")}]
        asks = p.get("asks") or [{"price": p.get("closeoutAsk", "0")}]
        return PriceQuote(
            instrument=p.get("instrument", instrument),
            bid=float(bids[0]["price"]),
            ask=float(asks[0]["price"]),
            time=p.get("time", ""),
        )

    async def get_mid_price(self, instrument: str) -> float:
        """Mid of the best bid and ask."""
        quote = await self.get_price(instrument)
        return quote.mid

    # ── Orders ───────────────────────────────────────────────────────────

    async def place_limit_order(self, order: LimitOrderRequest) -> LimitOrderResult:
        """Place a GTD limit order with stop-loss and take-profit on fill.

        Args:
            order: ``LimitOrderRequest`` with instrument, signed units,
                limit price, SL, TP and expiry.

        Returns:
            ``LimitOrderResult`` — filled (price and trade id) when the limit
            was marketable, otherwise resting under its order id.

        Raises:
            BrokerRejected: On a 4xx response or when OANDA cancels the
                order in the same transaction.
        """
        prec = price_precision(order.instrument)
        body = {
            "order": {
                "type": "LIMIT",
                "instrument": order.instrument,
                "units": str(int(order.units)),
                "price": f"{order.price:.{prec}f}",
                "timeInForce": "GTD",
                "gtdTime": order.gtd_time,
                "positionFill": "DEFAULT",
                "triggerCondition": "DEFAULT",
                "stopLossOnFill": {
                    "price": f"{order.stop_loss_price:.{prec}f}",
                    "timeInForce": "GTC",
                },
                "takeProfitOnFill": {
                    "price": f"{order.take_profit_price:.{prec}f}",
                    "timeInForce": "GTC",
                },
            }
        }

        try:
            resp = await self._request_with_retry(
                "post", f"{self._account_url}/orders", retry=False, json=body,
            )
        except httpx.HTTPStatusError as exc:
            if 400 <= exc.response.status_code < 500:
                raise BrokerRejected(_reject_reason(exc.response)) from exc
            raise

        data = resp.json()
        cancel = data.get("orderCancelTransaction")
        if cancel is not None:
            raise BrokerRejected(cancel.get("reason", "ORDER_CANCELLED"))

        created = data.get("orderCreateTransaction", {})
        fill = data.get("orderFillTransaction")
        if fill is None:
            return LimitOrderResult(order_id=created.get("id"), time=created.get("time", ""))

        opened = fill.get("tradeOpened") or {}
        return LimitOrderResult(
            order_id=created.get("id") or fill.get("orderID"),
            trade_id=opened.get("tradeID"),
            fill_price=float(fill["price"]),
            time=fill.get("time", ""),
        )

    async def get_order_state(self, order_id: str) -> OrderState:
        """Look up a previously submitted order (e.g. a resting limit)."""
        resp = await self._request_with_retry("get", f"{self._account_url}/orders/{order_id}")
        order = resp.json()["order"]
        return OrderState(
            order_id=order["id"],
            state=order.get("state", ""),
            trade_id=order.get("tradeOpenedID"),
            cancel_reason=order.get("cancelReason", ""),
        )

    # ── Trades ───────────────────────────────────────────────────────────

    async def list_open_trades(self) -> list[Trade]:
        """Return all open trades with SL/TP details."""
        resp = await self._request_with_retry("get", f"{self._account_url}/openTrades")
        return [_parse_trade(t) for t in resp.json().get("trades", [])]

    async def get_trade(self, trade_id: str) -> Trade:
        """Return one trade, open or closed."""
        resp = await self._request_with_retry("get", f"{self._account_url}/trades/{trade_id}")
        return _parse_trade(resp.json()["trade"])

    async def modify_trade_sl(
        self,
        trade_id: str,
        instrument: str,
        new_sl_price: float,
    ) -> dict:
        """Replace the stop-loss on an open trade.

        Args:
            trade_id: OANDA trade ID.
            instrument: Trade instrument, for price precision.
            new_sl_price: New stop-loss price.

        Returns:
            Raw OANDA response dict.
        """
        prec = price_precision(instrument)
        body = {
            "stopLoss": {
                "price": f"{new_sl_price:.{prec}f}",
                "timeInForce": "GTC",
            }
        }
        resp = await self._request_with_retry(
            "put", f"{self._account_url}/trades/{trade_id}/orders", json=body,
        )
        return resp.json()

    async def close_trade(self, trade_id: str) -> float:
        """Close all units of a trade at market.

        Returns:
            The fill price of the closing transaction.
        """
        resp = await self._request_with_retry(
            "put", f"{self._account_url}/trades/{trade_id}/close", json={"units": "ALL"},
        )
        fill = resp.json()["orderFillTransaction"]
        return float(fill["price"])


# ── Parsing helpers ──────────────────────────────────────────────────────


def _reject_reason(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"OANDA {resp.status_code}"
    reject = data.get("orderRejectTransaction") or {}
    return (
        data.get("errorMessage")
        or reject.get("rejectReason")
        or data.get("rejectReason")
        or f"OANDA {resp.status_code}"
    )


def _parse_trade(t: dict) -> Trade:
    sl_price = None
    tp_price = None
    if "stopLossOrder" in t:
        sl_price = float(t["stopLossOrder"].get("price", 0))
    if "takeProfitOrder" in t:
        tp_price = float(t["takeProfitOrder"].get("price", 0))
    close_price = t.get("averageClosePrice")
    return Trade(
        trade_id=t["id"],
        instrument=t["instrument"],
        units=float(t.get("currentUnits", t.get("initialUnits", "0"))),
        price=float(t["price"]),
        state=t.get("state", "OPEN"),
        unrealized_pnl=float(t.get("unrealizedPL", "0")),
        realized_pnl=float(t.get("realizedPL", "0")),
        stop_loss_price=sl_price,
        take_profit_price=tp_price,
        average_close_price=float(close_price) if close_price is not None else None,
        open_time=t.get("openTime", ""),
        close_time=t.get("closeTime", ""),
    )
