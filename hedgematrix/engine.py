"""HedgeMatrix — live executor (orchestration loop).

Runs the same rank → gate → risk logic as the backtest against live OANDA
data.  Each entry cycle places at most one limit order per free leg; the
exit monitor settles filled trades through the lifecycle exit rules.

The ledger is the source of truth between cycles: open legs, cooldowns
and trailing stops are rebuilt from it, so a restart loses nothing.
"""

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from hedgematrix.api.routers import update_status
from hedgematrix.backtest.loader import load_pair_history
from hedgematrix.broker.models import LimitOrderRequest
from hedgematrix.broker.oanda_client import complete_candles
from hedgematrix.config import BacktestConfig, Config
from hedgematrix.errors import (
    BrokerRejected,
    DataUnavailable,
    InstrumentUnresolvable,
    SlotOccupied,
)
from hedgematrix.governance import GovernanceProvider
from hedgematrix.lifecycle import ExitReason, OpenPosition, PositionState, TradeLifecycleManager
from hedgematrix.models.ledger import LedgerEvent, OrderDraft
from hedgematrix.repos.db import utc_now
from hedgematrix.risk.position_sizer import calculate_units
from hedgematrix.risk.sl_tp import calculate_hedge_risk, compute_dynamic_stop
from hedgematrix.strategy.gates import evaluate_gates, required_gates
from hedgematrix.strategy.indicator_feed import IndicatorFeed
from hedgematrix.strategy.indicators import calculate_atr
from hedgematrix.strategy.instruments import build_candidate
from hedgematrix.strategy.models import (
    HEDGE_LEGS,
    MAX_POSITIONS,
    CurrencyRank,
    HedgeLeg,
    TradeCandidate,
    pip_value,
)
from hedgematrix.strategy.ranking import align_recent, compute_rankings

logger = logging.getLogger("hedgematrix")

LOOKBACK = 20
LEG_CANDLES = 30
MIN_LEG_BARS = LOOKBACK + 1
INDICATOR_TIMEFRAME = "M15"
LIVE_VARIANT = "live"


def _epoch(iso: str) -> float:
    return datetime.fromisoformat(iso.replace("Z", "+00:00")).timestamp()


def _position_from_row(row: dict) -> OpenPosition:
    """Rebuild an ``OpenPosition`` from a ledger row.

    A stored stop on the profit side of entry means the trail already armed.
    """
    entry = row["entry_price"] if row["entry_price"] is not None else row["requested_price"]
    stop = row["stop_loss"]
    if row["direction"] == "long":
        trailing = stop >= entry
    else:
        trailing = stop <= entry
    return OpenPosition(
        leg_id=row["leg_id"],
        instrument=row["currency_pair"],
        direction=row["direction"],
        entry_price=entry,
        stop_price=stop,
        take_profit=row["take_profit"],
        entry_marker=_epoch(row["created_at"]),
        units={LIVE_VARIANT: row["units"]},
        entry_time=row["created_at"],
        state=PositionState.OPEN if row["status"] == "filled" else PositionState.PENDING,
        trailing_active=trailing,
        ledger_id=row["id"],
    )


class HedgeExecutor:
    """Orchestrates one entry cycle and one exit sweep per poll.

    Args:
        config: Application configuration.
        broker: An ``OandaClient`` (or compatible duck-type / mock).
        order_repo: Ledger access (``OrderRepo`` or duck-type).
        governance: Source of circuit-breaker / early-warning flags.
        indicator_feed: Trend reference and ATR for the dynamic stop.
            ``None`` falls back to fixed per-pair stop distances.
        equity_repo: Optional ``EquityRepo`` to snapshot equity each cycle.
        mode: ``"paper"`` or ``"live"``, reported in status and snapshots.
        legs: Hedge leg descriptors.
    """

    def __init__(
        self,
        config: Config,
        broker,
        order_repo,
        governance: GovernanceProvider,
        indicator_feed: Optional[IndicatorFeed] = None,
        equity_repo=None,
        mode: str = "paper",
        legs: tuple[HedgeLeg, ...] = HEDGE_LEGS,
    ) -> None:
        self._config = config
        self._broker = broker
        self._orders = order_repo
        self._governance = governance
        self._feed = indicator_feed
        self._equity_repo = equity_repo
        self._mode = mode
        self._legs = legs
        self._required = required_gates(config.live_gate_mode)
        self._running: bool = False
        self._cycle_count: int = 0

        backtest_mode = BacktestConfig().gate_mode
        if config.live_gate_mode != backtest_mode:
            logger.warning(
                "Live gate mode '%s' differs from backtest gate mode '%s' — "
                "live entries are not validated by the backtest",
                config.live_gate_mode, backtest_mode,
            )

    # ── Lifecycle ────────────────────────────────────────────────────────

    def stop(self) -> None:
        """Signal the executor to stop after the current cycle."""
        self._running = False

    def _lifecycle(self, rows: list[dict], friction_pips: float = 0.0) -> TradeLifecycleManager:
        """Lifecycle manager seeded with the ledger's open rows and cooldowns."""
        max_hold = None
        if self._config.max_hold_minutes is not None:
            max_hold = self._config.max_hold_minutes * 60
        lifecycle = TradeLifecycleManager(
            max_positions=MAX_POSITIONS,
            cooldown=self._config.cooldown_seconds,
            friction_pips=friction_pips,
            max_hold=max_hold,
        )
        for row in rows:
            lifecycle.adopt(_position_from_row(row))
        for leg in self._legs:
            closed_at = self._orders.last_closed_at(self._config.agent_id, leg.id)
            if closed_at:
                lifecycle.start_cooldown(leg.id, _epoch(closed_at))
        return lifecycle

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(
        self,
        poll_interval: int | None = None,
        max_cycles: int = 0,
    ) -> list[dict]:
        """Run exit sweep + entry cycle until stopped.

        Args:
            poll_interval: Seconds between cycles. Defaults to config.
            max_cycles: Stop after this many cycles (0 = unlimited).

        Returns:
            List of per-cycle result dicts.
        """
        if poll_interval is None:
            poll_interval = self._config.poll_interval_seconds
        self._running = True
        update_status(
            mode=self._mode,
            running=True,
            agent_id=self._config.agent_id,
            gate_mode=self._config.live_gate_mode,
            started_at=utc_now(),
        )
        results: list[dict] = []
        cycle = 0

        while self._running:
            cycle += 1
            self._cycle_count += 1
            try:
                exits = await self.monitor_positions()
                result = await self.run_once()
                result["exits"] = exits
                results.append(result)
                logger.info("Cycle %d: %s", cycle, result.get("action", "unknown"))
            except Exception as exc:
                logger.error("Cycle %d error: %s", cycle, exc)
                result = {"action": "error", "reason": str(exc)}
                results.append(result)

            update_status(
                cycle_count=self._cycle_count,
                last_cycle_at=utc_now(),
                last_action=result.get("action"),
            )

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep — checks _running every second
            for _ in range(poll_interval):
                if not self._running:
                    break
                await asyncio.sleep(1)

        self._running = False
        update_status(running=False)
        return results

    # ── Entry cycle ──────────────────────────────────────────────────────

    async def _rank_currencies(self) -> list[CurrencyRank]:
        pair_bars = await load_pair_history(
            self._broker,
            granularity=self._config.granularity,
            count=self._config.rank_candles,
            min_bars=LOOKBACK,
        )
        if not pair_bars:
            raise DataUnavailable("No pair history available for ranking")
        aligned = align_recent(pair_bars)
        common = min(len(bars) for bars in aligned.values())
        return compute_rankings(aligned, common - 1, LOOKBACK)

    async def _leg_bars(self, instrument: str):
        raw = await self._broker.fetch_candles(
            instrument, self._config.granularity, count=LEG_CANDLES,
        )
        bars = complete_candles(raw)
        if len(bars) < MIN_LEG_BARS:
            raise DataUnavailable(
                f"{instrument}: {len(bars)} complete bars, need {MIN_LEG_BARS}"
            )
        return bars

    async def _trap_price(self, candidate: TradeCandidate, fallback: float) -> float:
        """Mid ∓ trap offset: below mid for longs, above for shorts."""
        try:
            mid = await self._broker.get_mid_price(candidate.instrument)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Pricing unavailable for %s (%s) — trapping from last close",
                candidate.instrument, exc,
            )
            mid = fallback
        offset = self._config.trap_offset_pips * pip_value(candidate.instrument)
        return mid - offset if candidate.direction == "long" else mid + offset

    async def run_once(self, utc_now_dt: Optional[datetime] = None) -> dict:
        """Execute one entry cycle.

        Returns a dict describing the action taken:

        - ``{"action": "halted", "reason": "circuit_breaker"}``
        - ``{"action": "skipped", "reason": "all_legs_open"}``
        - ``{"action": "cycle_complete", "placed": n, "legs": [...]}``

        Args:
            utc_now_dt: Current UTC datetime.  Defaults to ``datetime.now(UTC)``.
        """
        if utc_now_dt is None:
            utc_now_dt = datetime.now(timezone.utc)
        now = utc_now_dt.timestamp()
        cfg = self._config

        # 1 ── Governance
        gov = self._governance.current_governance_state()
        update_status(
            circuit_breaker_active=gov.circuit_breaker_active,
            early_warning_active=gov.early_warning_active,
        )
        if gov.circuit_breaker_active:
            logger.warning("Circuit breaker active: %s", gov.reason)
            return {"action": "halted", "reason": "circuit_breaker", "detail": gov.reason}

        # 2 ── Open legs
        open_rows = self._orders.query_open_positions(cfg.agent_id)
        update_status(open_positions=len(open_rows))
        if len(open_rows) >= MAX_POSITIONS:
            logger.info("All %d hedge legs already open", MAX_POSITIONS)
            return {"action": "skipped", "reason": "all_legs_open", "open_count": len(open_rows)}
        lifecycle = self._lifecycle(open_rows)
        open_pairs = {row["currency_pair"] for row in open_rows}

        # 3 ── Ranks
        ranks = await self._rank_currencies()
        update_status(ranks=[{"currency": r.currency, "score": r.score, "rank": r.rank} for r in ranks])
        logger.info("Ranks: %s", " ".join(f"#{r.rank}={r.currency}" for r in ranks))

        # 4 ── Equity, read once per cycle
        equity = await self._broker.get_equity()
        update_status(equity=equity)
        if self._equity_repo is not None:
            self._equity_repo.insert_snapshot(cfg.agent_id, self._mode, equity, len(open_rows))

        # 5 ── Legs in order
        legs: list[dict] = []
        placed = 0
        for leg in self._legs:
            if not lifecycle.can_open():
                legs.append({"leg": leg.id, "status": "skipped", "reason": "position_cap"})
                continue
            if lifecycle.is_open(leg.id):
                legs.append({"leg": leg.id, "status": "skipped", "reason": "leg_open"})
                continue
            if lifecycle.in_cooldown(leg.id, now):
                legs.append({"leg": leg.id, "status": "skipped", "reason": "cooldown"})
                continue

            try:
                candidate = build_candidate(leg, ranks)
                if candidate.instrument in open_pairs:
                    raise SlotOccupied(f"{candidate.instrument} already open")
                outcome = await self._enter_leg(candidate, ranks, equity, lifecycle, utc_now_dt)
            except (InstrumentUnresolvable, DataUnavailable, SlotOccupied) as exc:
                logger.info("%s skipped: %s", leg.id, exc)
                legs.append({
                    "leg": leg.id, "status": "skipped",
                    "reason": type(exc).__name__, "detail": str(exc),
                })
                continue

            legs.append(outcome)
            if outcome["status"] in ("filled", "pending_limit"):
                placed += 1
                open_pairs.add(candidate.instrument)
                await asyncio.sleep(cfg.submit_delay_seconds)

        logger.info("Cycle complete: %d order(s) placed", placed)
        return {
            "action": "cycle_complete",
            "placed": placed,
            "equity": equity,
            "ranks": [r.currency for r in ranks],
            "legs": legs,
        }

    async def _enter_leg(
        self,
        candidate: TradeCandidate,
        ranks: list[CurrencyRank],
        equity: float,
        lifecycle: TradeLifecycleManager,
        utc_now_dt: datetime,
    ) -> dict:
        """Gate, size and submit one candidate.  Returns the leg outcome dict.

        Raises:
            DataUnavailable: Too few complete bars for the instrument.
            SlotOccupied: The ledger already holds this leg or instrument.
        """
        cfg = self._config
        leg = candidate.leg
        instrument = candidate.instrument

        bars = await self._leg_bars(instrument)
        gates = evaluate_gates(candidate, bars, ranks, self._required, LOOKBACK)
        if not gates.passed:
            return {
                "leg": leg.id, "pair": instrument, "status": "skipped",
                "reason": "gates_failed", "failed": gates.failed,
            }

        pip = pip_value(instrument)
        atr = calculate_atr(bars)
        limit_price = await self._trap_price(candidate, bars[-1].close)
        risk = calculate_hedge_risk(limit_price, candidate.direction, atr, leg, pip)
        units = calculate_units(equity, cfg.risk_fraction, leg.weight, risk.stop_distance)
        expires_at = (
            utc_now_dt + timedelta(minutes=cfg.limit_expiry_minutes)
        ).isoformat().replace("+00:00", "Z")

        event = LedgerEvent(
            leg_id=leg.id,
            leg_label=leg.label,
            strong_currency=candidate.strong_currency,
            strong_rank=leg.strong_rank,
            weak_currency=candidate.weak_currency,
            weak_rank=leg.weak_rank,
            gate_result=gates.label,
            gate_checks=dict(gates.checks),
            limit_price=limit_price,
            expires_at=expires_at,
            stop_pips=round(risk.stop_pips(pip), 1),
            tp_ratio=leg.tp_ratio,
        )
        draft = OrderDraft(
            agent_id=cfg.agent_id,
            environment=cfg.oanda_environment,
            leg_id=leg.id,
            instrument=instrument,
            direction=candidate.direction,
            units=units,
            requested_price=limit_price,
            stop_loss=risk.sl,
            take_profit=risk.tp,
            event=event,
        )
        ledger_id = self._orders.acquire_slot(draft)
        if ledger_id is None:
            raise SlotOccupied(f"{leg.id} / {instrument} held by another writer")

        signed_units = units if candidate.direction == "long" else -units
        started = time.monotonic()
        try:
            result = await self._broker.place_limit_order(
                LimitOrderRequest(
                    instrument=instrument,
                    units=signed_units,
                    price=limit_price,
                    stop_loss_price=risk.sl,
                    take_profit_price=risk.tp,
                    gtd_time=expires_at,
                )
            )
        except (BrokerRejected, httpx.HTTPError) as exc:
            reason = exc.reason if isinstance(exc, BrokerRejected) else str(exc)
            logger.warning("OANDA rejected %s %s: %s", leg.id, instrument, reason)
            self._orders.update_order(
                ledger_id,
                status="rejected",
                error_message=reason,
                event_json=replace(event, rejection_reason=reason).to_json(),
            )
            return {
                "leg": leg.id, "pair": instrument, "direction": candidate.direction,
                "status": "rejected", "error": reason,
            }
        latency_ms = int((time.monotonic() - started) * 1000)

        slippage = None
        if result.filled:
            slippage = abs(result.fill_price - limit_price) / pip
        self._orders.update_order(
            ledger_id,
            status="filled" if result.filled else "open",
            oanda_order_id=result.order_id,
            oanda_trade_id=result.trade_id,
            entry_price=result.fill_price,
            requested_price=limit_price,
            slippage_pips=slippage,
            fill_latency_ms=latency_ms,
            gate_result=gates.label,
        )
        lifecycle.open_position(
            candidate, limit_price, risk, {LIVE_VARIANT: units}, utc_now_dt.timestamp(),
            state=PositionState.OPEN if result.filled else PositionState.PENDING,
        )

        status = "filled" if result.filled else "pending_limit"
        logger.info(
            "%s → %s %s LIMIT %du @ %.5f [%s] [%dms]",
            leg.label, instrument, candidate.direction.upper(),
            units, limit_price, status, latency_ms,
        )
        return {
            "leg": leg.id, "pair": instrument, "direction": candidate.direction,
            "status": status, "units": units,
            "entry_price": result.fill_price if result.filled else limit_price,
            "sl": risk.sl, "tp": risk.tp, "gate_result": gates.label,
            "ledger_id": ledger_id,
        }

    # ── Exit monitor ─────────────────────────────────────────────────────

    async def _sync_resting_orders(self) -> list[dict]:
        """Promote filled limits to ``filled``; retire expired or cancelled ones."""
        updates: list[dict] = []
        rows = self._orders.query_open_positions(self._config.agent_id, statuses=("open",))
        for row in rows:
            if not row["oanda_order_id"]:
                continue
            try:
                order = await self._broker.get_order_state(row["oanda_order_id"])
                if order.state == "FILLED" and order.trade_id:
                    trade = await self._broker.get_trade(order.trade_id)
                    pip = pip_value(row["currency_pair"])
                    self._orders.update_order(
                        row["id"],
                        status="filled",
                        oanda_trade_id=order.trade_id,
                        entry_price=trade.price,
                        slippage_pips=abs(trade.price - row["requested_price"]) / pip,
                    )
                    updates.append({"ledger_id": row["id"], "status": "filled"})
                elif order.state == "CANCELLED":
                    self._orders.update_order(
                        row["id"], status="cancelled",
                        error_message=order.cancel_reason or "CANCELLED",
                    )
                    updates.append({"ledger_id": row["id"], "status": "cancelled"})
            except httpx.HTTPError as exc:
                logger.warning("Order sync failed for ledger %d: %s", row["id"], exc)
        return updates

    async def monitor_positions(self, utc_now_dt: Optional[datetime] = None) -> list[dict]:
        """Settle every filled trade through the exit rules.

        Returns:
            One dict per trade that was closed (by this sweep or externally).
        """
        if utc_now_dt is None:
            utc_now_dt = datetime.now(timezone.utc)
        now = utc_now_dt.timestamp()

        await self._sync_resting_orders()

        gov = self._governance.current_governance_state()
        rows = self._orders.query_open_positions(self._config.agent_id, statuses=("filled",))
        lifecycle = self._lifecycle(rows)
        by_id = {p.ledger_id: p for p in lifecycle.positions}

        closed: list[dict] = []
        for row in rows:
            trade_id = row["oanda_trade_id"]
            position = by_id[row["id"]]
            if not trade_id:
                continue
            try:
                trade = await self._broker.get_trade(trade_id)
                if not trade.is_open:
                    exit_price = trade.average_close_price or position.entry_price
                    record = lifecycle.close_position(
                        position, exit_price, ExitReason.EXTERNAL, now, utc_now_dt.isoformat(),
                    )
                    self._record_close(row["id"], record)
                    closed.append(record.to_dict())
                    continue

                price = await self._broker.get_mid_price(position.instrument)
                indicators = None
                if self._feed is not None:
                    indicators = await self._feed.get_indicators(
                        position.instrument, INDICATOR_TIMEFRAME,
                    )
                dynamic_stop = compute_dynamic_stop(
                    position.direction, position.entry_price, position.instrument, indicators,
                )
                stop_before = position.stop_price
                decision = lifecycle.evaluate_exit(
                    position, price, dynamic_stop, gov.early_warning_active, now,
                )
                if position.stop_price != stop_before:
                    # Broker first: a failed push leaves the ledger stop unarmed for the next sweep
                    if not decision.should_close:
                        await self._broker.modify_trade_sl(
                            trade_id, position.instrument, position.stop_price,
                        )
                        logger.info(
                            "%s %s stop moved to %.5f",
                            position.leg_id, position.instrument, position.stop_price,
                        )
                    self._orders.update_order(row["id"], stop_loss=position.stop_price)

                if not decision.should_close:
                    logger.debug("%s %s: %s", position.leg_id, position.instrument, decision.detail)
                    continue

                logger.info("%s %s exit: %s", position.leg_id, position.instrument, decision.detail)
                exit_price = await self._broker.close_trade(trade_id)
                record = lifecycle.close_position(
                    position, exit_price, decision.reason, now, utc_now_dt.isoformat(),
                )
                self._record_close(row["id"], record)
                closed.append(record.to_dict())
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Exit check failed for ledger %d: %s", row["id"], exc)

        return closed

    def _record_close(self, ledger_id: int, record) -> None:
        self._orders.update_order(
            ledger_id,
            status="closed",
            exit_price=record.exit_price,
            exit_reason=record.reason.value,
            pips=round(record.pips, 1),
            closed_at=record.exit_time or utc_now(),
        )
