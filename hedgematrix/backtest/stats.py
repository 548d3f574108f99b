"""Backtest statistics — pure functions for trade-series analysis."""

import math
from typing import Optional

# Profit factor / reward ratio reported when a series has no losing side
NO_LOSS_CAP = 99.0


def calculate_stats(
    trades: list[dict],
    equity: Optional[dict] = None,
    oos_fraction: float = 0.30,
) -> dict:
    """Compute summary statistics from a list of closed backtest trades.

    Each trade dict must have ``"pips"`` (friction-adjusted, float) and
    ``"leg_id"`` keys.  Trades are assumed to be in close order.

    Args:
        trades: Closed trades as produced by ``ClosedTrade.to_dict()``.
        equity: Optional ``{variant: EquityState}`` to summarise per variant.
        oos_fraction: Share of trailing trades treated as out-of-sample.

    Returns:
        Dict with headline metrics (``total_trades``, ``win_rate`` in
        percent, ``total_pips``, ``profit_factor``, ``r_ratio``,
        ``expectancy_r`` …), an ``oos`` split, a ``legs`` breakdown and,
        when *equity* is given, an ``equity`` summary per variant.
    """
    pips = [t["pips"] for t in trades]
    summary = _pip_summary(pips)

    total = len(pips)
    win_rate = summary["wins"] / total if total else 0.0
    avg_win = summary["gross_profit"] / summary["wins"] if summary["wins"] else 0.0
    avg_loss = summary["gross_loss"] / summary["losses"] if summary["losses"] else 0.0
    if avg_loss > 0:
        r_ratio = avg_win / avg_loss
    else:
        r_ratio = NO_LOSS_CAP if avg_win > 0 else 0.0
    expectancy_r = win_rate * r_ratio - (1 - win_rate) if total else 0.0

    stats = {
        "total_trades": total,
        "winning_trades": summary["wins"],
        "losing_trades": summary["losses"],
        "win_rate": round(win_rate * 100, 1),
        "total_pips": round(summary["pips"], 1),
        "avg_pips_per_trade": round(summary["pips"] / total, 1) if total else 0.0,
        "gross_profit": round(summary["gross_profit"], 1),
        "gross_loss": round(summary["gross_loss"], 1),
        "profit_factor": round(summary["profit_factor"], 2),
        "r_ratio": round(r_ratio, 2),
        "expectancy_r": round(expectancy_r, 3),
        "oos": out_of_sample_split(pips, oos_fraction),
        "legs": leg_breakdown(trades),
    }
    if equity is not None:
        stats["equity"] = {name: state.summary() for name, state in equity.items()}
    return stats


def out_of_sample_split(pips: list[float], oos_fraction: float = 0.30) -> dict:
    """Split a pip series by trade index into in-sample and out-of-sample.

    The first ``floor(n × (1 − oos_fraction))`` trades are in-sample.
    """
    if not 0 <= oos_fraction <= 1:
        raise ValueError(f"oos_fraction must be within [0, 1], got {oos_fraction}")
    split = math.floor(len(pips) * (1 - oos_fraction) + 1e-9)
    in_sample = _pip_summary(pips[:split])
    out_sample = _pip_summary(pips[split:])
    return {
        "is_trades": in_sample["count"],
        "oos_trades": out_sample["count"],
        "is_win_rate": round(in_sample["win_rate"] * 100, 1),
        "oos_win_rate": round(out_sample["win_rate"] * 100, 1),
        "is_pips": round(in_sample["pips"], 1),
        "oos_pips": round(out_sample["pips"], 1),
        "is_profit_factor": round(in_sample["profit_factor"], 2),
        "oos_profit_factor": round(out_sample["profit_factor"], 2),
    }


def leg_breakdown(trades: list[dict]) -> dict:
    """Trades, wins, losses, pips and win rate per leg id."""
    legs: dict[str, dict] = {}
    for trade in trades:
        entry = legs.setdefault(
            trade["leg_id"], {"trades": 0, "wins": 0, "losses": 0, "total_pips": 0.0}
        )
        entry["trades"] += 1
        if trade["pips"] > 0:
            entry["wins"] += 1
        else:
            entry["losses"] += 1
        entry["total_pips"] += trade["pips"]

    for entry in legs.values():
        entry["win_rate"] = round(entry["wins"] / entry["trades"] * 100, 1)
        entry["total_pips"] = round(entry["total_pips"], 1)
    return legs


# ── Helpers ──────────────────────────────────────────────────────────────


def _pip_summary(pips: list[float]) -> dict:
    """Unrounded wins/losses/gross figures for a pip series.

    A zero-pip trade counts as a loss.
    """
    winners = [p for p in pips if p > 0]
    losers = [p for p in pips if p <= 0]
    gross_profit = sum(winners)
    gross_loss = abs(sum(losers))
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = NO_LOSS_CAP if gross_profit > 0 else 0.0
    return {
        "count": len(pips),
        "wins": len(winners),
        "losses": len(losers),
        "win_rate": len(winners) / len(pips) if pips else 0.0,
        "pips": sum(pips),
        "gross_profit": gross_profit,
        "gross_loss": gross_loss,
        "profit_factor": profit_factor,
    }
