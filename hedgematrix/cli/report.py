"""CLI report — prints a backtest summary to the console."""


def format_backtest_report(stats: dict, pairs_loaded: int = 0, total_bars: int = 0) -> str:
    """Format and print a backtest summary.

    Args:
        stats: Dict produced by ``calculate_stats``.
        pairs_loaded: Number of pairs replayed.
        total_bars: Common bar count replayed.

    Returns:
        The formatted string (also printed to stdout).
    """
    oos = stats.get("oos", {})
    lines = [
        "──────────────── HedgeMatrix Backtest ────────────────",
        f"  Pairs / bars:    {pairs_loaded} / {total_bars}",
        f"  Trades:          {stats['total_trades']} "
        f"({stats['winning_trades']}W / {stats['losing_trades']}L)",
        f"  Win rate:        {stats['win_rate']:.1f}%",
        f"  Total pips:      {stats['total_pips']:+.1f}",
        f"  Avg pips/trade:  {stats['avg_pips_per_trade']:+.1f}",
        f"  Profit factor:   {stats['profit_factor']:.2f}",
        f"  R ratio:         {stats['r_ratio']:.2f}",
        f"  Expectancy:      {stats['expectancy_r']:+.3f}R",
        f"  In-sample:       {oos.get('is_trades', 0)} trades, "
        f"{oos.get('is_win_rate', 0.0):.1f}% WR, {oos.get('is_pips', 0.0):+.1f} pips",
        f"  Out-of-sample:   {oos.get('oos_trades', 0)} trades, "
        f"{oos.get('oos_win_rate', 0.0):.1f}% WR, {oos.get('oos_pips', 0.0):+.1f} pips",
    ]
    for leg_id, leg in sorted(stats.get("legs", {}).items()):
        lines.append(
            f"  {leg_id}:            {leg['trades']} trades, "
            f"{leg['win_rate']:.1f}% WR, {leg['total_pips']:+.1f} pips"
        )
    for name, eq in stats.get("equity", {}).items():
        lines.append(
            f"  Equity {name:<6}   ${eq['final']:,.2f} "
            f"({eq['return_pct']:+.1f}%, max DD {eq['max_drawdown_pct']:.1f}%)"
        )
    lines.append("──────────────────────────────────────────────────────")

    output = "\n".join(lines)
    print(output)
    return output
