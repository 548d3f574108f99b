"""Backtest run repository — persists backtest summaries to SQLite."""

import json

from hedgematrix.repos.db import get_connection, utc_now


class BacktestRepo:
    """Data access layer for the ``backtest_runs`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def insert_run(
        self,
        granularity: str,
        start_date: str,
        end_date: str,
        pairs_loaded: int,
        total_bars: int,
        gate_mode: str,
        stats: dict,
    ) -> int:
        """Persist a backtest run summary.  Returns the row id.

        The full stats dict (OOS split, legs, equity curves) is kept as JSON.
        """
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO backtest_runs
                    (granularity, start_date, end_date, pairs_loaded,
                     total_bars, gate_mode, total_trades, winning_trades,
                     losing_trades, win_rate, total_pips, profit_factor,
                     expectancy_r, stats_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    granularity,
                    start_date,
                    end_date,
                    pairs_loaded,
                    total_bars,
                    gate_mode,
                    stats["total_trades"],
                    stats["winning_trades"],
                    stats["losing_trades"],
                    stats["win_rate"],
                    stats["total_pips"],
                    stats.get("profit_factor"),
                    stats.get("expectancy_r"),
                    json.dumps(stats),
                    utc_now(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_runs(self, limit: int = 10) -> list[dict]:
        """Return recent backtest run summaries, stats decoded."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM backtest_runs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()

        runs = []
        for row in rows:
            run = dict(row)
            run["stats"] = json.loads(run.pop("stats_json"))
            runs.append(run)
        return runs
