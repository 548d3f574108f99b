"""Equity snapshot repository — SQLite operations for equity_snapshots table."""

from hedgematrix.repos.db import get_connection, utc_now


class EquityRepo:
    """Data access layer for equity snapshots.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def insert_snapshot(
        self,
        agent_id: str,
        mode: str,
        equity: float,
        open_positions: int,
    ) -> None:
        """Record the equity read at the start of a live cycle."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO equity_snapshots
                    (agent_id, mode, equity, open_positions, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (agent_id, mode, equity, open_positions, utc_now()),
            )
            conn.commit()
        finally:
            conn.close()

    def get_latest(self, agent_id: str) -> dict | None:
        """Return the most recent equity snapshot, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM equity_snapshots WHERE agent_id = ? ORDER BY id DESC LIMIT 1",
                (agent_id,),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()
