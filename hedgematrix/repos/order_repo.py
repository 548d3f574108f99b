"""Order ledger repository — SQLite CRUD for the hedge_orders table.

Every live order attempt is a ledger row.  A row is written as
``submitted`` before the broker is called, so a leg never holds two
in-flight orders even across processes.
"""

import sqlite3
from typing import Optional

from hedgematrix.models.ledger import OPEN_STATUSES, OrderDraft
from hedgematrix.repos.db import get_connection, utc_now

# Columns ``update_order`` may touch
_UPDATABLE = frozenset({
    "status", "oanda_order_id", "oanda_trade_id", "entry_price",
    "requested_price", "stop_loss", "take_profit", "slippage_pips",
    "fill_latency_ms", "gate_result", "event_json", "error_message",
    "exit_price", "exit_reason", "pips", "closed_at",
})

_INSERT_COLUMNS = (
    "agent_id, environment, leg_id, currency_pair, direction, units, "
    "status, requested_price, stop_loss, take_profit, gate_result, "
    "event_json, created_at"
)


def _draft_params(draft: OrderDraft) -> tuple:
    return (
        draft.agent_id,
        draft.environment,
        draft.leg_id,
        draft.instrument,
        draft.direction,
        draft.units,
        "submitted",
        draft.requested_price,
        draft.stop_loss,
        draft.take_profit,
        draft.event.gate_result if draft.event else None,
        draft.event.to_json() if draft.event else None,
        utc_now(),
    )


class OrderRepo:
    """Data access layer for the order ledger.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_order(self, draft: OrderDraft) -> int:
        """Insert a ``submitted`` ledger row unconditionally and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                f"INSERT INTO hedge_orders ({_INSERT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _draft_params(draft),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def acquire_slot(self, draft: OrderDraft) -> Optional[int]:
        """Atomically insert a ``submitted`` row if the slot is free.

        The slot is free when the agent holds no open row for the same leg
        or the same instrument.  Runs as one ``BEGIN IMMEDIATE`` transaction.

        Returns:
            The new row id, or ``None`` when the slot is already taken.
        """
        placeholders = ", ".join("?" for _ in OPEN_STATUSES)
        conn = get_connection(self._db_path)
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cur = conn.execute(
                    f"""
                    INSERT INTO hedge_orders ({_INSERT_COLUMNS})
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM hedge_orders
                        WHERE agent_id = ?
                          AND (leg_id = ? OR currency_pair = ?)
                          AND status IN ({placeholders})
                    )
                    """,
                    (
                        *_draft_params(draft),
                        draft.agent_id, draft.leg_id, draft.instrument,
                        *OPEN_STATUSES,
                    ),
                )
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                return None
            conn.execute("COMMIT")
            return cur.lastrowid if cur.rowcount == 1 else None
        finally:
            conn.close()

    def update_order(self, order_id: int, **fields) -> None:
        """Set the given columns on a ledger row.

        Raises:
            ValueError: If a field is not an updatable ledger column.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update ledger column(s): {', '.join(sorted(unknown))}")
        if not fields:
            return

        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                f"UPDATE hedge_orders SET {assignments}, updated_at = ? WHERE id = ?",
                (*fields.values(), utc_now(), order_id),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_order(self, order_id: int) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM hedge_orders WHERE id = ?", (order_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def query_open_positions(
        self,
        agent_id: str,
        instrument: Optional[str] = None,
        statuses: tuple[str, ...] = OPEN_STATUSES,
    ) -> list[dict]:
        """Ledger rows in *statuses* for *agent_id*, oldest first."""
        placeholders = ", ".join("?" for _ in statuses)
        sql = (
            f"SELECT * FROM hedge_orders WHERE agent_id = ? AND status IN ({placeholders})"
        )
        params: list = [agent_id, *statuses]
        if instrument is not None:
            sql += " AND currency_pair = ?"
            params.append(instrument)
        sql += " ORDER BY id"

        conn = get_connection(self._db_path)
        try:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def last_closed_at(self, agent_id: str, leg_id: str) -> Optional[str]:
        """When *leg_id* last closed, or ``None`` if it never has."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT MAX(closed_at) FROM hedge_orders
                WHERE agent_id = ? AND leg_id = ? AND status = 'closed'
                """,
                (agent_id, leg_id),
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def get_orders(
        self,
        agent_id: Optional[str] = None,
        limit: int = 20,
        status_filter: Optional[str] = None,
    ) -> dict:
        """Return recent ledger rows.

        Returns:
            ``{"orders": [...], "total": int}``
        """
        conditions: list[str] = []
        params: list = []
        if agent_id:
            conditions.append("agent_id = ?")
            params.append(agent_id)
        if status_filter:
            conditions.append("status = ?")
            params.append(status_filter)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                f"SELECT * FROM hedge_orders {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM hedge_orders {where_clause}",
                params,
            ).fetchone()[0]
            return {"orders": [dict(r) for r in rows], "total": total}
        finally:
            conn.close()
