"""Governance signals — circuit breaker and early-warning flags.

Governance is read once at the start of every live cycle and before every
exit evaluation.  Providers are injected into the executor; nothing here is
module-level state.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable

from hedgematrix.repos.db import get_connection, utc_now

CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
EARLY_WARNING = "EARLY_WARNING"


@dataclass(frozen=True)
class GovernanceState:
    """Flags that can halt entries or tighten trailing stops."""

    circuit_breaker_active: bool = False
    early_warning_active: bool = False
    reason: Optional[str] = None


@runtime_checkable
class GovernanceProvider(Protocol):
    def current_governance_state(self) -> GovernanceState:
        ...


class StaticGovernance:
    """Fixed governance state, for paper runs and tests."""

    def __init__(self, state: GovernanceState | None = None) -> None:
        self.state = state or GovernanceState()

    def current_governance_state(self) -> GovernanceState:
        return self.state


class GovernanceRepo:
    """Reads unexpired, unrevoked signals from ``governance_signals``.

    A signal with no ``agent_id`` applies to every agent.

    Args:
        db_path: Path to the SQLite database file.
        agent_id: Agent whose signals apply in addition to global ones.
    """

    def __init__(self, db_path: str, agent_id: Optional[str] = None) -> None:
        self._db_path = db_path
        self._agent_id = agent_id

    def current_governance_state(self) -> GovernanceState:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT signal, reason FROM governance_signals
                WHERE revoked = 0
                  AND expires_at > ?
                  AND (agent_id IS NULL OR agent_id = ?)
                ORDER BY id DESC
                """,
                (utc_now(), self._agent_id),
            ).fetchall()
        finally:
            conn.close()

        breakers = [r for r in rows if r["signal"] == CIRCUIT_BREAKER]
        warnings = [r for r in rows if r["signal"] == EARLY_WARNING]
        reason = None
        if breakers:
            reason = breakers[0]["reason"]
        elif warnings:
            reason = warnings[0]["reason"]
        return GovernanceState(
            circuit_breaker_active=bool(breakers),
            early_warning_active=bool(warnings),
            reason=reason,
        )

    def raise_signal(
        self,
        signal: str,
        reason: str,
        ttl_minutes: int = 60,
        agent_id: Optional[str] = None,
    ) -> int:
        """Record a signal that stays active for *ttl_minutes*.

        Raises:
            ValueError: If *signal* is not a known governance signal.
        """
        if signal not in (CIRCUIT_BREAKER, EARLY_WARNING):
            raise ValueError(f"Unknown governance signal '{signal}'")
        expires_at = (datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).isoformat()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO governance_signals
                    (signal, agent_id, reason, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (signal, agent_id, reason, expires_at, utc_now()),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def revoke(self, signal_id: int) -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                "UPDATE governance_signals SET revoked = 1 WHERE id = ?", (signal_id,)
            )
            conn.commit()
        finally:
            conn.close()
