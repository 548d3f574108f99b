"""Internal API routers — /status, /orders and /backtests endpoints.

No business logic.  Delegates to repos and the shared status dict the
executor updates every cycle.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query

logger = logging.getLogger("hedgematrix")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_DEFAULT_STATUS: dict = {
    "mode": "idle",
    "running": False,
    "agent_id": None,
    "gate_mode": None,
    "equity": None,
    "circuit_breaker_active": False,
    "early_warning_active": False,
    "open_positions": 0,
    "ranks": [],
    "cycle_count": 0,
    "last_cycle_at": None,
    "last_action": None,
    "started_at": None,
}

_status: dict = {**_DEFAULT_STATUS}
_order_repo = None     # Set via configure_routers()
_backtest_repo = None  # Set via configure_routers()


def configure_routers(
    order_repo=None,
    backtest_repo=None,
    status: Optional[dict] = None,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        order_repo: An ``OrderRepo`` instance (or duck-type for tests).
        backtest_repo: A ``BacktestRepo`` instance (or duck-type for tests).
        status: Optional initial status fields.
    """
    global _order_repo, _backtest_repo  # noqa: PLW0603
    _order_repo = order_repo
    _backtest_repo = backtest_repo
    _status.clear()
    _status.update(_DEFAULT_STATUS)
    if status:
        _status.update(status)


def update_status(**fields) -> None:
    """Update individual fields of the executor status."""
    _status.update(fields)


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Executor status: mode, equity, governance flags, latest ranks."""
    return dict(_status)


@router.get("/orders")
async def get_orders(
    limit: int = Query(default=20, ge=1, le=500),
    status: Optional[str] = Query(default=None),
):
    """Recent ledger rows for the configured agent."""
    if _order_repo is None:
        return {"orders": [], "total": 0}
    return _order_repo.get_orders(
        agent_id=_status.get("agent_id"), limit=limit, status_filter=status,
    )


@router.get("/backtests")
async def get_backtests(limit: int = Query(default=10, ge=1, le=100)):
    """Recent backtest run summaries."""
    if _backtest_repo is None:
        return {"runs": []}
    return {"runs": _backtest_repo.get_runs(limit=limit)}
