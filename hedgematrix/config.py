"""HedgeMatrix — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "OANDA_ACCOUNT_ID",
    "OANDA_API_TOKEN",
    "OANDA_ENVIRONMENT",
]

GATE_MODES = ("all", "rank_only")


@dataclass(frozen=True)
class Config:
    """Typed configuration for the live executor, loaded from the environment."""

    oanda_account_id: str
    oanda_api_token: str
    oanda_environment: str  # "practice" or "live"
    agent_id: str = "atlas-hedge-matrix"
    risk_fraction: float = 0.05
    live_gate_mode: str = "rank_only"
    granularity: str = "M30"
    rank_candles: int = 60
    trap_offset_pips: float = 2.0
    limit_expiry_minutes: int = 10
    submit_delay_seconds: float = 0.3
    poll_interval_seconds: int = 300
    cooldown_seconds: int = 3600
    max_hold_minutes: Optional[int] = None
    db_path: str = "data/hedgematrix.db"
    log_level: str = "INFO"
    health_port: int = 8080

    @property
    def oanda_base_url(self) -> str:
        """Return the OANDA v20 API base URL based on environment."""
        if self.oanda_environment == "live":
            return "https://api-fxtrade.oanda.com"
        return "https://api-fxpractice.oanda.com"


@dataclass(frozen=True)
class BacktestConfig:
    """Parameters for a historical replay.

    ``risk_variants`` maps a label to the equity fraction risked per trade;
    every variant is sized and tracked against the same trade stream.
    """

    starting_equity: float = 1000.0
    risk_variants: dict[str, float] = field(
        default_factory=lambda: {"1pct": 0.01, "5pct": 0.05}
    )
    lookback: int = 20
    warmup_extra_bars: int = 5
    cooldown_bars: int = 2
    friction_pips: float = 1.5
    min_pairs: int = 20
    gate_mode: str = "all"
    trailing_stop: bool = True
    max_hold_bars: Optional[int] = None
    curve_every: int = 10
    oos_fraction: float = 0.30


def _optional_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, or when ``LIVE_GATE_MODE`` is unknown.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    gate_mode = os.environ.get("LIVE_GATE_MODE", "rank_only")
    if gate_mode not in GATE_MODES:
        raise ValueError(
            f"LIVE_GATE_MODE must be one of {', '.join(GATE_MODES)}, got '{gate_mode}'"
        )

    return Config(
        oanda_account_id=os.environ["OANDA_ACCOUNT_ID"],
        oanda_api_token=os.environ["OANDA_API_TOKEN"],
        oanda_environment=os.environ.get("OANDA_ENVIRONMENT", "practice"),
        agent_id=os.environ.get("AGENT_ID", "atlas-hedge-matrix"),
        risk_fraction=float(os.environ.get("RISK_FRACTION", "0.05")),
        live_gate_mode=gate_mode,
        granularity=os.environ.get("GRANULARITY", "M30"),
        rank_candles=int(os.environ.get("RANK_CANDLES", "60")),
        trap_offset_pips=float(os.environ.get("TRAP_OFFSET_PIPS", "2.0")),
        limit_expiry_minutes=int(os.environ.get("LIMIT_EXPIRY_MINUTES", "10")),
        submit_delay_seconds=float(os.environ.get("SUBMIT_DELAY_SECONDS", "0.3")),
        poll_interval_seconds=int(os.environ.get("POLL_INTERVAL_SECONDS", "300")),
        cooldown_seconds=int(os.environ.get("COOLDOWN_SECONDS", "3600")),
        max_hold_minutes=_optional_int("MAX_HOLD_MINUTES"),
        db_path=os.environ.get("DB_PATH", "data/hedgematrix.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
    )
