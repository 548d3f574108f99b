"""HedgeMatrix — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
paper, live, backtest, and monitor modes.
"""

import logging

from fastapi import FastAPI

from hedgematrix.api.routers import router

app = FastAPI(title="HedgeMatrix Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("hedgematrix")


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


def warn_if_live(mode: str) -> bool:
    """Log a prominent warning when running in live mode.

    Returns ``True`` if *mode* is ``"live"``.
    """
    if mode == "live":
        logger.warning(
            "LIVE TRADING MODE — Real money at risk! Starting in 5 seconds..."
        )
        return True
    return False


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio
    import signal
    import time

    from hedgematrix.api.routers import configure_routers
    from hedgematrix.broker.oanda_client import OandaClient
    from hedgematrix.config import load_config
    from hedgematrix.engine import HedgeExecutor
    from hedgematrix.governance import GovernanceRepo
    from hedgematrix.repos.backtest_repo import BacktestRepo
    from hedgematrix.repos.db import init_db
    from hedgematrix.repos.equity_repo import EquityRepo
    from hedgematrix.repos.order_repo import OrderRepo
    from hedgematrix.strategy.indicator_feed import CandleIndicatorFeed

    parser = argparse.ArgumentParser(description="HedgeMatrix rank-divergence hedge")
    parser.add_argument(
        "--mode",
        choices=["paper", "live", "backtest", "monitor"],
        default="paper",
        help="Run mode (default: paper)",
    )
    parser.add_argument(
        "--candles",
        type=int,
        default=5000,
        help="Backtest candles per pair (default: 5000)",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=0,
        help="Stop after this many cycles (0 = unlimited)",
    )
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the executor without the API server",
    )
    args = parser.parse_args()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db(config.db_path)

    broker = OandaClient(config)
    order_repo = OrderRepo(config.db_path)
    backtest_repo = BacktestRepo(config.db_path)

    if args.mode == "backtest":
        _run_backtest(config, broker, backtest_repo, args.candles)
        return

    if warn_if_live(args.mode):
        time.sleep(5)

    configure_routers(
        order_repo=order_repo,
        backtest_repo=backtest_repo,
        status={"mode": args.mode, "agent_id": config.agent_id},
    )
    executor = HedgeExecutor(
        config=config,
        broker=broker,
        order_repo=order_repo,
        governance=GovernanceRepo(config.db_path, agent_id=config.agent_id),
        indicator_feed=CandleIndicatorFeed(broker),
        equity_repo=EquityRepo(config.db_path),
        mode=args.mode,
    )

    if args.mode == "monitor":
        asyncio.run(_run_monitor(executor, config.poll_interval_seconds, args.max_cycles))
        return

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        executor.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    if args.engine_only:
        asyncio.run(executor.run(max_cycles=args.max_cycles))
    else:
        asyncio.run(_run_with_api(executor, args.mode, config.health_port, args.max_cycles))


async def _run_with_api(executor, mode: str, port: int = 8080, max_cycles: int = 0) -> None:
    """Start the API server and the executor loop concurrently."""
    import asyncio

    import uvicorn

    logger.info("Starting HedgeMatrix in %s mode.", mode)

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _run_executor():
        await executor.run(max_cycles=max_cycles)
        server.should_exit = True

    logger.info("Status API available at http://localhost:%d/status", port)
    results = await asyncio.gather(
        server.serve(),
        _run_executor(),
        return_exceptions=True,
    )
    logger.info("HedgeMatrix stopped. Results: %s", results)


async def _run_monitor(executor, poll_interval: int, max_cycles: int = 0) -> None:
    """Run only the exit sweep, no new entries."""
    import asyncio

    cycle = 0
    while True:
        cycle += 1
        try:
            closed = await executor.monitor_positions()
            logger.info("Monitor sweep %d: %d trade(s) closed", cycle, len(closed))
        except Exception as exc:
            logger.error("Monitor sweep %d error: %s", cycle, exc)
        if max_cycles > 0 and cycle >= max_cycles:
            break
        await asyncio.sleep(poll_interval)


def _run_backtest(config, broker, backtest_repo, candles: int) -> None:
    """Fetch history for every pair, replay it and persist the summary."""
    import asyncio

    from hedgematrix.backtest.engine import HedgeBacktestEngine
    from hedgematrix.backtest.loader import load_pair_history
    from hedgematrix.cli.report import format_backtest_report
    from hedgematrix.config import BacktestConfig

    bt_config = BacktestConfig()
    pair_bars = asyncio.run(
        load_pair_history(broker, granularity=config.granularity, count=candles)
    )
    result = HedgeBacktestEngine(bt_config).run(pair_bars)
    backtest_repo.insert_run(
        granularity=config.granularity,
        start_date=result.start_time,
        end_date=result.end_time,
        pairs_loaded=result.pairs_loaded,
        total_bars=result.total_bars,
        gate_mode=bt_config.gate_mode,
        stats=result.stats,
    )
    format_backtest_report(result.stats, result.pairs_loaded, result.total_bars)


if __name__ == "__main__":
    _run_cli()
