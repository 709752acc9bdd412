"""Bullish or Bust — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for the
serve, engine-only and one-shot modes.
"""

import logging

from fastapi import FastAPI

from bullbust.api.routers import router

app = FastAPI(title="Bullish or Bust Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("bullbust")


def warn_if_live(environment: str) -> bool:
    """Log a prominent warning when trading against the live account.

    Returns ``True`` if *environment* is ``"live"``.
    """
    if environment == "live":
        logger.warning("LIVE TRADING — real money at risk!")
        return True
    return False


def build_engine(config, preset_name=None):
    """Wire clients, gateway and engine from *config*."""
    from bullbust.broker.alpaca_client import AlpacaClient
    from bullbust.engine.engine import TradingEngine
    from bullbust.market.cryptocompare_client import CryptoCompareClient
    from bullbust.market.gateway import MarketDataGateway

    broker = AlpacaClient(config)
    market = MarketDataGateway(
        data_client=CryptoCompareClient(config),
        quote_client=broker,
        synthetic_spread_bps=config.synthetic_spread_bps,
    )
    return TradingEngine(config=config, broker=broker, market=market, preset_name=preset_name)


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio
    import signal

    from bullbust.api.routers import configure_routers
    from bullbust.config import load_config
    from bullbust.scheduler import LoopScheduler

    parser = argparse.ArgumentParser(description="Bullish or Bust crypto trading engine")
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the scan and exit loops without the API server",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scan cycle, print the snapshot table and exit",
    )
    parser.add_argument("--preset", help="Strategy preset name (overrides STRATEGY_PRESET)")
    args = parser.parse_args()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    warn_if_live(config.alpaca_environment)

    engine = build_engine(config, preset_name=args.preset)

    if args.once:
        asyncio.run(_run_once(engine))
        return

    scheduler = LoopScheduler(
        engine,
        scan_interval=config.scan_interval_seconds,
        exit_interval=config.exit_interval_seconds,
    )
    configure_routers(engine=engine, scheduler=scheduler)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — no new ticks will be scheduled.")
        scheduler.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    if args.engine_only:
        asyncio.run(_run_engine_only(scheduler))
    else:
        asyncio.run(_run_server_and_engine(scheduler, config.api_port))


async def _run_once(engine) -> None:
    from bullbust.cli.dashboard import print_snapshots

    result = await engine.run_scan_once()
    logger.info("Scan result: %s", result)
    print_snapshots(engine.snapshots(), engine.status())


async def _run_server_and_engine(scheduler, port: int = 8080) -> None:
    """Start the API server and both loops concurrently."""
    import asyncio

    import uvicorn

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _run_server():
        await server.serve()
        scheduler.stop()

    logger.info("API available at http://localhost:%d", port)
    results = await asyncio.gather(
        _run_server(),
        scheduler.run(),
        return_exceptions=True,
    )
    logger.info("Bullish or Bust stopped. Results: %s", results)


async def _run_engine_only(scheduler) -> None:
    """Run both loops without starting the API server."""
    logger.info("Starting loops (no API).")
    await scheduler.run()
    logger.info("Loops stopped.")


if __name__ == "__main__":
    _run_cli()
