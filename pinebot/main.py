"""PineBot — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for the
serve, sweep and run modes.
"""

import logging

from fastapi import FastAPI

from pinebot.api.routers import router

app = FastAPI(title="PineBot Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("pinebot")


@app.get("/health")
async def health():
    return {"status": "ok"}


def build_services(config):
    """Create repos, coordinator and scheduler, and wire them into the routers.

    Returns:
        The ``SweepScheduler``.
    """
    from pinebot.api.routers import configure_routers
    from pinebot.coordinator import ExecutionCoordinator
    from pinebot.repos.coin_repo import CoinRepo
    from pinebot.repos.db import init_db
    from pinebot.repos.script_repo import ScriptRepo
    from pinebot.repos.settings_repo import SettingsRepo
    from pinebot.repos.signal_repo import SignalRepo
    from pinebot.repos.trade_repo import TradeRepo
    from pinebot.scheduler import SweepScheduler

    init_db(config.db_path)
    script_repo = ScriptRepo(config.db_path)
    trade_repo = TradeRepo(config.db_path)
    coin_repo = CoinRepo(config.db_path, default_coins=config.default_user_coins)
    settings_repo = SettingsRepo(config.db_path)
    signal_repo = SignalRepo(config.db_path)

    coordinator = ExecutionCoordinator(
        config=config,
        script_repo=script_repo,
        trade_repo=trade_repo,
        signal_repo=signal_repo,
        settings_repo=settings_repo,
        coin_repo=coin_repo,
    )
    scheduler = SweepScheduler(config, coordinator, script_repo, signal_repo)
    configure_routers(
        script_repo=script_repo,
        trade_repo=trade_repo,
        coin_repo=coin_repo,
        settings_repo=settings_repo,
        signal_repo=signal_repo,
        coordinator=coordinator,
        scheduler=scheduler,
    )
    return scheduler


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio
    import signal

    from pinebot.config import load_config

    parser = argparse.ArgumentParser(description="PineBot strategy engine")
    parser.add_argument(
        "--mode",
        choices=["serve", "sweep", "run"],
        default="serve",
        help="serve = API + sweep loop, sweep = one sweep, run = loop without API",
    )
    args = parser.parse_args()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    scheduler = build_services(config)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        scheduler.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    if args.mode == "sweep":
        report = asyncio.run(scheduler.run_sweep())
        logger.info("Sweep complete: %s", report.counts())
    elif args.mode == "run":
        asyncio.run(_run_scheduler_only(scheduler))
    else:
        asyncio.run(_run_server_and_scheduler(scheduler, config.api_port))


async def _run_server_and_scheduler(scheduler, port: int = 8080) -> None:
    """Start the API server and the sweep loop concurrently."""
    import asyncio
    import uvicorn

    logger.info("Starting PineBot API on port %d with sweep loop.", port)

    uvi_config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(uvi_config)

    async def _run_server():
        await server.serve()
        scheduler.stop()

    server_result, reports = await asyncio.gather(
        _run_server(),
        scheduler.run(),
        return_exceptions=True,
    )
    if isinstance(server_result, Exception):
        logger.error("API server exited with error: %s", server_result)
    logger.info("PineBot stopped after %s sweep(s).",
                len(reports) if isinstance(reports, list) else "?")


async def _run_scheduler_only(scheduler) -> None:
    logger.info("Starting PineBot sweep loop (no API).")
    await scheduler.run()
    logger.info("PineBot sweep loop stopped.")


if __name__ == "__main__":
    _run_cli()
