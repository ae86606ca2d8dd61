"""
perpbot - unattended perpetual-futures trading engine

Main entry point. Runs exactly one bot configuration, identified by the numeric id
given on the command line, until a stop signal or an unrecoverable error.
"""

import argparse
import asyncio
import signal
import sys
from typing import NoReturn

from perpbot.analysis import DecisionOracleGateway
from perpbot.config import get_settings
from perpbot.data import DatabaseManager, FuturesRestClient, SqlBotStore
from perpbot.exceptions import PerpbotError
from perpbot.trading.orchestrator import TradingEngine
from perpbot.utils import LogConfig, bind_bot_context, get_logger, setup_logging
from perpbot.utils.crypto import CredentialCipher

__version__ = "1.0.0"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="perpbot",
        description="Run one perpetual-futures trading bot configuration.",
    )
    parser.add_argument("config_id", type=int, help="Numeric bot configuration id")
    return parser.parse_args(argv)


def install_signal_handlers(engine: TradingEngine) -> None:
    """Route SIGINT and SIGTERM to a graceful engine stop."""
    loop = asyncio.get_running_loop()
    logger = get_logger(__name__)

    def handle(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        engine.request_stop(f"signal {sig.name}")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except NotImplementedError:
            logger.warning("signal_handler_unsupported", signal=sig.name)


async def async_main(argv: list[str] | None = None) -> int:
    """
    Async main function.

    Returns:
        Exit code (0 for graceful shutdown, 1 for a startup or runtime failure).
    """
    args = parse_args(argv)
    settings = get_settings()

    setup_logging(
        LogConfig(
            level=settings.logging.level,
            format=settings.logging.format,
            file_path=settings.logging.file_path,
            include_timestamp=True,
            include_caller_info=True,
            app_version=__version__,
        )
    )
    logger = get_logger(__name__)
    bind_bot_context(bot_id=args.config_id)
    logger.info("perpbot_starting", version=__version__, config_id=args.config_id)

    db = DatabaseManager(
        database_url=settings.database.get_async_url(),
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
    )
    try:
        await db.connect()
    except Exception as e:
        logger.critical("database_connect_failed", error=str(e), exc_info=True)
        return 1

    store = SqlBotStore(db)
    try:
        config = await store.load_config(args.config_id)
        bind_bot_context(bot_id=config.id, symbol=config.symbol)
        store.set_cipher(CredentialCipher(settings.security.encryption_key.get_secret_value()))
        credentials = await store.load_credentials(config)
    except PerpbotError as e:
        logger.critical("startup_failed", error=str(e))
        await store.update_heartbeat("error", None, f"Startup failed: {e}")
        await store.close()
        return 1

    engine_settings = settings.engine
    rest = FuturesRestClient(
        api_key=credentials.exchange_api_key,
        api_secret=credentials.exchange_api_secret,
        testnet=config.use_testnet,
        recv_window=engine_settings.recv_window_ms,
        max_attempts=engine_settings.max_attempts,
        retry_unit=engine_settings.retry_unit_seconds,
        timeout=engine_settings.http_timeout_seconds,
    )
    gateway = DecisionOracleGateway(
        api_key=credentials.oracle_api_key,
        model_name=settings.oracle.model_name,
        rest=rest,
        store=store,
        base_url=settings.oracle.base_url,
        timeout=settings.oracle.timeout_seconds,
    )
    engine = TradingEngine(config, store, rest, gateway, settings=engine_settings)
    install_signal_handlers(engine)

    try:
        exit_code = await engine.run()
    except asyncio.CancelledError:
        logger.info("engine_cancelled")
        await engine.shutdown()
        exit_code = 0
    logger.info("perpbot_stopped", exit_code=exit_code)
    return exit_code


def main() -> NoReturn:
    """
    Main entry point.

    This function is called when running the bot via the CLI.
    """
    exit_code = asyncio.run(async_main())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
