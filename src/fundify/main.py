"""Application entry point."""

import asyncio
import logging
import signal
import sys

from fundify.config import get_config
from fundify.db.pool import close_pool, create_pool
from fundify.db.schema.migrate import migrate
from fundify.payments.server import run_server


async def boot(shutdown_event: asyncio.Event) -> None:
    """
    Boot sequence: load config → initialize pool → migrate → serve → shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    logger = logging.getLogger(__name__)

    try:
        config = get_config()
        logger.info(f"Configuration loaded: env={config.env}")

        pool = await create_pool(config)
        logger.info(
            f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}"
        )
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        raise SystemExit(1) from e

    try:
        applied = await migrate(pool)
        if applied:
            logger.info(f"Applied {applied} pending migration(s)")
        await run_server(config, pool, shutdown_event)
    finally:
        await close_pool(pool)
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logging.info(f"Received signal {sig}")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop.run_until_complete(boot(shutdown_event))
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)
    finally:
        loop.close()


if __name__ == "__main__":
    main()
