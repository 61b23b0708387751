"""vmpool process entry point."""

from __future__ import annotations

import asyncio
import signal
import sys

import structlog

from vmpool.config import get_settings
from vmpool.errors import ConfigurationError
from vmpool.log import configure_logging
from vmpool.runtime import Runtime
from vmpool.services.supervisor import Supervisor
from vmpool.store.redis import RedisStore

logger = structlog.get_logger()


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.json_output)

    store = RedisStore(settings.redis.url)
    await store.ping()

    try:
        runtime = Runtime.from_settings(settings, store)
    except ConfigurationError:
        await store.close()
        raise

    try:
        await runtime.reset_admission()
        if settings.metrics.port:
            runtime.metrics.serve(settings.metrics.port)

        supervisor = Supervisor(runtime)
        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_requested.set)

        logger.info("vmpool.started", pools=[pool.name for pool in settings.pools])
        supervise = asyncio.create_task(supervisor.execute(), name="supervisor")
        await stop_requested.wait()

        logger.info("vmpool.stopping")
        await supervisor.stop()
        await supervise
    finally:
        await runtime.close()
        logger.info("vmpool.stopped")


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
