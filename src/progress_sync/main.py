"""Progress Sync server: save endpoint, liveness probe and fix-status report."""

import asyncio
import logging
import signal

from .config import ServerConfig
from .fix_resolver import FixStatusHolder, resolve_quest_fixes
from .logging import setup_logging
from .quest_fixes import all_quest_fixes
from .save_handler import SaveEndpointHandler
from .server import ProgressSyncApp, start_server
from .store import PostgresProgressStore


def main() -> None:
    config = ServerConfig.from_env()
    setup_logging(config.log_format)

    logger = logging.getLogger(__name__)
    logger.info("Progress sync server starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Listen address: %s:%d", config.host, config.port)
    logger.info("Quest fixes configured: %d", len(all_quest_fixes()))

    asyncio.run(_run(config))


async def _run(config: ServerConfig) -> None:
    logger = logging.getLogger(__name__)
    store = PostgresProgressStore(
        config.database_url, timeout_seconds=config.store_timeout_seconds
    )

    try:
        await store.ensure_schema()
    except Exception as exc:
        logger.warning("Schema bootstrap skipped: %s", exc)

    # Start-up resolution is non-fatal; a failed fix shows up in /api/health
    fix_status = FixStatusHolder()
    await resolve_quest_fixes(store, all_quest_fixes(), fix_status)

    app = ProgressSyncApp(SaveEndpointHandler(store), fix_status)
    server = await start_server(app, config.host, config.port)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await shutdown.wait()
        logger.info("Shutdown requested")
    finally:
        server.close()
        await server.wait_closed()


if __name__ == "__main__":
    main()
