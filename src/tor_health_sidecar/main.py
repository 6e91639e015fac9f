from __future__ import annotations

import asyncio
import signal
import sys
from typing import Optional, Sequence

from aiohttp import web

from .config_manager import build_arg_parser, load_settings
from .health_server import HealthServer
from .logging_utils import configure_logging, get_logger
from .version import version_string


async def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args)
    configure_logging(settings)
    logger = get_logger("main")
    logger.info("Starting %s", version_string())

    server = HealthServer(settings)
    runner = web.AppRunner(server.app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host="0.0.0.0", port=settings.health_port)
    shutdown_event = asyncio.Event()

    def _shutdown(signum: int, frame) -> None:  # noqa: ARG001
        logger.info("Received signal %s, shutting down", signum)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _shutdown)

    try:
        try:
            await site.start()
        except OSError as error:
            logger.error("Failed to bind health server on port %s: %s", settings.health_port, error)
            return 1
        logger.info(
            "Health server listening on :%s (control port %s)",
            settings.health_port,
            settings.control_address,
        )
        while not shutdown_event.is_set():
            await asyncio.sleep(1)
    finally:
        await runner.cleanup()
    logger.info("Server stopped")
    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
