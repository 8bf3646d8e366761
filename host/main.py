"""
Main entry point for the Host process.
Restores persisted spaces and serves them to uplinks over Socket.IO.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from elements.space_registry import SpaceRegistry
from host.config import load_settings, HostSettings
from host.logging_setup import configure_logging_from_settings
from host.observability import setup_tracing
from host.socketio_server import SocketIOSpaceHostServer
from host.space_host import RemoteSpaceHost
from storage import create_storage_from_env

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a Loom space host")
    parser.add_argument("--space", action="append", default=[], metavar="SPACE_ID",
                        help="Space to create if it does not exist yet (repeatable)")
    parser.add_argument("--port", type=int, default=None, help="Override LOOM_HOST_PORT")
    return parser.parse_args(argv)


async def amain(args: argparse.Namespace, settings: Optional[HostSettings] = None) -> None:
    """Asynchronous main entry point."""
    settings = settings or load_settings()
    configure_logging_from_settings(settings)
    if settings.tracing_enabled:
        setup_tracing(settings.service_name)

    storage = create_storage_from_env(settings.storage)
    registry = SpaceRegistry(storage=storage)
    space_kwargs = {
        "max_delivery_attempts": settings.notifications.max_delivery_attempts,
        "retry_delay_seconds": settings.notifications.retry_delay_seconds,
        "max_queue_size": settings.notifications.max_queue_size,
        "max_backlog": settings.notifications.max_backlog,
    }
    await registry.restore_spaces(**space_kwargs)
    for space_id in args.space:
        if registry.get_space(space_id) is None:
            space = registry.get_or_create_space(space_id, **space_kwargs)
            await space.start()

    space_host = RemoteSpaceHost(registry, tokens=settings.host_tokens,
                                 shared_secret=settings.host_shared_secret,
                                 history_page_limit=settings.uplink.history_page_size)
    server = SocketIOSpaceHostServer(space_host, host=settings.host_bind, port=args.port or settings.host_port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt ends asyncio.run instead

    await server.start()
    logger.info(f"Serving {len(registry.get_spaces())} spaces")
    try:
        await stop.wait()
    finally:
        logger.info("Host process shutting down...")
        await server.stop()
        await registry.shutdown()
        logger.info("Shutdown sequence complete.")


def main(argv: Optional[List[str]] = None) -> None:
    """Synchronous entry point."""
    args = parse_args(argv)
    try:
        asyncio.run(amain(args))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical(f"Critical error during host execution: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
