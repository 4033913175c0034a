"""
TierDB Server - Main entry point.

This module starts the engine with its long-running loops:
- Streaming drain loop (buffer -> OPEN partitions)
- Lifecycle tick loop (optional; an external scheduler may drive tick())
- HTTP API (optional)

Usage:
    python -m dbaas.tierdb_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The engine is started (storage created, accounting reconciled)
      before any loop or the HTTP API runs
    - Graceful shutdown drains the stream buffer before closing the engine

How to change safely:
    - Add new loops with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .api import run_http_server
from .config import ServerConfig
from .engine import Engine
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """TierDB Server orchestrator.

    Attributes:
        config: Server configuration
        engine: The lifecycle engine

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self.engine: Engine | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the engine and its loops, then wait for shutdown."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting TierDB server")
        self.config.log_config()

        try:
            self.engine = Engine(self.config)
            await self.engine.start()

            self._tasks.append(asyncio.create_task(self.engine.stream_buffer.run()))

            interval = self.config.observability.tick_interval_seconds
            if interval > 0:
                self._tasks.append(asyncio.create_task(self.engine.controller.run(interval)))
            else:
                logger.info("Built-in tick loop disabled; tick() is driven externally")

            if self.config.http.enabled:
                self._tasks.append(
                    asyncio.create_task(run_http_server(self.engine, self.config.http))
                )

            self._running = True
            logger.info("TierDB server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping TierDB server")

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.engine:
            drained = await self.engine.flush_stream()
            if drained:
                logger.info(f"Drained {drained} buffered events on shutdown")
            await self.engine.close()

        self._running = False
        logger.info("TierDB server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except (ConfigurationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
