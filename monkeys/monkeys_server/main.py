"""
Infinite Monkeys Server - Main entry point.

This module starts the server with all components:
- Event store (SQLite hot store)
- Generator loop (one character per tick -> store -> broadcast hub)
- Archiver loop (hot store -> gzip segments)
- HTTP server (SSE live feed, recent, config, health)

Usage:
    python -m monkeys.monkeys_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is initialized before any loop starts
    - The generator is the only writer of new records
    - Shutdown stops the generator before the archiver, so no append
      races a final compaction pass

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .api import HttpServer, create_http_app
from .archive import Archiver, ArchiveTrigger
from .broadcast import BroadcastHub
from .config import ServerConfig
from .generator import Generator
from .query import QueryFacade
from .store import EventStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """Infinite Monkeys server orchestrator.

    Manages the lifecycle of all server components:
    - Event store
    - Background loops (generator, archiver)
    - HTTP server

    Attributes:
        config: Server configuration
        store: Hot event store
        hub: Live broadcast hub
        generator: Character generator
        archiver: Hot store archiver

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        trigger = ArchiveTrigger() if self.config.archiver.enabled else None
        storage = self.config.storage

        self.store = EventStore(
            db_path=storage.db_path,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            archive_trigger=trigger,
        )
        self.hub = BroadcastHub(max_pending=self.config.http.subscriber_queue_size)
        self.generator = Generator(
            store=self.store,
            hub=self.hub,
            interval_ms=self.config.generator.interval_ms,
        )
        self.archiver: Archiver | None = None
        if trigger is not None:
            self.archiver = Archiver(
                store=self.store,
                archive_dir=storage.archive_path,
                max_keep=self.config.archiver.max_keep,
                trigger=trigger,
            )
        self.facade = QueryFacade(
            store=self.store,
            settings=self.config.client_settings(),
            hub=self.hub,
            generator=self.generator,
            archiver=self.archiver,
        )
        self.http_server: HttpServer | None = None

        self._generator_task: asyncio.Task | None = None
        self._archiver_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the server and all components, then wait for shutdown."""
        if self._running:
            logger.warning("Server already running")
            return

        self._running = True
        logger.info("Starting Infinite Monkeys server")
        self.config.log_config()

        try:
            await self.store.initialize()

            if self.archiver is not None:
                self._archiver_task = asyncio.create_task(self.archiver.start())
                # Catch up on anything left from a previous run
                self.archiver.trigger.submit()

            app = create_http_app(self.facade, self.hub, self.config.http)
            self.http_server = HttpServer(app, self.config.http.host, self.config.http.port)
            await self.http_server.start()

            if self.config.generator.enabled:
                self._generator_task = asyncio.create_task(self.generator.start())

            logger.info(
                f"DISPLAY_LIMIT={self.config.http.display_limit}, "
                f"GENERATION_INTERVAL_MS={self.config.generator.interval_ms}, "
                f"MAX_KEEP={self.config.archiver.max_keep}"
            )

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping Infinite Monkeys server")

        await self.generator.stop()
        if self._generator_task is not None:
            await asyncio.gather(self._generator_task, return_exceptions=True)

        if self.archiver is not None:
            await self.archiver.stop()
        if self._archiver_task is not None:
            await asyncio.gather(self._archiver_task, return_exceptions=True)

        # Ends every open SSE stream so the runner can close promptly
        self.hub.close()

        if self.http_server is not None:
            await self.http_server.stop()

        self._running = False
        logger.info("Infinite Monkeys server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Create server
    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
