"""
Export server - Main entry point.

This module starts the export server with all components:
- Record store (SQLite)
- Delivery channel (mail, S3, local folder or in-memory)
- Export coordinator
- HTTP API

Usage:
    python -m reimburse.export_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The record store is initialized before the API accepts requests
    - Graceful shutdown waits for in-flight export jobs

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .collect import FileCollector
from .config import ServerConfig
from .delivery import DeliveryChannel, create_delivery_channel
from .export import ExportCoordinator
from .store import RecordStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
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


def build_coordinator(
    config: ServerConfig,
    store: RecordStore,
    channel: DeliveryChannel,
) -> ExportCoordinator:
    """Wire a coordinator from configuration."""
    collector = FileCollector(
        batch_table_name=config.export.batch_table_name,
        single_table_name=config.export.single_table_name,
        batch_archive_name=config.export.batch_archive_name,
        currency_symbol=config.export.currency_symbol,
    )
    return ExportCoordinator(
        store=store,
        channel=channel,
        collector=collector,
        recipients=config.export.recipients,
        legacy_zero_timestamps=config.export.legacy_zero_timestamps,
        history_size=config.export.history_size,
    )


class Server:
    """Export server orchestrator.

    Attributes:
        config: Server configuration
        store: Record store
        channel: Delivery channel
        coordinator: Export coordinator

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

        # Components (initialized in start())
        self.store: RecordStore | None = None
        self.channel: DeliveryChannel | None = None
        self.coordinator: ExportCoordinator | None = None
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting export server")
        self.config.log_config()

        try:
            data_dir = Path(self.config.storage.data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)

            self.store = RecordStore(
                data_dir=str(data_dir),
                db_name=self.config.storage.db_name,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            await self.store.initialize()

            self.channel = create_delivery_channel(self.config)
            logger.info(f"Delivery channel ready: {self.config.delivery_backend.value}")

            self.coordinator = build_coordinator(self.config, self.store, self.channel)

            app = create_http_app(self.coordinator, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()

            self._running = True
            logger.info(
                "Export server started successfully",
                extra={"http_bind": f"{self.config.http.host}:{self.config.http.port}"},
            )

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

        logger.info("Stopping export server")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        if self.coordinator:
            await self.coordinator.close()

        self._running = False
        logger.info("Export server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
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
