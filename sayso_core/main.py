"""
Sayso Core worker - Main entry point.

This module starts the background side of Sayso Core:
- Reactor loop (event bus -> derived state and notifications), when
  REACTION_MODE=queue
- Periodic retry of reactions that failed earlier, in this process or
  in any other process sharing the store
- Periodic cleanup of idle rate-limit counters

In inline mode the service reacts inside the request path, so the worker
only retries the reactions that failed there and runs housekeeping.

Usage:
    sayso-core

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The schema exists before any loop starts
    - Graceful shutdown cancels the loops, then closes the bus

How to change safely:
    - Add new loops as tasks in Worker.start()
    - Test the shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sqlite3
import sys

import json_log_formatter

from .bus import EventBus, create_event_bus
from .config import CoreConfig, ReactionMode
from .errors import CoreError
from .service import CoreService
from .store.database import Database

logger = logging.getLogger(__name__)

RETRY_INTERVAL_SECONDS = 30


def setup_logging(config: CoreConfig) -> None:
    """Configure logging based on configuration."""
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
    logging.getLogger("aiokafka").setLevel(logging.WARNING)


class Worker:
    """Sayso Core worker orchestrator.

    Attributes:
        config: Core configuration
        db: Shared database handle
        bus: Event bus, when REACTION_MODE=queue
        service: Wired core service

    Example:
        >>> worker = Worker()
        >>> await worker.start()
        >>> # Worker is running
        >>> await worker.stop()
    """

    def __init__(self, config: CoreConfig | None = None) -> None:
        self.config = config or CoreConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.db: Database | None = None
        self.bus: EventBus | None = None
        self.service: CoreService | None = None

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the worker and block until shutdown is requested."""
        if self._running:
            logger.warning("Worker already running")
            return

        logger.info("Starting Sayso Core worker")
        self.config.log_config()

        try:
            self.db = Database.from_config(self.config.storage)
            self.db.initialize()

            if self.config.bus.reaction_mode == ReactionMode.QUEUE:
                self.bus = create_event_bus(self.config)
                await self.bus.connect()
                logger.info("Event bus connected")

            self.service = CoreService.build(self.db, self.config, bus=self.bus)

            if self.bus is not None:
                self._tasks.append(asyncio.create_task(self.service.reactor.start()))
            self._tasks.append(asyncio.create_task(self._retry_loop()))
            self._tasks.append(asyncio.create_task(self._rate_limit_cleanup_loop()))

            self._running = True
            logger.info("Sayso Core worker started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Worker startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the worker gracefully. Safe to call more than once."""
        if not self._running and not self._tasks and self.bus is None:
            return

        logger.info("Stopping Sayso Core worker")

        if self.service is not None:
            await self.service.reactor.stop()

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.bus is not None:
            await self.bus.close()
            self.bus = None

        self._running = False
        logger.info("Sayso Core worker stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    async def _retry_loop(self) -> None:
        while True:
            await asyncio.sleep(RETRY_INTERVAL_SECONDS)
            try:
                results = await self.service.reactor.retry_failed()
            except (CoreError, sqlite3.Error) as e:
                logger.warning(f"Retrying failed reactions failed: {e}")
                continue
            if results:
                logger.info(
                    "Retried failed reactions",
                    extra={
                        "retried": len(results),
                        "recovered": sum(1 for result in results if result.success),
                    },
                )

    async def _rate_limit_cleanup_loop(self) -> None:
        retention_ms = self.config.rate_limit.retention_hours * 3600 * 1000
        while True:
            await asyncio.sleep(self.config.rate_limit.cleanup_interval_seconds)
            try:
                removed = await self.service.rate_limits.cleanup(retention_ms)
            except CoreError as e:
                logger.warning(f"Rate-limit cleanup failed: {e.message}")
                continue
            if removed:
                logger.info("Removed idle rate-limit counters", extra={"removed": removed})


def main() -> None:
    """Main entry point."""
    try:
        config = CoreConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    worker = Worker(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        worker.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(worker.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(worker.stop())
        loop.close()


if __name__ == "__main__":
    main()
