"""
Main entry point for the Packet device controller.

Wires the registry, the reconciler, the dispatch loop and the HTTP API, and
runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import APIServer
from config import get_config
from controller import Controller, DeviceReconciler
from db import DatabaseManager
from events import EventBus

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that orchestrates the controller and the API."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.api: Optional[APIServer] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Packet device controller")

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()

        reconciler = DeviceReconciler(
            self.db,
            controller_config=self.config.controller,
            packet_config=self.config.packet,
            event_bus=self.event_bus,
        )
        self.controller = Controller(
            db_manager=self.db,
            reconciler=reconciler,
            config=self.config.controller,
            event_bus=self.event_bus,
        )

        self.api = APIServer(
            self.db,
            event_bus=self.event_bus,
            host=self.config.api.host,
            port=self.config.api.port,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller or not self.api:
            await self.initialize()

        self.running = True
        logger.info("Starting Packet device controller")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Packet device controller")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.api:
            await self.api.stop()

        if self.db:
            await self.db.close()

        logger.info("Packet device controller stopped")


async def main():
    """Main entry point."""
    setup_logging(get_config().api.log_level)
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
