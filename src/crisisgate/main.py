"""
CrisisGate Main Application Entry Point

Initializes configuration, logging and storage, then runs the dispatch
service until a shutdown signal arrives.
"""

import asyncio
import signal
import sys
from typing import Any, Dict, Optional

from crisisgate.core.config import ConfigurationError, ConfigurationManager
from crisisgate.core.database import DatabaseError, DatabaseManager, initialize_database
from crisisgate.core.logging import get_logger, initialize_logging
from crisisgate.services.dispatch import DispatchService


class CrisisGateApplication:
    """Main CrisisGate application class"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self.config_manager: Optional[ConfigurationManager] = None
        self.db_manager: Optional[DatabaseManager] = None
        self.dispatch_service: Optional[DispatchService] = None
        self.logger = None

        self.running = False
        self.shutdown_event = asyncio.Event()
        self.stats_interval = 300

    async def initialize(self):
        """Initialize all application components"""
        self.config_manager = ConfigurationManager(self.config_dir)
        self.config_manager.load_config()

        initialize_logging(self.config_manager.config)
        self.logger = get_logger('main')

        self.logger.info("CrisisGate starting up...")
        self.logger.info(f"Version: {self.config_manager.get('app.version', '1.0.0')}")
        self.logger.info(f"Debug mode: {self.config_manager.get('app.debug', False)}")

        db_path = self.config_manager.get('database.path', 'data/crisisgate.db')
        self.db_manager = initialize_database(
            db_path, self.config_manager.get('database.max_connections', 10)
        )
        self.logger.info(f"Database initialized at {db_path}")

        config = dict(self.config_manager.config)
        self.dispatch_service = DispatchService(self.db_manager, config)
        self.stats_interval = self.config_manager.get('app.stats_interval_seconds', 300)

    async def start(self):
        """Start the application and block until shutdown"""
        await self.initialize()

        self.running = True

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        try:
            await self.dispatch_service.start()
            self.logger.info("CrisisGate is now running")
            await self._main_loop()
        except Exception as e:
            self.logger.error(f"Application error: {e}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def _main_loop(self):
        """Wait for shutdown while reporting statistics periodically"""
        reporter = asyncio.create_task(self._stats_reporter_loop())
        try:
            await self.shutdown_event.wait()
            self.logger.info("Shutdown signal received")
        finally:
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)

    async def _stats_reporter_loop(self):
        """Log SOS statistics periodically"""
        while self.running:
            await asyncio.sleep(self.stats_interval)
            try:
                stats = await self.dispatch_service.get_sos_statistics()
            except DatabaseError as e:
                self.logger.error(f"Error in stats reporter: {e}")
                continue

            self.logger.info(
                f"SOS Stats - total {stats.total}, pending {stats.pending}, "
                f"in progress {stats.in_progress}, resolved {stats.resolved}, "
                f"cancelled {stats.cancelled}, "
                f"avg response {stats.avg_response_time_seconds:.1f}s"
            )

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}")
        self.shutdown_event.set()

    async def shutdown(self):
        """Shutdown the application gracefully"""
        if not self.running:
            return

        self.logger.info("Shutting down CrisisGate...")
        self.running = False

        if self.dispatch_service:
            await self.dispatch_service.stop()
        if self.db_manager:
            self.db_manager.close()

        self.logger.info("CrisisGate shutdown complete")

    def get_system_status(self) -> Dict[str, Any]:
        """Get system status"""
        status = {
            'running': self.running,
            'version': self.config_manager.get('app.version') if self.config_manager else None,
            'dispatch': self.dispatch_service.get_service_status() if self.dispatch_service else None
        }
        if self.db_manager:
            status['database'] = self.db_manager.get_stats()
        return status


async def run(config_dir: str = "config"):
    """Run the application until it is signalled to stop"""
    app = CrisisGateApplication(config_dir)
    await app.start()


def main():
    """Console script entry point"""
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nApplication interrupted")
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(2)
    except DatabaseError as e:
        print(f"Application failed to start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
