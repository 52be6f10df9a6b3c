"""Main entry point for the scheduled lesson generation worker."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from lessongen.api.dependencies import build_services
from lessongen.config import settings
from lessongen.db import DatabaseManager
from lessongen.errors import JobAlreadyRunningError
from lessongen.generation.models import BatchSummary, WorkMatrix
from lessongen.resilience import default_data_pruner
from lessongen.scheduler import SchedulerService

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Worker process coordinating scheduled seeding and pruning."""

    def __init__(self) -> None:
        """Initialize the worker."""
        self.db_manager = DatabaseManager(database_url=settings.database_url)
        self.scheduler = SchedulerService(
            database_url=settings.scheduler_database_url,
            max_workers=settings.scheduler_max_workers,
            timezone=settings.scheduler_timezone,
        )

    async def _seed_once(self) -> BatchSummary | None:
        # Each run gets its own event loop, so its own HTTP client
        services = build_services(settings, db_manager=self.db_manager)
        try:
            matrix = WorkMatrix(target_per_cell=settings.batch_lessons_per_subject)
            return await services.orchestrator.run(matrix)
        except JobAlreadyRunningError as e:
            logger.info(f"Skipping scheduled seed: {e}")
            return None
        finally:
            await services.client.close()
            await services.counter_store.close()

    def seed(self) -> BatchSummary | None:
        """Run one bulk seeding pass (blocking)."""
        logger.info("Running scheduled lesson seeding...")
        summary = asyncio.run(self._seed_once())
        if summary is not None:
            logger.info(f"Seeding finished: {summary.to_dict()}")
        return summary

    def start(self) -> None:
        """Start the worker services."""
        logger.info("Starting lesson generation worker...")

        # Initialize database
        self.db_manager.init_db()
        logger.info("Database initialized")

        if settings.seed_interval_minutes > 0:
            self.scheduler.add_job(
                job_id="lesson_seeding",
                func=run_scheduled_seed,
                interval_minutes=settings.seed_interval_minutes,
            )
        else:
            logger.info("Scheduled seeding disabled (SEED_INTERVAL_MINUTES=0)")

        default_data_pruner.set_db_manager(self.db_manager)
        self.scheduler.add_job(
            job_id="data_pruning",
            func=run_scheduled_pruning,
            interval_minutes=settings.pruning_interval_minutes,
        )
        logger.info(f"Data pruning job registered ({settings.pruning_interval_minutes}m interval)")

        # Start scheduler
        self.scheduler.start()

    def stop(self) -> None:
        """Stop all services gracefully."""
        logger.info("Stopping worker...")
        self.scheduler.shutdown(wait=True)
        self.db_manager.close()
        logger.info("Worker stopped")


# Process-wide worker; scheduler jobs reference it through the functions below
_application: Application | None = None


def get_application() -> Application:
    global _application
    if _application is None:
        _application = Application()
    return _application


def run_scheduled_seed() -> None:
    """Scheduler entry point for bulk seeding."""
    get_application().seed()


def run_scheduled_pruning() -> dict[str, int]:
    """Scheduler entry point for pruning."""
    return default_data_pruner.run_all()


def main() -> NoReturn:
    """Main entry point."""
    application = get_application()

    # Handle graceful shutdown
    def signal_handler(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}")
        application.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        application.start()
        logger.info("Worker running. Press Ctrl+C to stop.")
        signal.pause()  # Wait for signals
    except AttributeError:
        # signal.pause() not available on Windows
        import time
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        application.stop()

    sys.exit(0)


if __name__ == "__main__":
    main()
