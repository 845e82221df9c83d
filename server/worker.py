"""Long-running crawl worker.

Usage:
    python -m server.worker

Configuration comes from environment variables (see ``config.settings``).
"""

import asyncio
import logging
import signal
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import CrawlerSettings
from observability.logging import setup_logging
from .engine import CrawlerEngine

logger = logging.getLogger(__name__)

STATS_INTERVAL_SECONDS = 60
CLEANUP_INTERVAL_HOURS = 1


async def log_queue_stats(engine: CrawlerEngine):
    stats = await engine.get_queue_stats()
    logger.info("Queue stats: " + ", ".join(f"{state}={count}" for state, count in stats.items()))


async def cleanup_jobs(engine: CrawlerEngine):
    removed = await engine.cleanup()
    logger.info(f"Periodic cleanup removed {removed} jobs")


def create_scheduler(engine: CrawlerEngine) -> AsyncIOScheduler:
    """Scheduler for periodic queue maintenance."""
    scheduler = AsyncIOScheduler(job_defaults={'coalesce': True, 'max_instances': 1})
    scheduler.add_job(
        log_queue_stats, 'interval',
        seconds=STATS_INTERVAL_SECONDS, args=[engine], id='queue_stats'
    )
    scheduler.add_job(
        cleanup_jobs, 'interval',
        hours=CLEANUP_INTERVAL_HOURS, args=[engine], id='queue_cleanup'
    )
    return scheduler


async def run(settings: CrawlerSettings, stop_event: Optional[asyncio.Event] = None):
    """Run the engine until SIGTERM/SIGINT (or ``stop_event``), then drain."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    handled = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            handled.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal handler for {sig.name} not supported here")

    engine = CrawlerEngine(settings)
    await engine.initialize()

    scheduler = create_scheduler(engine)
    scheduler.start()
    logger.info("Crawler worker started and ready for jobs")

    try:
        await stop_event.wait()
        logger.info("Shutdown requested, draining in-flight jobs...")
    finally:
        scheduler.shutdown(wait=False)
        await engine.shutdown()
        for sig in handled:
            loop.remove_signal_handler(sig)


def main():
    settings = CrawlerSettings.from_env()
    setup_logging(
        level=settings.logging.level,
        log_file=settings.logging.log_file,
        use_json=settings.logging.use_json,
    )
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
