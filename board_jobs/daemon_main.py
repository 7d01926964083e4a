"""CLI entrypoint for the scheduler daemon."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Callable, Optional

import asyncpg

from board_jobs import handlers  # noqa: F401  registers the job handlers
from board_jobs.collaborators import HandlerServices, HttpEmailSender, HttpEmbeddingClient
from board_jobs.config import BoardJobsConfig, SchedulerConfig
from board_jobs.daemon import (
    EXIT_CONFIG_ERROR,
    EXIT_FAILURE,
    EXIT_OK,
    ProcessManager,
    QueueDaemon,
    daemon_status,
)
from board_jobs.errors import ConfigurationError
from board_jobs.fetcher import ListingFetcher
from board_jobs.pg_repositories import (
    PgDeliveryLog,
    PgEmbeddingRepository,
    PgListingRepository,
    PgSubscriberDirectory,
)
from board_jobs.service import JobQueueService


def setup_logging(level: str = "info"):
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: BoardJobsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


def build_services(
    config: BoardJobsConfig, db_pool, logger: Optional[logging.Logger] = None
) -> HandlerServices:
    """Wire the collaborators the handlers use; unconfigured ones stay None."""
    embedding_client = None
    if config.embeddings_api_key:
        embedding_client = HttpEmbeddingClient(
            config.embeddings_api_url,
            config.embeddings_api_key,
            model=config.embeddings_model,
        )

    email_sender = None
    if config.email_api_url and config.email_api_key and config.email_from:
        email_sender = HttpEmailSender(
            config.email_api_url,
            config.email_api_key,
            config.email_from,
            logger=logger,
        )

    return HandlerServices(
        listings=PgListingRepository(db_pool),
        fetcher=ListingFetcher(config.fetcher, logger=logger) if config.fetcher else None,
        embedding_client=embedding_client,
        embeddings=PgEmbeddingRepository(db_pool),
        email_sender=email_sender,
        delivery_log=PgDeliveryLog(db_pool),
        subscribers=PgSubscriberDirectory(db_pool),
    )


def install_signal_handlers(manager: ProcessManager) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, manager.request_shutdown, sig.name)


def install_excepthook(manager: ProcessManager) -> Callable:
    """
    Run cleanup before the interpreter reports an uncaught exception.

    Returns the hook that was installed before, so the caller can restore it.
    """
    previous_hook = sys.excepthook

    def excepthook(exc_type, exc, tb):
        manager.emergency_shutdown(exc)
        manager.cleanup()
        previous_hook(exc_type, exc, tb)

    sys.excepthook = excepthook
    return previous_hook


async def run_daemon(config: BoardJobsConfig, run_once: bool = False) -> int:
    """Create the pool, wire the daemon and run it; returns the exit code."""
    logger = logging.getLogger("board_jobs")
    manager = ProcessManager(config.scheduler, logger=logger)
    previous_hook = install_excepthook(manager)

    db_pool = None
    try:
        if not config.scheduler.enabled and not run_once:
            logger.info("Scheduler is disabled, exiting")
            return 0

        if config.fetcher is None and config.scheduler.ingest_schedule:
            logger.info("Listing fetcher is not configured, ingest producer disabled")
            config.scheduler.ingest_schedule = None

        logger.info("Creating database connection pool...")
        db_pool = await create_db_pool(config)

        queue = JobQueueService.from_pool(
            db_pool, services=build_services(config, db_pool, logger), logger=logger
        )
        daemon = QueueDaemon(queue, config.scheduler, manager=manager, logger=logger)
        install_signal_handlers(manager)

        if run_once:
            return await daemon.run_once()
        return await daemon.run()
    finally:
        if db_pool:
            logger.info("Closing database connection pool...")
            await db_pool.close()
        sys.excepthook = previous_hook


def report_status(config: SchedulerConfig) -> int:
    """Log lock ownership and the next fire time of every trigger."""
    logger = logging.getLogger(__name__)
    status = daemon_status(config)

    if status["running"]:
        logger.info(f"Daemon is running (pid {status['pid']})")
    elif status["stale_lock"]:
        logger.warning(f"Daemon is not running; stale lock at {status['lock_file']}")
    else:
        logger.info("Daemon is not running")

    if not status["enabled"]:
        logger.info("Scheduler is disabled (BOARD_JOBS_ENABLED=false)")

    for name, schedule in status["schedules"].items():
        next_run = status["next_runs"][name] or "-"
        logger.info(f"{name}: '{schedule}' ({status['timezone']}), next run {next_run}")

    return EXIT_OK


def main(argv=None):
    """Main entrypoint for the scheduler daemon."""
    parser = argparse.ArgumentParser(description="Board jobs scheduler daemon")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--run-once",
        action="store_true",
        help="Process pending jobs once and exit instead of running on the schedule",
    )
    mode.add_argument(
        "--status",
        action="store_true",
        help="Report whether the daemon is running and when each schedule fires next",
    )
    args = parser.parse_args(argv)

    if args.status:
        try:
            scheduler_config = SchedulerConfig.from_env()
        except ConfigurationError as e:
            setup_logging()
            logging.getLogger(__name__).error(f"Failed to load config: {e}")
            sys.exit(EXIT_CONFIG_ERROR)
        setup_logging(scheduler_config.log_level)
        sys.exit(report_status(scheduler_config))

    try:
        config = BoardJobsConfig.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error(f"Failed to load config: {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    setup_logging(config.scheduler.log_level)
    logger = logging.getLogger(__name__)

    try:
        exit_code = asyncio.run(run_daemon(config, run_once=args.run_once))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(EXIT_FAILURE)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
