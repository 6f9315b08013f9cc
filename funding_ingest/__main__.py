"""
CLI entry point for funding-ingest.

Usage:
    python -m funding_ingest --batch 2025-01-01_2025-01-31
    python -m funding_ingest --reset 3f2c... --reset 91ab...
    python -m funding_ingest --dry-run --max-jobs 5
"""

import argparse
import asyncio
import logging
import sys

import structlog

# Log level mapping
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def setup_logging(level: str = "INFO", json_output: bool = False):
    """Configure structured logging."""
    log_level = LOG_LEVELS.get(level.upper(), logging.INFO)

    if json_output:
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(log_level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
                structlog.dev.ConsoleRenderer(colors=True),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(log_level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="R&D funding announcement ingestion worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process every claimable job until the queue is idle
  python -m funding_ingest

  # Process one collection batch with a fixed worker identity
  python -m funding_ingest --batch 2025-01-01_2025-01-31 --worker-id worker-a

  # Run the pipeline on a few jobs without writing anything
  python -m funding_ingest --dry-run --max-jobs 5

  # Re-queue jobs (any state) and exit
  python -m funding_ingest --reset JOB_ID --reset OTHER_JOB_ID
  python -m funding_ingest --reset-batch 2025-01-01_2025-01-31

  # Release stale claims and exit
  python -m funding_ingest --reap-only

  # Create the database tables
  python -m funding_ingest --init-db

Settings come from FUNDING_INGEST_* environment variables (or .env).
        """,
    )

    parser.add_argument(
        "--worker-id",
        type=str,
        help="Worker identity recorded on claims (default: worker-<host>-<pid>)",
    )

    parser.add_argument(
        "--batch",
        type=str,
        help="Only process jobs of this batch (date-range tag)",
    )

    parser.add_argument(
        "--max-jobs",
        type=int,
        help="Stop after claiming this many jobs",
    )

    parser.add_argument(
        "--concurrency",
        type=int,
        help="Jobs processed in parallel by this worker",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the pipeline without claiming jobs or persisting results",
    )

    parser.add_argument(
        "--reset",
        action="append",
        metavar="JOB_ID",
        default=[],
        help="Reset a job to PENDING with attempts cleared (repeatable)",
    )

    parser.add_argument(
        "--reset-batch",
        type=str,
        metavar="BATCH",
        help="Reset every job of a batch to PENDING",
    )

    parser.add_argument(
        "--reap-only",
        action="store_true",
        help="Release stale PROCESSING claims and exit",
    )

    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the database tables and exit",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON (for production)",
    )

    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    return parser.parse_args(argv)


def build_settings(args):
    """Environment settings with command line overrides applied."""
    from .config.settings import get_settings

    overrides = {}
    if args.worker_id:
        overrides["worker_id"] = args.worker_id
    if args.concurrency:
        overrides["concurrency"] = args.concurrency
    return get_settings().model_copy(update=overrides)


async def run_admin(args, settings) -> dict:
    """Reset, reap or schema commands; they never process jobs."""
    from .jobs.state_machine import JobStateMachine
    from .orchestrator import build_repository

    logger = structlog.get_logger(__name__)

    if args.init_db:
        if not settings.database_url:
            from .core.errors import OperatorError

            raise OperatorError("--init-db requires FUNDING_INGEST_DATABASE_URL")
        from .jobs.postgres import PostgresJobRepository

        repository = PostgresJobRepository(settings.database_url)
        try:
            await repository.ensure_schema()
        finally:
            await repository.close()
        logger.info("schema_created")
        return {"schema": "created"}

    repository = build_repository(settings)
    machine = JobStateMachine(
        repository=repository,
        processor=None,
        worker_id=settings.worker_id,
        max_attempts=settings.max_attempts,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        stale_claim_seconds=settings.stale_claim_seconds,
    )

    summary = {}
    try:
        if args.reset:
            summary["reset"] = len(await machine.reset_many(args.reset))
        if args.reset_batch:
            summary["reset_batch"] = await machine.reset_batch(args.reset_batch)
        if args.reap_only:
            summary["reclaimed"] = await machine.reap_stale()
    finally:
        await repository.close()

    logger.info("admin_complete", **summary)
    return summary


async def main_async(args):
    """Async main function."""
    from .orchestrator import run_worker

    logger = structlog.get_logger(__name__)
    settings = build_settings(args)

    if args.init_db or args.reset or args.reset_batch or args.reap_only:
        return await run_admin(args, settings)

    logger.info(
        "starting_funding_ingest",
        worker=settings.worker_id,
        batch=args.batch,
        max_jobs=args.max_jobs,
        dry_run=args.dry_run,
    )

    return await run_worker(
        settings,
        batch=args.batch,
        max_jobs=args.max_jobs,
        dry_run=args.dry_run,
    )


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    # Version check
    if args.version:
        from . import __version__
        print(f"funding-ingest {__version__}")
        sys.exit(0)

    # Setup logging
    setup_logging(args.log_level, args.json_logs)

    # Run async main
    try:
        asyncio.run(main_async(args))
        sys.exit(0)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        logger = structlog.get_logger(__name__)
        logger.exception("fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
