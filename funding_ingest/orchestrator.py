"""
Ingestion worker.

Coordinates:
- Component wiring (HTTP client, conversion lease, extractors, classifier)
- Polling the repository for claimable jobs
- A bounded pool of concurrently processed jobs
- Periodic reclaiming of stale claims
"""

import asyncio
import time
from datetime import date, datetime, timezone
from typing import Callable, Optional

import structlog

from .classifier.engine import Classifier
from .config.settings import Settings
from .core.errors import IngestError
from .core.http_client import HttpClient
from .core.models import Job, ProcessingStatus
from .extractors.attachments import AttachmentTextExtractor
from .extractors.conversion import ConversionService, ConversionSessionLease
from .extractors.fields import FieldExtractor
from .jobs.processor import JobProcessor
from .jobs.repository import InMemoryJobRepository, JobRepository
from .jobs.state_machine import Busy, JobStateMachine

logger = structlog.get_logger(__name__)


def build_conversion_service(settings: Settings) -> Optional[ConversionService]:
    """Hancom Docs converter when credentials are configured, else None."""
    if not settings.conversion_enabled:
        return None

    from .plugins.hancom import HancomDocsConverter

    return HancomDocsConverter(
        email=settings.hancom_email,
        password=settings.hancom_password,
        headless=settings.hancom_headless,
        login_timeout=settings.conversion_login_timeout,
        upload_timeout=settings.conversion_upload_timeout,
        editor_timeout=settings.conversion_editor_timeout,
        download_timeout=settings.conversion_download_timeout,
    )


def build_repository(settings: Settings) -> JobRepository:
    """PostgreSQL when a database URL is configured, else an in-memory repository."""
    if not settings.database_url:
        logger.warning("database_not_configured", repository="in_memory")
        return InMemoryJobRepository()

    from .jobs.postgres import PostgresJobRepository

    return PostgresJobRepository(
        settings.database_url,
        min_pool_size=settings.db_min_pool_size,
        max_pool_size=settings.db_max_pool_size,
    )


class IngestionWorker:
    """
    One worker process: polls, claims and processes jobs.

    Several workers may run against the same repository; the atomic claim
    is the only coordination between them.

    Args:
        settings: Runtime settings
        repository: Job repository (PostgreSQL from settings when omitted)
        conversion_service: Conversion fallback (from settings when omitted)
        http_client: HTTP client (created per run when omitted)
        classifier: Classifier (loaded from the taxonomy when omitted)
        today: Reference date provider for program status
    """

    def __init__(
        self,
        settings: Settings,
        repository: Optional[JobRepository] = None,
        conversion_service: Optional[ConversionService] = None,
        http_client: Optional[HttpClient] = None,
        classifier: Optional[Classifier] = None,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings
        self.repository = repository or build_repository(settings)
        self.conversion_service = conversion_service or build_conversion_service(settings)
        self.http_client = http_client
        self.classifier = classifier or Classifier.from_config(settings.taxonomy_path)
        self.today = today

        self.lease: Optional[ConversionSessionLease] = None
        self.machine: Optional[JobStateMachine] = None
        self._last_reap = 0.0

        # Statistics
        self.stats = {
            "claimed": 0,
            "busy": 0,
            "completed": 0,
            "skipped": 0,
            "failed": 0,
            "retried": 0,
            "reclaimed": 0,
            "errors": 0,
        }

    def _build_machine(self, http_client: HttpClient) -> JobStateMachine:
        settings = self.settings
        if self.conversion_service is not None:
            self.lease = ConversionSessionLease(self.conversion_service)

        attachments = AttachmentTextExtractor(
            fetcher=http_client,
            lease=self.lease,
            min_length=settings.min_text_length,
            max_chars=settings.max_attachment_chars,
            conversion_timeout=settings.conversion_editor_timeout + settings.conversion_download_timeout,
            poll_interval=settings.conversion_poll_interval,
        )
        processor = JobProcessor(
            http_client=http_client,
            attachments=attachments,
            fields=FieldExtractor(),
            classifier=self.classifier,
            repository=self.repository,
            min_text_length=settings.min_text_length,
            today=self.today,
        )
        return JobStateMachine(
            repository=self.repository,
            processor=processor,
            worker_id=settings.worker_id,
            max_attempts=settings.max_attempts,
            retry_base_seconds=settings.retry_base_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            stale_claim_seconds=settings.stale_claim_seconds,
        )

    async def run(
        self,
        batch: Optional[str] = None,
        max_jobs: Optional[int] = None,
        dry_run: bool = False,
    ) -> dict:
        """
        Poll and process until idle or ``max_jobs`` have been handled.

        Args:
            batch: Restrict to one batch tag
            max_jobs: Stop after this many claimed jobs
            dry_run: Run the pipeline on claimable jobs without claiming or persisting

        Returns:
            Statistics dict
        """
        logger.info(
            "worker_starting",
            worker=self.settings.worker_id,
            batch=batch,
            max_jobs=max_jobs,
            dry_run=dry_run,
            concurrency=self.settings.concurrency,
            conversion=self.conversion_service is not None,
        )

        http_client = self.http_client or HttpClient(
            requests_per_second=self.settings.requests_per_second,
            timeout=self.settings.request_timeout,
        )

        async with http_client:
            self.machine = self._build_machine(http_client)
            try:
                if dry_run:
                    await self._preview(batch, max_jobs)
                else:
                    await self._poll(batch, max_jobs)
            finally:
                if self.lease is not None:
                    await self.lease.close()

        logger.info("worker_finished", worker=self.settings.worker_id, **self.stats)
        return self.stats

    async def _poll(self, batch: Optional[str], max_jobs: Optional[int]) -> None:
        settings = self.settings
        semaphore = asyncio.Semaphore(max(1, settings.concurrency))
        idle_polls = 0

        while max_jobs is None or self.stats["claimed"] < max_jobs:
            await self.maybe_reap()

            remaining = None if max_jobs is None else max_jobs - self.stats["claimed"]
            limit = settings.concurrency * 2 if remaining is None else min(remaining, settings.concurrency * 2)
            jobs = await self.repository.find_pending_jobs(
                batch, datetime.now(timezone.utc), settings.max_attempts, limit=limit
            )

            if not jobs:
                idle_polls += 1
                if settings.max_idle_polls and idle_polls >= settings.max_idle_polls:
                    logger.info("worker_idle", polls=idle_polls)
                    break
                await asyncio.sleep(settings.poll_interval_seconds)
                continue

            results = await asyncio.gather(
                *(self._handle(job, semaphore) for job in jobs), return_exceptions=True
            )
            errors = self._record_errors(jobs, results)
            if errors < len(jobs):
                idle_polls = 0
                continue

            # Every job of the poll errored; back off and let the idle limit stop the worker
            idle_polls += 1
            if settings.max_idle_polls and idle_polls >= settings.max_idle_polls:
                logger.error("worker_stalled", polls=idle_polls, errors=errors)
                break
            await asyncio.sleep(settings.poll_interval_seconds)

    def _record_errors(self, jobs: list[Job], results: list) -> int:
        """Log jobs whose handling raised; returns how many did."""
        errors = 0
        for job, result in zip(jobs, results):
            if not isinstance(result, BaseException):
                continue
            if not isinstance(result, Exception):
                raise result
            errors += 1
            logger.error("job_handle_failed", job_id=job.id, error=str(result), error_type=type(result).__name__)
        self.stats["errors"] += errors
        return errors

    async def _preview(self, batch: Optional[str], max_jobs: Optional[int]) -> None:
        """Process pending jobs in memory and log what would be written."""
        jobs = await self.repository.find_pending_jobs(
            batch, datetime.now(timezone.utc), self.settings.max_attempts, limit=max_jobs or 50
        )
        for job in jobs:
            try:
                result = await self.machine.processor.process(job)
            except IngestError as e:
                logger.warning("dry_run_job_failed", job_id=job.id, error=str(e), error_type=type(e).__name__)
                continue

            program = result.program
            logger.info(
                "dry_run_job",
                job_id=job.id,
                outcome=result.outcome.value,
                reason=result.reason,
                program=program.to_dict() if program else None,
            )
        logger.info("dry_run_complete", jobs=len(jobs))

    async def _handle(self, job: Job, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            claim = await self.machine.claim(job)
            if isinstance(claim, Busy):
                self.stats["busy"] += 1
                return

            self.stats["claimed"] += 1
            result = await self.machine.run(claim)
            self._count(result)

    def _count(self, job: Job) -> None:
        if job.processing_status == ProcessingStatus.COMPLETED:
            self.stats["completed"] += 1
        elif job.processing_status == ProcessingStatus.SKIPPED:
            self.stats["skipped"] += 1
        elif job.processing_status == ProcessingStatus.FAILED:
            self.stats["failed"] += 1
        elif job.processing_status == ProcessingStatus.PENDING:
            self.stats["retried"] += 1

    async def maybe_reap(self, force: bool = False) -> int:
        """Reclaim stale claims at most once per reap interval."""
        now = time.monotonic()
        if not force and now - self._last_reap < self.settings.reap_interval_seconds:
            return 0
        self._last_reap = now

        machine = self.machine or JobStateMachine(
            repository=self.repository,
            processor=None,
            worker_id=self.settings.worker_id,
            max_attempts=self.settings.max_attempts,
            stale_claim_seconds=self.settings.stale_claim_seconds,
        )
        reclaimed = await machine.reap_stale()
        self.stats["reclaimed"] += reclaimed
        if reclaimed:
            logger.info("stale_claims_reclaimed", count=reclaimed)
        return reclaimed


async def run_worker(
    settings: Settings,
    batch: Optional[str] = None,
    max_jobs: Optional[int] = None,
    dry_run: bool = False,
) -> dict:
    """
    Convenience function to run one worker against the configured database.

    Returns:
        Statistics dict
    """
    worker = IngestionWorker(settings)
    try:
        return await worker.run(batch=batch, max_jobs=max_jobs, dry_run=dry_run)
    finally:
        await worker.repository.close()
